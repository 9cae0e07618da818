from django.db.models import Count, Q
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.permissions import RoleCapabilityPermission
from core.tenancy import TenantScopedViewMixin
from customers.models import Customer
from customers.serializers import CustomerSearchQuerySerializer, CustomerSerializer, CustomerWriteSerializer
from customers.services import (
    canonicalize_phone,
    delete_customer,
    get_customer,
    register_customer,
    search_customers,
    update_customer,
)


class CustomerViewSet(TenantScopedViewMixin, viewsets.GenericViewSet):
    serializer_class = CustomerSerializer
    lookup_value_regex = "[0-9a-fA-F-]{36}"
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "customers.view",
        "retrieve": "customers.view",
        "search": "customers.view",
        "create": "customers.manage",
        "update": "customers.manage",
        "partial_update": "customers.manage",
        "destroy": "customers.delete",
    }

    def get_queryset(self):
        ctx = self.get_tenant_context()
        queryset = Customer.objects.filter(branch=ctx.branch).annotate(order_count=Count("service_orders"))
        term = (self.request.query_params.get("search") or "").strip()
        if term:
            digits = canonicalize_phone(term)
            queryset = queryset.filter(Q(full_name__icontains=term) | Q(phone__contains=digits or term))
        return queryset.order_by("full_name")

    def list(self, request):
        page = self.paginate_queryset(self.get_queryset())
        return self.get_paginated_response(self.get_serializer(page, many=True).data)

    def retrieve(self, request, pk=None):
        customer = get_customer(self.get_tenant_context(), pk)
        return Response(self.get_serializer(customer).data)

    def create(self, request):
        payload = CustomerWriteSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        data = payload.validated_data
        customer = register_customer(self.get_tenant_context(), data["full_name"], data["phone"], data.get("email"))
        return Response(self.get_serializer(customer).data, status=status.HTTP_201_CREATED)

    def update(self, request, pk=None, partial=False):
        payload = CustomerWriteSerializer(data=request.data, partial=partial)
        payload.is_valid(raise_exception=True)
        data = payload.validated_data
        customer = update_customer(
            self.get_tenant_context(),
            pk,
            name=data.get("full_name"),
            phone=data.get("phone"),
            email=data.get("email"),
        )
        return Response(self.get_serializer(customer).data)

    def partial_update(self, request, pk=None):
        return self.update(request, pk=pk, partial=True)

    def destroy(self, request, pk=None):
        delete_customer(self.get_tenant_context(), pk)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=["get"], url_path="search", pagination_class=None)
    def search(self, request):
        """Typeahead lookup for the intake form, capped at ``limit`` rows."""
        query = CustomerSearchQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        customers = search_customers(
            self.get_tenant_context(),
            query.validated_data["q"],
            limit=query.validated_data["limit"],
        )
        return Response(self.get_serializer(customers, many=True).data)
