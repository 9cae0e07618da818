import uuid

from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.parsers import FormParser, JSONParser, MultiPartParser
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from common.permissions import RoleCapabilityPermission
from core.tenancy import TenantScopedViewMixin
from orders.history import history_for_order
from orders.payments import payment_summary, payments_for_order, record_payment
from orders.selectors import get_order, get_order_by_number, list_orders, public_order_status
from orders.serializers import (
    OrderCreateSerializer,
    OrderHistoryEntrySerializer,
    OrderPhotoSerializer,
    OrderStatusUpdateSerializer,
    PaymentCreateSerializer,
    PaymentSerializer,
    PhotoUploadSerializer,
    PublicOrderStatusSerializer,
    ServiceOrderSerializer,
)
from orders.services import add_order_photos, create_order, delete_order, update_order_status

IDEMPOTENCY_HEADER = "Idempotency-Key"


class OrderViewSet(TenantScopedViewMixin, viewsets.GenericViewSet):
    serializer_class = ServiceOrderSerializer
    lookup_value_regex = "[0-9a-fA-F-]{36}"
    parser_classes = [JSONParser, MultiPartParser, FormParser]
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "orders.view",
        "retrieve": "orders.view",
        "by_number": "orders.view",
        "history": "orders.view",
        "create": "orders.create",
        "update_status": "orders.update_status",
        "photos": "orders.photos.add",
        "payments": "payments.view",
        "create_payment": "payments.record",
        "destroy": "orders.delete",
    }

    def get_queryset(self):
        return list_orders(
            self.get_tenant_context(),
            status=self.request.query_params.get("status"),
            search=self.request.query_params.get("search"),
        )

    def _idempotency_key(self, validated_data):
        if validated_data.get("idempotency_key"):
            return validated_data["idempotency_key"]
        header = self.request.headers.get(IDEMPOTENCY_HEADER)
        if not header:
            return None
        try:
            return uuid.UUID(header)
        except ValueError:
            raise ValidationError({"idempotency_key": "Idempotency-Key must be a UUID."}) from None

    def list(self, request):
        page = self.paginate_queryset(self.get_queryset())
        return self.get_paginated_response(self.get_serializer(page, many=True).data)

    def retrieve(self, request, pk=None):
        return Response(self.get_serializer(get_order(self.get_tenant_context(), pk)).data)

    def create(self, request):
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        customer = data["customer"]
        order = create_order(
            self.get_tenant_context(),
            {"name": customer["full_name"], "phone": customer["phone"], "email": customer.get("email")},
            data["equipment_type"],
            reported_problem=data["reported_problem"],
            brand=data.get("brand"),
            model=data.get("model"),
            serial=data.get("serial_number"),
            accessories=data.get("accessories"),
            notes=data.get("notes"),
            estimated_cost=data.get("estimated_cost"),
            signature_image=data.get("signature"),
            idempotency_key=self._idempotency_key(data),
        )
        order = get_order(self.get_tenant_context(), order.id)
        return Response(self.get_serializer(order).data, status=status.HTTP_201_CREATED)

    def destroy(self, request, pk=None):
        delete_order(self.get_tenant_context(), pk)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=["get"], url_path=r"by-number/(?P<order_number>[^/]+)")
    def by_number(self, request, order_number=None):
        order = get_order_by_number(self.get_tenant_context(), order_number)
        return Response(self.get_serializer(order).data)

    @action(detail=True, methods=["post", "patch"], url_path="status")
    def update_status(self, request, pk=None):
        serializer = OrderStatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        update_order_status(
            self.get_tenant_context(),
            pk,
            data["status"],
            notes=data.get("notes"),
            diagnosis=data.get("diagnosis"),
            repair_performed=data.get("repair_performed"),
            estimated_cost=data.get("estimated_cost"),
            final_cost=data.get("final_cost"),
        )
        return Response(self.get_serializer(get_order(self.get_tenant_context(), pk)).data)

    @action(detail=True, methods=["get"], url_path="payments", pagination_class=None)
    def payments(self, request, pk=None):
        order, payments = payments_for_order(self.get_tenant_context(), pk)
        summary = payment_summary(order)
        return Response(
            {
                "order_number": order.order_number,
                "total_paid": str(summary["total_paid"]),
                "payment_count": summary["payment_count"],
                "outstanding_balance": str(summary["outstanding_balance"]),
                "payments": PaymentSerializer(payments, many=True).data,
            }
        )

    @payments.mapping.post
    def create_payment(self, request, pk=None):
        serializer = PaymentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        result = record_payment(
            self.get_tenant_context(),
            pk,
            data["amount"],
            data["method"],
            data["kind"],
            reference=data.get("reference"),
            note=data.get("note"),
            idempotency_key=self._idempotency_key(data),
        )
        return Response(
            {
                "payment": PaymentSerializer(result.payment).data,
                "balance_before": str(result.balance_before),
                "balance_after": str(result.balance_after),
                "replayed": result.replayed,
            },
            status=status.HTTP_200_OK if result.replayed else status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["post"], url_path="photos")
    def photos(self, request, pk=None):
        serializer = PhotoUploadSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        photos = add_order_photos(
            self.get_tenant_context(),
            pk,
            serializer.validated_data["photos"],
            kind=serializer.validated_data["kind"],
        )
        return Response(OrderPhotoSerializer(photos, many=True).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["get"], url_path="history", pagination_class=None)
    def history(self, request, pk=None):
        order = get_order(self.get_tenant_context(), pk)
        ascending = request.query_params.get("order") == "asc"
        entries = history_for_order(order, ascending=ascending)
        return Response(OrderHistoryEntrySerializer(entries, many=True).data)


class PublicOrderStatusView(APIView):
    """Anonymous "where is my device" lookup keyed by the printed order number."""

    authentication_classes = []
    permission_classes = [AllowAny]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "public_lookup"

    def get(self, request, order_number):
        return Response(PublicOrderStatusSerializer(public_order_status(order_number)).data)
