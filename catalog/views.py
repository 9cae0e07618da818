from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from catalog.serializers import BrandModelSerializer, EquipmentTypeSerializer
from catalog.services import (
    canonicalize_catalog_name,
    create_brand_model,
    create_equipment_type,
    delete_brand_model,
    delete_equipment_type,
    list_brand_models,
    list_equipment_types,
    set_brand_model_active,
    set_equipment_type_active,
)
from common.permissions import RoleCapabilityPermission
from core.tenancy import TenantScopedViewMixin

CATALOG_PERMISSIONS = {
    "list": "catalog.view",
    "create": "catalog.manage",
    "activate": "catalog.manage",
    "deactivate": "catalog.delete",
    "destroy": "catalog.delete",
}


def _include_inactive(request):
    return request.query_params.get("include_inactive", "").lower() in ("1", "true", "yes")


class EquipmentTypeViewSet(TenantScopedViewMixin, viewsets.GenericViewSet):
    serializer_class = EquipmentTypeSerializer
    lookup_value_regex = "[0-9a-fA-F-]{36}"
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = CATALOG_PERMISSIONS
    pagination_class = None

    def get_queryset(self):
        return list_equipment_types(self.get_tenant_context(), include_inactive=_include_inactive(self.request))

    def list(self, request):
        return Response(self.get_serializer(self.get_queryset(), many=True).data)

    def create(self, request):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        instance = create_equipment_type(self.get_tenant_context(), serializer.validated_data["name"])
        return Response(self.get_serializer(instance).data, status=status.HTTP_201_CREATED)

    def destroy(self, request, pk=None):
        delete_equipment_type(self.get_tenant_context(), pk)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["post"])
    def deactivate(self, request, pk=None):
        instance = set_equipment_type_active(self.get_tenant_context(), pk, False)
        return Response(self.get_serializer(instance).data)

    @action(detail=True, methods=["post"])
    def activate(self, request, pk=None):
        instance = set_equipment_type_active(self.get_tenant_context(), pk, True)
        return Response(self.get_serializer(instance).data)


class BrandModelViewSet(TenantScopedViewMixin, viewsets.GenericViewSet):
    serializer_class = BrandModelSerializer
    lookup_value_regex = "[0-9a-fA-F-]{36}"
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = CATALOG_PERMISSIONS
    pagination_class = None

    def get_queryset(self):
        queryset = list_brand_models(self.get_tenant_context(), include_inactive=_include_inactive(self.request))
        brand = canonicalize_catalog_name(self.request.query_params.get("brand"))
        if brand:
            queryset = queryset.filter(brand=brand)
        return queryset

    def list(self, request):
        return Response(self.get_serializer(self.get_queryset(), many=True).data)

    def create(self, request):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        instance = create_brand_model(
            self.get_tenant_context(),
            serializer.validated_data["brand"],
            serializer.validated_data["model"],
        )
        return Response(self.get_serializer(instance).data, status=status.HTTP_201_CREATED)

    def destroy(self, request, pk=None):
        delete_brand_model(self.get_tenant_context(), pk)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["post"])
    def deactivate(self, request, pk=None):
        instance = set_brand_model_active(self.get_tenant_context(), pk, False)
        return Response(self.get_serializer(instance).data)

    @action(detail=True, methods=["post"])
    def activate(self, request, pk=None):
        instance = set_brand_model_active(self.get_tenant_context(), pk, True)
        return Response(self.get_serializer(instance).data)
