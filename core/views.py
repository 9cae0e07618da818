import logging

from django.db import DatabaseError, connections
from rest_framework import status, viewsets
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView
from rest_framework_simplejwt.views import TokenObtainPairView

from common.permissions import RoleCapabilityPermission, get_user_role
from core.models import Branch, User
from core.serializers import (
    BranchSerializer,
    CompanySerializer,
    EmailOrUsernameTokenObtainPairSerializer,
    OnboardingSerializer,
    StaffCreateSerializer,
    StaffSerializer,
    StaffUpdateSerializer,
)
from core.services import (
    create_branch,
    create_staff,
    deactivate_company,
    deactivate_staff,
    delete_branch,
    get_staff_member,
    list_staff,
    onboard_company,
    update_branch,
    update_staff,
)
from core.tenancy import TenantScopedViewMixin

logger = logging.getLogger(__name__)


class EmailOrUsernameTokenObtainPairView(TokenObtainPairView):
    serializer_class = EmailOrUsernameTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class OnboardingView(APIView):
    """First-run setup: creates the company and its first branch for the caller."""

    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = OnboardingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        company, branch = onboard_company(
            request.user,
            serializer.validated_data["company"],
            serializer.validated_data["branch"],
        )
        return Response(
            {"company": CompanySerializer(company).data, "branch": BranchSerializer(branch).data},
            status=status.HTTP_201_CREATED,
        )


class CompanyView(TenantScopedViewMixin, APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "get": "branch.read",
        "patch": "company.manage",
        "delete": "company.manage",
    }

    def get(self, request):
        return Response(CompanySerializer(self.get_tenant_context().company).data)

    def patch(self, request):
        company = self.get_tenant_context().company
        serializer = CompanySerializer(company, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        return Response(serializer.data)

    def delete(self, request):
        deactivate_company(self.get_tenant_context().company)
        return Response(status=status.HTTP_204_NO_CONTENT)


class BranchViewSet(TenantScopedViewMixin, viewsets.ModelViewSet):
    queryset = Branch.objects.select_related("company")
    serializer_class = BranchSerializer
    lookup_value_regex = "[0-9a-fA-F-]{36}"
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "branch.read",
        "retrieve": "branch.read",
        "create": "branch.manage",
        "update": "branch.manage",
        "partial_update": "branch.manage",
        "destroy": "branch.manage",
    }

    def get_queryset(self):
        queryset = super().get_queryset().order_by("name")
        user = self.request.user

        if user.is_superuser:
            return queryset
        if user.role == user.Role.ADMIN and user.company_id:
            return queryset.filter(company_id=user.company_id)
        if user.branch_id:
            return queryset.filter(id=user.branch_id)
        return queryset.none()

    def perform_create(self, serializer):
        ctx = self.get_tenant_context()
        serializer.instance = create_branch(ctx.company, serializer.validated_data)

    def perform_update(self, serializer):
        serializer.instance = update_branch(serializer.instance, serializer.validated_data)

    def perform_destroy(self, instance):
        delete_branch(instance)


class StaffViewSet(TenantScopedViewMixin, viewsets.GenericViewSet):
    """Employees of the caller's company. Managers only see their own branch."""

    serializer_class = StaffSerializer
    lookup_value_regex = "[0-9a-fA-F-]{36}"
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "staff.view",
        "retrieve": "staff.view",
        "create": "staff.manage",
        "update": "staff.manage",
        "partial_update": "staff.manage",
        "destroy": "staff.manage",
    }

    def _branch_only(self):
        return get_user_role(self.request.user) != User.Role.ADMIN

    def get_queryset(self):
        include_inactive = self.request.query_params.get("include_inactive", "").lower() in ("1", "true", "yes")
        return list_staff(
            self.get_tenant_context(),
            include_inactive=include_inactive,
            branch_only=self._branch_only(),
        )

    def list(self, request):
        page = self.paginate_queryset(self.get_queryset())
        return self.get_paginated_response(self.get_serializer(page, many=True).data)

    def retrieve(self, request, pk=None):
        user = get_staff_member(self.get_tenant_context(), pk, branch_only=self._branch_only())
        return Response(self.get_serializer(user).data)

    def create(self, request):
        serializer = StaffCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        user = create_staff(self.get_tenant_context(), serializer.validated_data)
        return Response(self.get_serializer(user).data, status=status.HTTP_201_CREATED)

    def update(self, request, pk=None, partial=False):
        serializer = StaffUpdateSerializer(data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        ctx = self.get_tenant_context()
        user = update_staff(ctx, get_staff_member(ctx, pk), serializer.validated_data)
        return Response(self.get_serializer(user).data)

    def partial_update(self, request, pk=None):
        return self.update(request, pk=pk, partial=True)

    def destroy(self, request, pk=None):
        ctx = self.get_tenant_context()
        deactivate_staff(ctx, get_staff_member(ctx, pk))
        return Response(status=status.HTTP_204_NO_CONTENT)


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})


@api_view(["GET"])
@permission_classes([AllowAny])
def readyz(request):
    try:
        with connections["default"].cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except DatabaseError as exc:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None), "detail": str(exc)},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
