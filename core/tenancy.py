"""Resolve the company/branch scope an authenticated principal operates in.

Every service in the order engine takes a :class:`TenantContext` as its first
argument instead of reading the current user or branch from ambient state.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from rest_framework.exceptions import NotAuthenticated, PermissionDenied, ValidationError

from core.models import Branch, Company, User

BRANCH_HEADER = "X-Branch-ID"


@dataclass(frozen=True)
class TenantContext:
    company: Company
    branch: Branch
    user: User | None = None
    request_id: str | None = None

    @property
    def branch_id(self):
        return self.branch.id

    @property
    def company_id(self):
        return self.company.id


def _parse_branch_id(value):
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError({"branch": "Branch id is not a valid UUID."}) from None


def resolve_tenant_context(user, requested_branch_id=None, request_id=None) -> TenantContext:
    if user is None or not getattr(user, "is_authenticated", False):
        raise NotAuthenticated()

    requested_branch_id = _parse_branch_id(requested_branch_id)
    branch = None

    if requested_branch_id and requested_branch_id != user.branch_id:
        queryset = Branch.objects.select_related("company")
        if not user.is_superuser:
            if user.role != User.Role.ADMIN or not user.company_id:
                raise PermissionDenied("You can only operate on your own branch.")
            queryset = queryset.filter(company_id=user.company_id)
        branch = queryset.filter(id=requested_branch_id).first()
        if branch is None:
            raise PermissionDenied("You can only operate on branches of your company.")
    elif user.branch_id:
        branch = Branch.objects.select_related("company").get(id=user.branch_id)

    if branch is None:
        raise ValidationError("Authenticated user must belong to a branch to operate on service orders.")
    if not branch.is_active:
        raise PermissionDenied("This branch is disabled.")
    if not branch.company.is_active:
        raise PermissionDenied("This company is disabled.")

    return TenantContext(company=branch.company, branch=branch, user=user, request_id=request_id)


def get_request_id(request):
    return getattr(request, "request_id", None)


def context_from_request(request) -> TenantContext:
    return resolve_tenant_context(
        request.user,
        requested_branch_id=request.headers.get(BRANCH_HEADER),
        request_id=get_request_id(request),
    )


class TenantScopedViewMixin:
    """Resolves and caches the tenant context for the current request."""

    def get_tenant_context(self) -> TenantContext:
        context = getattr(self.request, "tenant_context", None)
        if context is None:
            context = context_from_request(self.request)
            # Stored on the Django request so the access log can read the branch.
            self.request._request.tenant_context = context
        return context
