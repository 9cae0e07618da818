import logging
import re

from django.contrib.auth import password_validation
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.db.models import Q
from rest_framework.exceptions import NotFound, ValidationError

from common.exceptions import BlockedByDependents, ConflictError
from core.models import Branch, Company, User

logger = logging.getLogger(__name__)

COMPANY_FIELDS = ("name", "legal_name", "tax_id", "phone", "email", "website", "storage_days")
BRANCH_FIELDS = ("name", "address", "phone", "whatsapp", "email", "timezone", "is_active", "order_prefix")


def default_order_prefix(name):
    letters = re.sub(r"[^A-Za-z0-9]", "", name or "").upper()
    return letters[:3] or "ORD"


def _normalize_prefix(value):
    return (value or "").strip().upper()


def _ensure_prefix_available(prefix, exclude_branch_id=None):
    """Order numbers are global, so no two branches may number under the same prefix.

    A branch without an explicit prefix numbers under its code, which makes
    that code taken as well.
    """
    clashes = Branch.objects.filter(Q(order_prefix=prefix) | Q(order_prefix="", code=prefix))
    if exclude_branch_id is not None:
        clashes = clashes.exclude(pk=exclude_branch_id)
    if clashes.exists():
        raise ConflictError(f"Order prefix '{prefix}' is already used by another branch.")


def _generate_branch_code(name):
    base = default_order_prefix(name)
    candidate = base
    suffix = 1
    while Branch.objects.filter(Q(code=candidate) | Q(order_prefix=candidate)).exists():
        suffix += 1
        candidate = f"{base}{suffix}"
    return candidate


def onboard_company(user, company_data, branch_data):
    """Create a company with its first branch and make ``user`` its administrator."""
    if user.company_id or user.branch_id:
        raise ConflictError("This user is already registered with a company.")

    company_name = (company_data.get("name") or "").strip()
    branch_name = (branch_data.get("name") or "").strip()
    errors = {}
    if not company_name:
        errors["company.name"] = "Company name is required."
    if not branch_name:
        errors["branch.name"] = "Branch name is required."
    if errors:
        raise ValidationError(errors)

    with transaction.atomic():
        company = Company.objects.create(
            **{field: company_data[field] for field in COMPANY_FIELDS if company_data.get(field) not in (None, "")},
        )
        branch = create_branch(company, branch_data)

        user.company = company
        user.branch = branch
        user.role = User.Role.ADMIN
        user.save(update_fields=["company", "branch", "role"])

    logger.info(
        "company_onboarded",
        extra={"branch_id": str(branch.id), "user_id": str(user.id)},
    )
    return company, branch


def create_branch(company, data):
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError({"name": "Branch name is required."})

    values = {field: data[field] for field in BRANCH_FIELDS if data.get(field) is not None}
    values["name"] = name
    code = (data.get("code") or "").strip().upper() or _generate_branch_code(name)
    values["order_prefix"] = _normalize_prefix(values.get("order_prefix")) or code
    _ensure_prefix_available(values["order_prefix"])

    try:
        with transaction.atomic():
            return Branch.objects.create(company=company, code=code, **values)
    except IntegrityError as exc:
        raise ConflictError("A branch with this code or order prefix already exists.") from exc


def update_branch(branch, data):
    changed = []
    for field in BRANCH_FIELDS:
        if field in data and data[field] is not None:
            setattr(branch, field, data[field])
            changed.append(field)
    if "order_prefix" in changed:
        branch.order_prefix = _normalize_prefix(branch.order_prefix) or branch.code
        _ensure_prefix_available(branch.order_prefix, exclude_branch_id=branch.pk)
    if changed:
        try:
            with transaction.atomic():
                branch.save(update_fields=[*changed, "updated_at"])
        except IntegrityError as exc:
            raise ConflictError("Another branch already uses this order prefix.") from exc
    return branch


def delete_branch(branch):
    from orders.models import ServiceOrder

    order_count = ServiceOrder.objects.filter(branch=branch).count()
    if order_count:
        raise BlockedByDependents(
            "A branch with service orders cannot be deleted.",
            dependents={"orders": order_count},
        )
    user_count = branch.users.count()
    if user_count:
        raise BlockedByDependents(
            "A branch with assigned employees cannot be deleted.",
            dependents={"users": user_count},
        )

    from catalog.models import BrandModel, EquipmentType
    from customers.models import Customer

    with transaction.atomic():
        Customer.objects.filter(branch=branch).delete()
        EquipmentType.objects.filter(branch=branch).delete()
        BrandModel.objects.filter(branch=branch).delete()
        branch.delete()
    logger.info("branch_deleted", extra={"branch_id": str(branch.id)})


def deactivate_company(company):
    company.is_active = False
    company.save(update_fields=["is_active", "updated_at"])
    company.branches.update(is_active=False)
    logger.info("company_deactivated company_id=%s", company.id)
    return company


def _staff_branch(company, branch_id):
    branch = Branch.objects.filter(company=company, id=branch_id).first()
    if branch is None:
        raise ValidationError({"branch": "Branch does not belong to this company."})
    return branch


def _ensure_email_available(email, exclude_user_id=None):
    if not email:
        return
    clashes = User.objects.filter(email__iexact=email)
    if exclude_user_id is not None:
        clashes = clashes.exclude(pk=exclude_user_id)
    if clashes.exists():
        raise ConflictError("A user with this email already exists.")


def _apply_password(user, password):
    try:
        password_validation.validate_password(password, user=user)
    except DjangoValidationError as exc:
        raise ValidationError({"password": list(exc.messages)}) from None
    user.set_password(password)


def _save_staff(user, **kwargs):
    try:
        with transaction.atomic():
            user.save(**kwargs)
    except IntegrityError as exc:
        raise ConflictError("A user with this username or email already exists.") from exc


def list_staff(ctx, *, include_inactive=False, branch_only=False):
    queryset = User.objects.filter(company=ctx.company).select_related("branch").order_by("username")
    if branch_only:
        queryset = queryset.filter(branch=ctx.branch)
    if not include_inactive:
        queryset = queryset.filter(is_active=True)
    return queryset


def get_staff_member(ctx, user_id, *, branch_only=False):
    user = list_staff(ctx, include_inactive=True, branch_only=branch_only).filter(id=user_id).first()
    if user is None:
        raise NotFound("Employee was not found.")
    return user


def create_staff(ctx, data):
    """Create an employee with a role, attached to a branch of the caller's company."""
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""
    role = data.get("role") or User.Role.RECEPTIONIST
    errors = {}
    if not username:
        errors["username"] = "Username is required."
    if not password:
        errors["password"] = "Password is required."
    if role not in User.Role.values:
        errors["role"] = f"Unknown role '{role}'."
    if errors:
        raise ValidationError(errors)

    branch = _staff_branch(ctx.company, data.get("branch") or ctx.branch.id)
    email = (data.get("email") or "").strip().lower()
    _ensure_email_available(email)

    user = User(
        username=username,
        email=email,
        first_name=(data.get("first_name") or "").strip(),
        last_name=(data.get("last_name") or "").strip(),
        role=role,
        company=ctx.company,
        branch=branch,
    )
    _apply_password(user, password)
    _save_staff(user)

    logger.info(
        "staff_created role=%s",
        role,
        extra={"user_id": str(user.id), "branch_id": str(branch.id), "request_id": ctx.request_id},
    )
    return user


def update_staff(ctx, user, data):
    """Re-role, move between the company's branches, rename, reactivate or reset a password."""
    is_self = ctx.user is not None and user.pk == ctx.user.pk
    changed = []

    if data.get("branch") is not None:
        user.branch = _staff_branch(ctx.company, data["branch"])
        changed.append("branch")
    if data.get("role") is not None:
        if data["role"] not in User.Role.values:
            raise ValidationError({"role": f"Unknown role '{data['role']}'."})
        if is_self and data["role"] != user.role:
            raise ValidationError({"role": "You cannot change your own role."})
        user.role = data["role"]
        changed.append("role")
    if data.get("is_active") is not None:
        if is_self and not data["is_active"]:
            raise ValidationError({"is_active": "You cannot deactivate your own account."})
        user.is_active = data["is_active"]
        changed.append("is_active")
    if data.get("email") is not None:
        email = data["email"].strip().lower()
        _ensure_email_available(email, exclude_user_id=user.pk)
        user.email = email
        changed.append("email")
    for field in ("first_name", "last_name"):
        if data.get(field) is not None:
            setattr(user, field, data[field].strip())
            changed.append(field)
    if data.get("password"):
        _apply_password(user, data["password"])
        changed.append("password")

    if changed:
        _save_staff(user, update_fields=changed)
        logger.info(
            "staff_updated fields=%s",
            ",".join(changed),
            extra={"user_id": str(user.id), "branch_id": str(user.branch_id), "request_id": ctx.request_id},
        )
    return user


def deactivate_staff(ctx, user):
    """Soft-disable an employee. Orders and history keep pointing at the account."""
    if ctx.user is not None and user.pk == ctx.user.pk:
        raise ValidationError({"is_active": "You cannot deactivate your own account."})
    user.is_active = False
    user.save(update_fields=["is_active"])
    logger.info("staff_deactivated", extra={"user_id": str(user.id), "request_id": ctx.request_id})
    return user
