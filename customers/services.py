"""Customer side of the entity resolver.

Customers are matched on their canonical phone within a branch. The database
constraint ``uniq_customer_branch_phone`` is the final arbiter of uniqueness;
the lookups here only avoid the round trip to a failing insert.
"""

import logging
import re

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import validate_email
from django.db import IntegrityError, transaction
from django.db.models import Q
from rest_framework.exceptions import NotFound, ValidationError

from common.exceptions import BlockedByDependents, ConflictError
from customers.models import Customer

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def canonicalize_phone(raw):
    return _NON_DIGITS.sub("", raw or "")


def clean_customer_input(name, phone, email):
    errors = {}
    full_name = " ".join((name or "").split())
    if not full_name:
        errors["name"] = "Customer name is required."

    canonical_phone = canonicalize_phone(phone)
    min_digits = settings.REPAIRS_PHONE_MIN_DIGITS
    if len(canonical_phone) < min_digits:
        errors["phone"] = f"Phone must contain at least {min_digits} digits."

    clean_email = (email or "").strip().lower() or None
    if clean_email:
        try:
            validate_email(clean_email)
        except DjangoValidationError:
            errors["email"] = "Enter a valid email address."

    if errors:
        raise ValidationError(errors)
    return full_name, canonical_phone, clean_email


def _find_by_phone(branch, phone):
    return Customer.objects.filter(branch=branch, phone=phone).first()


def _insert_customer(branch, full_name, phone, email):
    with transaction.atomic():
        return Customer.objects.create(branch=branch, full_name=full_name, phone=phone, email=email)


def resolve_or_create_customer(ctx, name, phone, email=None):
    """Return the branch customer owning ``phone``, creating it when missing.

    An existing customer gets its name corrected to the new input, and its
    email too when one is supplied. A concurrent intake that inserts the same
    phone first makes our insert fail on the unique constraint; that conflict
    is resolved by re-reading the winning row.
    """
    full_name, canonical_phone, clean_email = clean_customer_input(name, phone, email)

    customer = _find_by_phone(ctx.branch, canonical_phone)
    if customer is None:
        try:
            customer = _insert_customer(ctx.branch, full_name, canonical_phone, clean_email)
        except IntegrityError:
            customer = _find_by_phone(ctx.branch, canonical_phone)
            if customer is None:
                raise
            logger.info(
                "customer_insert_conflict_resolved",
                extra={"branch_id": str(ctx.branch_id), "request_id": ctx.request_id},
            )
        else:
            logger.info(
                "customer_created",
                extra={"branch_id": str(ctx.branch_id), "request_id": ctx.request_id},
            )
            return customer

    changed = []
    if customer.full_name != full_name:
        customer.full_name = full_name
        changed.append("full_name")
    if clean_email and customer.email != clean_email:
        customer.email = clean_email
        changed.append("email")
    if changed:
        customer.save(update_fields=[*changed, "updated_at"])
    return customer


def register_customer(ctx, name, phone, email=None):
    full_name, canonical_phone, clean_email = clean_customer_input(name, phone, email)
    try:
        customer = _insert_customer(ctx.branch, full_name, canonical_phone, clean_email)
    except IntegrityError as exc:
        raise ConflictError("A customer with this phone already exists in this branch.") from exc
    logger.info("customer_registered", extra={"branch_id": str(ctx.branch_id), "request_id": ctx.request_id})
    return customer


def get_customer(ctx, customer_id):
    customer = Customer.objects.filter(branch=ctx.branch, id=customer_id).first()
    if customer is None:
        raise NotFound("Customer was not found.")
    return customer


def update_customer(ctx, customer_id, *, name=None, phone=None, email=None):
    customer = get_customer(ctx, customer_id)
    full_name, canonical_phone, clean_email = clean_customer_input(
        name if name is not None else customer.full_name,
        phone if phone is not None else customer.phone,
        email if email is not None else customer.email,
    )
    customer.full_name = full_name
    customer.phone = canonical_phone
    customer.email = clean_email
    try:
        with transaction.atomic():
            customer.save(update_fields=["full_name", "phone", "email", "updated_at"])
    except IntegrityError as exc:
        raise ConflictError("A customer with this phone already exists in this branch.") from exc
    return customer


def delete_customer(ctx, customer_id):
    customer = get_customer(ctx, customer_id)
    order_count = customer.service_orders.count()
    if order_count:
        raise BlockedByDependents(
            "A customer with service orders cannot be deleted.",
            dependents={"orders": order_count},
        )
    customer.delete()
    logger.info("customer_deleted", extra={"branch_id": str(ctx.branch_id), "request_id": ctx.request_id})


def search_customers(ctx, term, limit=10):
    queryset = Customer.objects.filter(branch=ctx.branch)
    term = (term or "").strip()
    if term:
        condition = Q(full_name__icontains=term) | Q(email__icontains=term)
        digits = canonicalize_phone(term)
        if digits:
            condition |= Q(phone__contains=digits)
        queryset = queryset.filter(condition)
    return list(queryset.order_by("full_name")[:limit])
