from django.db.models import Q
from rest_framework.exceptions import NotFound

from customers.services import canonicalize_phone
from orders.models import ServiceOrder
from orders.state import parse_status


def _order_queryset():
    return ServiceOrder.objects.select_related("branch", "customer", "equipment_type", "brand_model", "received_by")


def get_order(ctx, order_id):
    order = _order_queryset().filter(branch=ctx.branch, id=order_id).first()
    if order is None:
        raise NotFound("Service order was not found.")
    return order


def normalize_order_number(value):
    return (value or "").strip().upper()


def get_order_by_number(ctx, order_number):
    order = _order_queryset().filter(branch=ctx.branch, order_number=normalize_order_number(order_number)).first()
    if order is None:
        raise NotFound("Service order was not found.")
    return order


def list_orders(ctx, status=None, search=None):
    queryset = _order_queryset().filter(branch=ctx.branch)
    if status:
        queryset = queryset.filter(status=parse_status(status))

    search = (search or "").strip()
    if search:
        condition = (
            Q(order_number__icontains=search)
            | Q(customer__full_name__icontains=search)
            | Q(serial_number__icontains=search)
            | Q(equipment_type__name__icontains=search)
        )
        digits = canonicalize_phone(search)
        if len(digits) >= 4:
            condition |= Q(customer__phone__contains=digits)
        queryset = queryset.filter(condition)

    return queryset.order_by("-received_at", "-order_number")


def public_order_status(order_number):
    """Customer-facing lookup by order number. Exposes no customer or money data."""
    order = (
        ServiceOrder.objects.select_related("branch", "equipment_type", "brand_model")
        .filter(order_number=normalize_order_number(order_number), branch__is_active=True)
        .first()
    )
    if order is None:
        raise NotFound("Service order was not found.")

    equipment = order.equipment_type.name
    if order.brand_model is not None:
        equipment = f"{equipment} {order.brand_model.brand} {order.brand_model.model}"

    return {
        "order_number": order.order_number,
        "status": order.status,
        "status_label": order.get_status_display(),
        "received_at": order.received_at,
        "completed_at": order.completed_at,
        "equipment": equipment,
        "branch_name": order.branch.name,
    }
