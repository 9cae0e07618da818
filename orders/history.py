import json

from django.core.serializers.json import DjangoJSONEncoder

from orders.models import OrderHistoryEntry


def _json_safe(value):
    if value is None:
        return None
    return json.loads(json.dumps(value, cls=DjangoJSONEncoder))


def append_history(
    order,
    *,
    action,
    new_status,
    previous_status=None,
    note=None,
    payload=None,
    actor=None,
    request_id=None,
):
    return OrderHistoryEntry.objects.create(
        order=order,
        action=action,
        previous_status=previous_status,
        new_status=new_status,
        note=note or None,
        payload=_json_safe(payload),
        actor=actor if actor is not None and getattr(actor, "is_authenticated", False) else None,
        request_id=request_id,
    )


def append_history_for_context(ctx, order, **kwargs):
    return append_history(order, actor=ctx.user, request_id=ctx.request_id, **kwargs)


def history_for_order(order, *, ascending=False):
    ordering = ("created_at", "id") if ascending else ("-created_at", "-id")
    return OrderHistoryEntry.objects.filter(order=order).select_related("actor").order_by(*ordering)
