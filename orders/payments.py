"""Payment ledger: records payments against an order and maintains its balance.

The stored ``outstanding_balance`` is decremented at write time. The payment
insert, the balance update and the history entry commit together in one
transaction while the order row is locked, so concurrent payments (or a
payment racing a status update) on the same order serialize.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from common.utils import ZERO, to_money
from orders.history import append_history, append_history_for_context
from orders.models import OrderHistoryEntry, Payment, ServiceOrder

logger = logging.getLogger(__name__)

METHOD_ALIASES = {
    "efectivo": Payment.Method.CASH,
    "tarjeta": Payment.Method.CARD,
    "transferencia": Payment.Method.TRANSFER,
}

KIND_ALIASES = {
    "anticipo": Payment.Kind.DEPOSIT,
    "abono": Payment.Kind.PARTIAL,
    "pago_final": Payment.Kind.FINAL_SETTLEMENT,
    "final": Payment.Kind.FINAL_SETTLEMENT,
}


@dataclass(frozen=True)
class PaymentResult:
    payment: Payment
    balance_before: Decimal
    balance_after: Decimal
    replayed: bool = False


def _parse_choice(value, choices, aliases, field):
    normalized = str(value or "").strip().lower()
    if normalized in aliases:
        return aliases[normalized]
    try:
        return choices(normalized)
    except ValueError:
        raise ValidationError({field: f"Unknown {field} '{value}'. Expected one of: {', '.join(choices.values)}."}) from None


def parse_method(value):
    return _parse_choice(value, Payment.Method, METHOD_ALIASES, "method")


def parse_kind(value):
    return _parse_choice(value, Payment.Kind, KIND_ALIASES, "kind")


def parse_amount(value, field="amount"):
    try:
        amount = to_money(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError({field: "Enter a valid amount."}) from None
    if amount is None or not amount.is_finite():
        raise ValidationError({field: "Enter a valid amount."})
    return amount


def total_paid(order):
    return to_money(Payment.objects.filter(order=order).aggregate(total=Sum("amount"))["total"] or ZERO)


def expected_balance(order, paid=None):
    cost = order.billable_cost
    if cost is None:
        return ZERO
    if paid is None:
        paid = total_paid(order)
    return max(ZERO, to_money(cost - paid))


def payment_summary(order):
    aggregate = Payment.objects.filter(order=order).aggregate(total=Sum("amount"))
    return {
        "total_paid": to_money(aggregate["total"] or ZERO),
        "payment_count": Payment.objects.filter(order=order).count(),
        "outstanding_balance": order.outstanding_balance,
        "billable_cost": order.billable_cost,
    }


def _lock_order(ctx, order_id):
    order = ServiceOrder.objects.select_for_update().filter(branch=ctx.branch, id=order_id).first()
    if order is None:
        raise NotFound("Service order was not found.")
    return order


def record_payment(ctx, order_id, amount, method, kind, reference=None, note=None, idempotency_key=None):
    amount = parse_amount(amount)
    if amount <= 0:
        raise ValidationError({"amount": "Payment amount must be greater than zero."})
    method = parse_method(method)
    kind = parse_kind(kind)

    with transaction.atomic():
        order = _lock_order(ctx, order_id)

        if idempotency_key:
            existing = Payment.objects.filter(order=order, idempotency_key=idempotency_key).first()
            if existing is not None:
                logger.info(
                    "payment_replayed",
                    extra={"order_id": str(order.id), "payment_id": str(existing.id), "request_id": ctx.request_id},
                )
                return PaymentResult(
                    payment=existing,
                    balance_before=order.outstanding_balance,
                    balance_after=order.outstanding_balance,
                    replayed=True,
                )

        balance_before = to_money(order.outstanding_balance)
        if kind != Payment.Kind.FINAL_SETTLEMENT and amount > balance_before:
            raise ValidationError({"amount": "Payment amount cannot be greater than the outstanding balance."})

        payment = Payment.objects.create(
            order=order,
            amount=amount,
            method=method,
            kind=kind,
            reference=(reference or "").strip() or None,
            note=(note or "").strip() or None,
            idempotency_key=idempotency_key,
            recorded_by=ctx.user if ctx.user is not None and ctx.user.is_authenticated else None,
        )

        balance_after = max(ZERO, balance_before - amount)
        order.outstanding_balance = balance_after
        order.save(update_fields=["outstanding_balance", "updated_at"])

        append_history_for_context(
            ctx,
            order,
            action=OrderHistoryEntry.Action.PAYMENT_RECORDED,
            previous_status=order.status,
            new_status=order.status,
            note=f"Payment of {amount} by {method.label.lower()}",
            payload={
                "payment_id": payment.id,
                "amount": amount,
                "method": method.value,
                "kind": kind.value,
                "balance_before": balance_before,
                "balance_after": balance_after,
            },
        )

    logger.info(
        "payment_recorded",
        extra={
            "order_id": str(order.id),
            "order_number": order.order_number,
            "payment_id": str(payment.id),
            "branch_id": str(ctx.branch_id),
            "request_id": ctx.request_id,
        },
    )
    return PaymentResult(payment=payment, balance_before=balance_before, balance_after=balance_after)


def payments_for_order(ctx, order_id):
    order = ServiceOrder.objects.filter(branch=ctx.branch, id=order_id).first()
    if order is None:
        raise NotFound("Service order was not found.")
    return order, Payment.objects.filter(order=order).select_related("recorded_by").order_by("created_at")


def reconcile_order_balance(order, *, apply=False):
    """Compare the stored balance with the one derived from cost and payments.

    Returns ``(stored, expected)``. With ``apply`` the stored value is repaired
    and an ``other`` history entry documents the correction.
    """
    with transaction.atomic():
        locked = ServiceOrder.objects.select_for_update().get(pk=order.pk)
        stored = to_money(locked.outstanding_balance)
        expected = expected_balance(locked)
        if apply and stored != expected:
            locked.outstanding_balance = expected
            locked.save(update_fields=["outstanding_balance", "updated_at"])
            append_history(
                locked,
                action=OrderHistoryEntry.Action.OTHER,
                previous_status=locked.status,
                new_status=locked.status,
                note="Outstanding balance reconciled against recorded payments.",
                payload={
                    "balance_before": stored,
                    "balance_after": expected,
                    "reconciled_at": timezone.now(),
                },
            )
            logger.warning(
                "order_balance_reconciled",
                extra={"order_id": str(locked.id), "order_number": locked.order_number},
            )
    return stored, expected
