"""Service-order status lifecycle.

Staff may move an order between any two known statuses (corrections and
reopenings are routine at the counter). ``ALLOWED_TRANSITIONS`` describes the
nominal workflow only; moves outside it are allowed and flagged in the audit
trail instead of rejected.
"""

from dataclasses import dataclass
from datetime import datetime

from rest_framework.exceptions import ValidationError

from orders.models import ServiceOrder

Status = ServiceOrder.Status

ALLOWED_TRANSITIONS = {
    Status.PENDING: {Status.UNDER_REVIEW, Status.CANCELLED},
    Status.UNDER_REVIEW: {Status.IN_REPAIR, Status.CANCELLED},
    Status.IN_REPAIR: {Status.REPAIRED, Status.CANCELLED},
    Status.REPAIRED: {Status.DELIVERED, Status.CANCELLED},
    Status.DELIVERED: set(),
    Status.CANCELLED: set(),
}

TERMINAL_STATUSES = {Status.DELIVERED, Status.CANCELLED}


@dataclass(frozen=True)
class TransitionResult:
    previous_status: str
    new_status: str
    completed_at_set: bool
    off_path: bool

    @property
    def changed(self):
        return self.previous_status != self.new_status


def parse_status(value):
    normalized = str(value or "").strip().upper().replace(" ", "_")
    try:
        return Status(normalized)
    except ValueError:
        raise ValidationError({"status": f"Unknown status '{value}'. Expected one of: {', '.join(Status.values)}."}) from None


def is_nominal_transition(previous_status, new_status):
    if previous_status == new_status:
        return True
    return new_status in ALLOWED_TRANSITIONS.get(Status(previous_status), set())


def apply_transition(order, new_status, now: datetime) -> TransitionResult:
    """Write ``new_status`` onto ``order`` (unsaved) and derive its side effects.

    Entering DELIVERED stamps ``completed_at`` once; leaving DELIVERED keeps it.
    """
    new_status = parse_status(new_status)
    previous_status = order.status

    completed_at_set = False
    if new_status == Status.DELIVERED and order.completed_at is None:
        order.completed_at = now
        completed_at_set = True

    order.status = new_status
    return TransitionResult(
        previous_status=previous_status,
        new_status=new_status.value,
        completed_at_set=completed_at_set,
        off_path=not is_nominal_transition(previous_status, new_status),
    )
