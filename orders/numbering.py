import re

from django.conf import settings
from django.db import transaction

from common.exceptions import ConflictError
from core.models import Branch

NUMBER_WIDTH = 6


def format_order_number(prefix, sequence):
    return f"{prefix}-{sequence:0{NUMBER_WIDTH}d}"


def _highest_sequence(prefix):
    """Largest numeric suffix already issued under ``prefix`` (0 when none)."""
    from orders.models import ServiceOrder

    pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
    highest = 0
    numbers = ServiceOrder.objects.filter(order_number__startswith=f"{prefix}-").values_list("order_number", flat=True)
    for number in numbers.iterator():
        match = pattern.match(number)
        if match:
            highest = max(highest, int(match.group(1)))
    return highest


def next_order_number(branch):
    """Allocate the next human-facing order number for ``branch``.

    The branch row is locked for the rest of the enclosing transaction, so two
    intakes at the same branch serialize on the counter instead of racing.
    When a candidate is already taken (imported data, a reset counter) the
    counter jumps past the highest number issued under the prefix, so a
    collision is paid for once and not on every later intake.
    """
    from orders.models import ServiceOrder

    if not transaction.get_connection().in_atomic_block:
        raise RuntimeError("next_order_number() must run inside transaction.atomic().")

    locked = Branch.objects.select_for_update().get(pk=branch.pk)
    prefix = locked.order_prefix or locked.code
    sequence = locked.last_order_number + 1

    for _ in range(settings.REPAIRS_ORDER_NUMBER_MAX_RETRIES):
        candidate = format_order_number(prefix, sequence)
        if not ServiceOrder.objects.filter(order_number=candidate).exists():
            Branch.objects.filter(pk=locked.pk).update(last_order_number=sequence)
            branch.last_order_number = sequence
            return candidate
        sequence = max(sequence, _highest_sequence(prefix)) + 1

    raise ConflictError("Could not allocate a unique order number. Please retry.")
