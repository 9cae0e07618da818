from django.core.management.base import BaseCommand, CommandError

from core.models import Branch
from orders.models import ServiceOrder
from orders.payments import reconcile_order_balance


class Command(BaseCommand):
    help = "Compare stored outstanding balances against cost minus recorded payments."

    def add_arguments(self, parser):
        parser.add_argument("--branch", help="Branch code to limit the check to.")
        parser.add_argument(
            "--apply",
            action="store_true",
            help="Repair diverging balances and record an audit entry on each repaired order.",
        )

    def handle(self, *args, **options):
        apply_changes = options["apply"]
        queryset = ServiceOrder.objects.order_by("received_at")

        branch_code = options.get("branch")
        if branch_code:
            branch = Branch.objects.filter(code=branch_code.strip().upper()).first()
            if branch is None:
                raise CommandError(f"Branch '{branch_code}' does not exist.")
            queryset = queryset.filter(branch=branch)

        diverging = []
        for order in queryset.iterator():
            stored, expected = reconcile_order_balance(order, apply=apply_changes)
            if stored != expected:
                diverging.append((order.order_number, stored, expected))

        if not diverging:
            self.stdout.write(self.style.SUCCESS("All outstanding balances match recorded payments."))
            return

        self.stdout.write(self.style.WARNING(f"Found {len(diverging)} order(s) with a diverging balance."))
        for order_number, stored, expected in diverging:
            self.stdout.write(f"- {order_number}: stored={stored} expected={expected}")

        if not apply_changes:
            self.stdout.write(self.style.WARNING("Dry run only. Re-run with --apply to repair balances."))
            return

        self.stdout.write(self.style.SUCCESS(f"Repaired {len(diverging)} order balance(s)."))
