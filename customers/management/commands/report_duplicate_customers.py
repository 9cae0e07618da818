from collections import defaultdict

from django.core.management.base import BaseCommand

from customers.models import Customer
from customers.services import canonicalize_phone


class Command(BaseCommand):
    help = "Report customers whose phones collide once canonicalized (legacy rows stored with formatting)."

    def handle(self, *args, **options):
        grouped = defaultdict(list)
        for customer in Customer.objects.select_related("branch").order_by("created_at", "id").iterator():
            grouped[(customer.branch.code, canonicalize_phone(customer.phone))].append(customer)

        duplicate_groups = {key: group for key, group in grouped.items() if len(group) > 1}
        non_canonical = Customer.objects.exclude(phone__regex=r"^[0-9]+$").count()

        if non_canonical:
            self.stdout.write(self.style.WARNING(f"{non_canonical} customer(s) have a non-canonical phone."))

        if not duplicate_groups:
            self.stdout.write(self.style.SUCCESS("No duplicate customers found."))
            return

        self.stdout.write(self.style.WARNING(f"Found {len(duplicate_groups)} duplicate customer group(s)."))
        for (branch_code, phone), group in duplicate_groups.items():
            names = ", ".join(f"{customer.full_name} [{customer.id}]" for customer in group)
            self.stdout.write(f"- {branch_code} {phone}: {names}")
