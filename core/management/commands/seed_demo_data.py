from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand

from core.models import Branch, Company
from core.tenancy import TenantContext
from orders.models import Payment, ServiceOrder
from orders.payments import record_payment
from orders.services import create_order, update_order_status


class Command(BaseCommand):
    help = "Seed a demo repair shop (company, branch, staff and a few service orders) for local development."

    def _user(self, User, username, role, branch, password, **extra):
        user, created = User.objects.get_or_create(
            username=username,
            defaults={
                "email": f"{username}@example.com",
                "role": role,
                "branch": branch,
                "is_active": True,
                **extra,
            },
        )
        if created:
            user.set_password(password)
            user.save(update_fields=["password"])
        return user

    def handle(self, *args, **options):
        User = get_user_model()

        company, _ = Company.objects.get_or_create(
            name="Demo Repairs",
            defaults={"legal_name": "Demo Repairs S.A. de C.V.", "phone": "5550000000"},
        )
        branch, _ = Branch.objects.get_or_create(
            code="MAIN",
            defaults={"company": company, "name": "Main Branch", "order_prefix": "MAIN", "timezone": "America/Mexico_City"},
        )

        admin_user = self._user(User, "admin", User.Role.ADMIN, branch, "admin1234", is_staff=True, is_superuser=True)
        self._user(User, "manager", User.Role.MANAGER, branch, "manager1234")
        technician = self._user(User, "technician", User.Role.TECHNICIAN, branch, "technician1234")
        self._user(User, "receptionist", User.Role.RECEPTIONIST, branch, "receptionist1234")

        if ServiceOrder.objects.filter(branch=branch).exists():
            self.stdout.write(self.style.WARNING("Demo orders already exist; skipping order seeding."))
            return

        ctx = TenantContext(company=company, branch=branch, user=admin_user)
        laptop = create_order(
            ctx,
            {"name": "Ana Pérez", "phone": "55 1234 5678"},
            "Laptop",
            brand="Lenovo",
            model="ThinkPad T14",
            serial="PF-3XK91",
            accessories="Charger",
            reported_problem="Does not power on.",
        )
        printer = create_order(
            ctx,
            {"name": "Luis Gómez", "phone": "(55) 8765-4321", "email": "luis@example.com"},
            "Printer",
            brand="HP",
            reported_problem="Paper jam on every page.",
        )

        tech_ctx = TenantContext(company=company, branch=branch, user=technician)
        update_order_status(tech_ctx, laptop.id, ServiceOrder.Status.UNDER_REVIEW, diagnosis="Faulty DC jack.")
        update_order_status(tech_ctx, laptop.id, ServiceOrder.Status.IN_REPAIR, estimated_cost=Decimal("1200.00"))
        record_payment(ctx, laptop.id, Decimal("500.00"), Payment.Method.CASH, Payment.Kind.DEPOSIT)
        update_order_status(tech_ctx, printer.id, ServiceOrder.Status.UNDER_REVIEW)

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write(
            "Credentials: admin/admin1234, manager/manager1234, technician/technician1234, receptionist/receptionist1234"
        )
        self.stdout.write(f"Branch: {branch.code} | Orders: {laptop.order_number}, {printer.order_number}")
