import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

ORDER_STATUS_CHOICES = [
    ("PENDING", "Pending"),
    ("UNDER_REVIEW", "Under review"),
    ("IN_REPAIR", "In repair"),
    ("REPAIRED", "Repaired"),
    ("DELIVERED", "Delivered"),
    ("CANCELLED", "Cancelled"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("catalog", "0001_initial"),
        ("core", "0001_initial"),
        ("customers", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="ServiceOrder",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("order_number", models.CharField(editable=False, max_length=32, unique=True)),
                ("idempotency_key", models.UUIDField(blank=True, editable=False, null=True)),
                ("status", models.CharField(choices=ORDER_STATUS_CHOICES, default="PENDING", max_length=16)),
                ("received_at", models.DateTimeField(auto_now_add=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("serial_number", models.CharField(blank=True, default="", max_length=120)),
                ("accessories", models.TextField(blank=True, default="")),
                ("reported_problem", models.TextField()),
                ("diagnosis", models.TextField(blank=True, null=True)),
                ("repair_performed", models.TextField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("estimated_cost", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("final_cost", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("outstanding_balance", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("signature_url", models.URLField(blank=True, max_length=500, null=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "branch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="service_orders", to="core.branch"
                    ),
                ),
                (
                    "brand_model",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="service_orders",
                        to="catalog.brandmodel",
                    ),
                ),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="service_orders",
                        to="customers.customer",
                    ),
                ),
                (
                    "equipment_type",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="service_orders",
                        to="catalog.equipmenttype",
                    ),
                ),
                (
                    "received_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="received_orders",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["branch", "received_at"], name="order_branch_received_idx"),
                    models.Index(fields=["branch", "status"], name="order_branch_status_idx"),
                    models.Index(fields=["customer", "received_at"], name="order_customer_received_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("idempotency_key__isnull", False)),
                        fields=("branch", "idempotency_key"),
                        name="uniq_order_branch_idempotency_key",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("outstanding_balance__gte", 0)),
                        name="order_outstanding_balance_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="OrderPhoto",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("url", models.URLField(max_length=500)),
                ("storage_path", models.CharField(blank=True, default="", max_length=500)),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("intake", "Intake"),
                            ("diagnosis", "Diagnosis"),
                            ("repair", "Repair"),
                            ("delivery", "Delivery"),
                        ],
                        default="intake",
                        max_length=16,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE, related_name="photos", to="orders.serviceorder"
                    ),
                ),
            ],
            options={
                "indexes": [models.Index(fields=["order", "created_at"], name="orderphoto_order_created_idx")],
            },
        ),
        migrations.CreateModel(
            name="OrderHistoryEntry",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "previous_status",
                    models.CharField(blank=True, choices=ORDER_STATUS_CHOICES, max_length=16, null=True),
                ),
                ("new_status", models.CharField(choices=ORDER_STATUS_CHOICES, max_length=16)),
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("creation", "Creation"),
                            ("status_change", "Status change"),
                            ("payment_recorded", "Payment recorded"),
                            ("other", "Other"),
                        ],
                        max_length=32,
                    ),
                ),
                ("note", models.TextField(blank=True, null=True)),
                ("payload", models.JSONField(blank=True, null=True)),
                ("request_id", models.CharField(blank=True, max_length=255, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE, related_name="history", to="orders.serviceorder"
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "order history entries",
                "indexes": [
                    models.Index(fields=["order", "created_at"], name="history_order_created_idx"),
                    models.Index(fields=["action", "created_at"], name="history_action_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                (
                    "method",
                    models.CharField(
                        choices=[("cash", "Cash"), ("card", "Card"), ("transfer", "Transfer")],
                        max_length=16,
                    ),
                ),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("deposit", "Deposit"),
                            ("partial", "Partial"),
                            ("final_settlement", "Final settlement"),
                        ],
                        max_length=20,
                    ),
                ),
                ("reference", models.CharField(blank=True, max_length=120, null=True)),
                ("note", models.TextField(blank=True, null=True)),
                ("idempotency_key", models.UUIDField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "order",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE, related_name="payments", to="orders.serviceorder"
                    ),
                ),
                (
                    "recorded_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "indexes": [models.Index(fields=["order", "created_at"], name="payment_order_created_idx")],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("idempotency_key__isnull", False)),
                        fields=("order", "idempotency_key"),
                        name="uniq_payment_order_idempotency_key",
                    ),
                    models.CheckConstraint(condition=models.Q(("amount__gt", 0)), name="payment_amount_positive"),
                ],
            },
        ),
    ]
