import uuid

from django.conf import settings
from django.db import models

from catalog.models import BrandModel, EquipmentType
from core.models import Branch
from customers.models import Customer


class ServiceOrder(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        UNDER_REVIEW = "UNDER_REVIEW", "Under review"
        IN_REPAIR = "IN_REPAIR", "In repair"
        REPAIRED = "REPAIRED", "Repaired"
        DELIVERED = "DELIVERED", "Delivered"
        CANCELLED = "CANCELLED", "Cancelled"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="service_orders")
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="service_orders")
    equipment_type = models.ForeignKey(EquipmentType, on_delete=models.PROTECT, related_name="service_orders")
    brand_model = models.ForeignKey(
        BrandModel, on_delete=models.PROTECT, null=True, blank=True, related_name="service_orders"
    )
    received_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="received_orders"
    )
    order_number = models.CharField(max_length=32, unique=True, editable=False)
    idempotency_key = models.UUIDField(null=True, blank=True, editable=False)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    received_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    serial_number = models.CharField(max_length=120, blank=True, default="")
    accessories = models.TextField(blank=True, default="")
    reported_problem = models.TextField()
    diagnosis = models.TextField(null=True, blank=True)
    repair_performed = models.TextField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")
    estimated_cost = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    final_cost = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    outstanding_balance = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    signature_url = models.URLField(max_length=500, null=True, blank=True)
    signature_path = models.CharField(max_length=500, blank=True, default="")
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["branch", "received_at"], name="order_branch_received_idx"),
            models.Index(fields=["branch", "status"], name="order_branch_status_idx"),
            models.Index(fields=["customer", "received_at"], name="order_customer_received_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["branch", "idempotency_key"],
                condition=models.Q(idempotency_key__isnull=False),
                name="uniq_order_branch_idempotency_key",
            ),
            models.CheckConstraint(
                condition=models.Q(outstanding_balance__gte=0),
                name="order_outstanding_balance_non_negative",
            ),
        ]

    def __str__(self):
        return self.order_number

    @property
    def billable_cost(self):
        if self.final_cost is not None:
            return self.final_cost
        return self.estimated_cost


class OrderPhoto(models.Model):
    class Kind(models.TextChoices):
        INTAKE = "intake", "Intake"
        DIAGNOSIS = "diagnosis", "Diagnosis"
        REPAIR = "repair", "Repair"
        DELIVERY = "delivery", "Delivery"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(ServiceOrder, on_delete=models.CASCADE, related_name="photos")
    url = models.URLField(max_length=500)
    storage_path = models.CharField(max_length=500, blank=True, default="")
    kind = models.CharField(max_length=16, choices=Kind.choices, default=Kind.INTAKE)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["order", "created_at"], name="orderphoto_order_created_idx"),
        ]


class AppendOnlyError(Exception):
    pass


class AppendOnlyModel(models.Model):
    """Rows can be inserted once; instance-level updates and deletes are refused."""

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise AppendOnlyError(f"{type(self).__name__} rows are immutable once written.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise AppendOnlyError(f"{type(self).__name__} rows cannot be deleted individually.")


class OrderHistoryEntry(AppendOnlyModel):
    class Action(models.TextChoices):
        CREATION = "creation", "Creation"
        STATUS_CHANGE = "status_change", "Status change"
        PAYMENT_RECORDED = "payment_recorded", "Payment recorded"
        OTHER = "other", "Other"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(ServiceOrder, on_delete=models.CASCADE, related_name="history")
    previous_status = models.CharField(max_length=16, choices=ServiceOrder.Status.choices, null=True, blank=True)
    new_status = models.CharField(max_length=16, choices=ServiceOrder.Status.choices)
    action = models.CharField(max_length=32, choices=Action.choices)
    note = models.TextField(null=True, blank=True)
    payload = models.JSONField(null=True, blank=True)
    actor = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    request_id = models.CharField(max_length=255, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name_plural = "order history entries"
        indexes = [
            models.Index(fields=["order", "created_at"], name="history_order_created_idx"),
            models.Index(fields=["action", "created_at"], name="history_action_created_idx"),
        ]


class Payment(AppendOnlyModel):
    class Method(models.TextChoices):
        CASH = "cash", "Cash"
        CARD = "card", "Card"
        TRANSFER = "transfer", "Transfer"

    class Kind(models.TextChoices):
        DEPOSIT = "deposit", "Deposit"
        PARTIAL = "partial", "Partial"
        FINAL_SETTLEMENT = "final_settlement", "Final settlement"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(ServiceOrder, on_delete=models.CASCADE, related_name="payments")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    method = models.CharField(max_length=16, choices=Method.choices)
    kind = models.CharField(max_length=20, choices=Kind.choices)
    reference = models.CharField(max_length=120, null=True, blank=True)
    note = models.TextField(null=True, blank=True)
    idempotency_key = models.UUIDField(null=True, blank=True)
    recorded_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["order", "created_at"], name="payment_order_created_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["order", "idempotency_key"],
                condition=models.Q(idempotency_key__isnull=False),
                name="uniq_payment_order_idempotency_key",
            ),
            models.CheckConstraint(condition=models.Q(amount__gt=0), name="payment_amount_positive"),
        ]
