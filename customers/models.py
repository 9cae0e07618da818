import uuid

from django.db import models

from core.models import Branch


class Customer(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="customers")
    full_name = models.CharField(max_length=255)
    phone = models.CharField(max_length=32)
    email = models.EmailField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["branch", "full_name"], name="customer_branch_name_idx"),
            models.Index(fields=["branch", "email"], name="customer_branch_email_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["branch", "phone"], name="uniq_customer_branch_phone"),
        ]

    def __str__(self):
        return f"{self.full_name} ({self.phone})"
