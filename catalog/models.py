import uuid

from django.db import models

from core.models import Branch


class EquipmentType(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="equipment_types")
    name = models.CharField(max_length=120)
    usage_count = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["branch", "is_active", "usage_count"], name="equiptype_branch_usage_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["branch", "name"], name="uniq_equipment_type_branch_name"),
        ]

    def __str__(self):
        return self.name


class BrandModel(models.Model):
    NO_BRAND = "SIN MARCA"
    NO_MODEL = "SIN MODELO"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="brand_models")
    brand = models.CharField(max_length=120)
    model = models.CharField(max_length=120)
    usage_count = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["branch", "is_active", "usage_count"], name="brandmodel_branch_usage_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["branch", "brand", "model"], name="uniq_brand_model_branch_pair"),
        ]

    def __str__(self):
        return f"{self.brand} {self.model}"
