import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("core", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="EquipmentType",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=120)),
                ("usage_count", models.PositiveIntegerField(default=0)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "branch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="equipment_types", to="core.branch"
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["branch", "is_active", "usage_count"], name="equiptype_branch_usage_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=["branch", "name"], name="uniq_equipment_type_branch_name"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BrandModel",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("brand", models.CharField(max_length=120)),
                ("model", models.CharField(max_length=120)),
                ("usage_count", models.PositiveIntegerField(default=0)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "branch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="brand_models", to="core.branch"
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["branch", "is_active", "usage_count"], name="brandmodel_branch_usage_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=["branch", "brand", "model"], name="uniq_brand_model_branch_pair"),
                ],
            },
        ),
    ]
