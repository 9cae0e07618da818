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
            name="Customer",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("full_name", models.CharField(max_length=255)),
                ("phone", models.CharField(max_length=32)),
                ("email", models.EmailField(blank=True, max_length=254, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "branch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="customers", to="core.branch"
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["branch", "full_name"], name="customer_branch_name_idx"),
                    models.Index(fields=["branch", "email"], name="customer_branch_email_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=["branch", "phone"], name="uniq_customer_branch_phone"),
                ],
            },
        ),
    ]
