from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("core", "0001_initial"),
    ]

    operations = [
        migrations.AddConstraint(
            model_name="branch",
            constraint=models.UniqueConstraint(
                condition=models.Q(("order_prefix", ""), _negated=True),
                fields=("order_prefix",),
                name="uniq_branch_order_prefix",
            ),
        ),
    ]
