from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("reseller_checkout", "0001_initial"),
    ]

    operations = [
        migrations.AlterField(
            model_name="coupon",
            name="discount_type",
            field=models.CharField(
                choices=[
                    ("percentage", "Percentage discount"),
                    ("fixed", "Fixed amount discount"),
                    ("free_months", "Free months"),
                    ("service_one_dollar", "Cheapest service at a fixed price"),
                ],
                default="percentage",
                max_length=20,
            ),
        ),
    ]
