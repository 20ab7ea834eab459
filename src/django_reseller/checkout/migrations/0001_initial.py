import uuid

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Coupon",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("code", models.CharField(max_length=100, unique=True)),
                (
                    "discount_type",
                    models.CharField(
                        choices=[
                            ("percentage", "Percentage discount"),
                            ("fixed", "Fixed amount discount"),
                            ("free_months", "Free months"),
                        ],
                        default="percentage",
                        max_length=20,
                    ),
                ),
                (
                    "discount_value",
                    models.DecimalField(
                        decimal_places=2,
                        default=0,
                        help_text="Percentage (0-100) or fixed amount depending on discount_type.",
                        max_digits=12,
                    ),
                ),
                ("free_months", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "max_uses",
                    models.PositiveIntegerField(
                        blank=True,
                        help_text="Maximum redemptions across all users. Empty means unlimited.",
                        null=True,
                    ),
                ),
                ("current_uses", models.PositiveIntegerField(default=0)),
                ("valid_from", models.DateTimeField(default=django.utils.timezone.now)),
                ("valid_until", models.DateTimeField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["code"],
            },
        ),
        migrations.CreateModel(
            name="GatewayEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("gateway_event_id", models.CharField(max_length=100, unique=True)),
                ("kind", models.CharField(max_length=100)),
                ("payload", models.JSONField(default=dict)),
                ("processed", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="Purchase",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("subtotal", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("tax_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                (
                    "total_amount",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Tax-inclusive amount charged. Immutable once the purchase leaves pending.",
                        max_digits=12,
                    ),
                ),
                (
                    "payment_status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("payment_method", models.CharField(blank=True, default="", max_length=50)),
                ("gateway_order_id", models.CharField(blank=True, db_index=True, default="", max_length=100)),
                ("gateway_payment_id", models.CharField(blank=True, default="", max_length=100)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                (
                    "cancel_reason",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("dismissed", "Checkout dismissed"),
                            ("expired", "Expired"),
                            ("user", "Cancelled by user"),
                        ],
                        default="",
                        max_length=20,
                    ),
                ),
                ("coupon_code", models.CharField(blank=True, default="", max_length=100)),
                ("coupon_discount", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("coupon_free_months", models.PositiveIntegerField(blank=True, null=True)),
                ("customer_gst_number", models.CharField(blank=True, default="", max_length=15)),
                ("customer_business_name", models.CharField(blank=True, default="", max_length=200)),
                ("customer_address", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="purchases",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["user", "payment_status"], name="purchase_user_status_idx")],
            },
        ),
        migrations.CreateModel(
            name="PurchaseItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "item_type",
                    models.CharField(
                        choices=[("service", "Service"), ("bundle", "Bundle"), ("addon", "Add-on")],
                        max_length=20,
                    ),
                ),
                ("service_id", models.CharField(blank=True, default="", max_length=100)),
                ("bundle_id", models.CharField(blank=True, default="", max_length=100)),
                ("addon_id", models.CharField(blank=True, default="", max_length=100)),
                ("item_name", models.CharField(max_length=300)),
                ("item_price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("billing_period", models.CharField(blank=True, default="", max_length=20)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "purchase",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="reseller_checkout.purchase",
                    ),
                ),
            ],
            options={
                "ordering": ["id"],
            },
        ),
        migrations.CreateModel(
            name="CouponUsage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("used_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "coupon",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="usages",
                        to="reseller_checkout.coupon",
                    ),
                ),
                (
                    "purchase",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="coupon_usages",
                        to="reseller_checkout.purchase",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="coupon_usages",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-used_at"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("coupon", "user"),
                        name="checkout_couponusage_unique_coupon_user",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="EventProcessingException",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("data", models.TextField(blank=True, default="")),
                ("message", models.CharField(max_length=500)),
                ("traceback", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "event",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="exceptions",
                        to="reseller_checkout.gatewayevent",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
