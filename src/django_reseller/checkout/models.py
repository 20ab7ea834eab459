"""Purchase, coupon, and gateway event models for django-reseller."""

import uuid

from django.conf import settings
from django.db import models
from django.utils import timezone


class Purchase(models.Model):
    """One checkout attempt and its payment lifecycle.

    A purchase is created ``PENDING`` when checkout starts, moves to
    ``PROCESSING`` when the gateway widget opens, and ends in one of the
    terminal states ``COMPLETED``, ``FAILED`` or ``CANCELLED``. The status
    must only be changed through :meth:`OrderStore.update_status
    <django_reseller.checkout.services.orders.OrderStore.update_status>`.
    """

    class Status(models.TextChoices):
        """Payment lifecycle states for a purchase."""

        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        CANCELLED = "cancelled", "Cancelled"

    class CancelReason(models.TextChoices):
        """Why a purchase ended up cancelled."""

        DISMISSED = "dismissed", "Checkout dismissed"
        EXPIRED = "expired", "Expired"
        USER = "user", "Cancelled by user"

    TERMINAL_STATUSES = frozenset({Status.COMPLETED, Status.FAILED, Status.CANCELLED})

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="purchases",
    )
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    tax_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Tax-inclusive amount charged. Immutable once the purchase leaves pending.",
    )
    payment_status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
    )
    payment_method = models.CharField(max_length=50, blank=True, default="")
    gateway_order_id = models.CharField(max_length=100, blank=True, default="", db_index=True)
    gateway_payment_id = models.CharField(max_length=100, blank=True, default="")
    expires_at = models.DateTimeField(null=True, blank=True)
    cancel_reason = models.CharField(
        max_length=20,
        choices=CancelReason.choices,
        blank=True,
        default="",
    )
    coupon_code = models.CharField(max_length=100, blank=True, default="")
    coupon_discount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    coupon_free_months = models.PositiveIntegerField(null=True, blank=True)
    customer_gst_number = models.CharField(max_length=15, blank=True, default="")
    customer_business_name = models.CharField(max_length=200, blank=True, default="")
    customer_address = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user", "payment_status"], name="purchase_user_status_idx"),
        ]

    def __str__(self) -> str:
        return f"Purchase {self.pk} ({self.payment_status})"

    @property
    def is_terminal(self) -> bool:
        """Return True when no further status change is allowed."""
        return self.payment_status in self.TERMINAL_STATUSES

    @property
    def is_expired(self) -> bool:
        """Return True when a pending purchase has outlived its payment window."""
        return self.expires_at is not None and self.expires_at <= timezone.now()


class PurchaseItem(models.Model):
    """A snapshot of one cart line at order-creation time.

    Exactly one of ``service_id``, ``bundle_id`` or ``addon_id`` is set,
    matching ``item_type``. Items are created together with their purchase and
    never modified afterwards.
    """

    class ItemType(models.TextChoices):
        """Kinds of sellable catalog entries."""

        SERVICE = "service", "Service"
        BUNDLE = "bundle", "Bundle"
        ADDON = "addon", "Add-on"

    purchase = models.ForeignKey(
        Purchase,
        on_delete=models.CASCADE,
        related_name="items",
    )
    item_type = models.CharField(max_length=20, choices=ItemType.choices)
    service_id = models.CharField(max_length=100, blank=True, default="")
    bundle_id = models.CharField(max_length=100, blank=True, default="")
    addon_id = models.CharField(max_length=100, blank=True, default="")
    item_name = models.CharField(max_length=300)
    item_price = models.DecimalField(max_digits=12, decimal_places=2)
    billing_period = models.CharField(max_length=20, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["id"]

    def __str__(self) -> str:
        return f"{self.item_name} ({self.item_price})"

    @property
    def catalog_id(self) -> str:
        """Return whichever of the three catalog ids is populated."""
        return self.service_id or self.bundle_id or self.addon_id


class Coupon(models.Model):
    """A discount code with a validity window and usage limits.

    Codes are stored in canonical upper-case form so lookups are
    case-insensitive. ``current_uses`` only ever goes up, once per completed
    purchase that redeemed the coupon.
    """

    class DiscountType(models.TextChoices):
        """The kind of discount a coupon grants."""

        PERCENTAGE = "percentage", "Percentage discount"
        FIXED = "fixed", "Fixed amount discount"
        FREE_MONTHS = "free_months", "Free months"
        SERVICE_FIXED_PRICE = "service_one_dollar", "Cheapest service at a fixed price"

    code = models.CharField(max_length=100, unique=True)
    discount_type = models.CharField(
        max_length=20,
        choices=DiscountType.choices,
        default=DiscountType.PERCENTAGE,
    )
    discount_value = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=0,
        help_text="Percentage (0-100) or fixed amount depending on discount_type.",
    )
    free_months = models.PositiveIntegerField(null=True, blank=True)
    max_uses = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Maximum redemptions across all users. Empty means unlimited.",
    )
    current_uses = models.PositiveIntegerField(default=0)
    valid_from = models.DateTimeField(default=timezone.now)
    valid_until = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["code"]

    def __str__(self) -> str:
        return self.code

    def save(self, *args: object, **kwargs: object) -> None:
        self.code = self.code.strip().upper()
        super().save(*args, **kwargs)


class CouponUsage(models.Model):
    """Ledger row recording that a user redeemed a coupon on a purchase.

    The existence of a row for ``(coupon, user)`` is the only source of truth
    for "already used".
    """

    coupon = models.ForeignKey(
        Coupon,
        on_delete=models.CASCADE,
        related_name="usages",
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="coupon_usages",
    )
    purchase = models.ForeignKey(
        Purchase,
        on_delete=models.CASCADE,
        related_name="coupon_usages",
    )
    used_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-used_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["coupon", "user"],
                name="checkout_couponusage_unique_coupon_user",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.coupon} used by {self.user}"


class GatewayEvent(models.Model):
    """A webhook delivery received from the payment gateway.

    Stored before dispatch so duplicate deliveries can be recognised by
    ``gateway_event_id``.
    """

    gateway_event_id = models.CharField(max_length=100, unique=True)
    kind = models.CharField(max_length=100)
    payload = models.JSONField(default=dict)
    processed = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.kind} ({self.gateway_event_id})"


class EventProcessingException(models.Model):
    """A captured failure while handling a :class:`GatewayEvent`."""

    event = models.ForeignKey(
        GatewayEvent,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="exceptions",
    )
    data = models.TextField(blank=True, default="")
    message = models.CharField(max_length=500)
    traceback = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.message[:50]} ({self.created_at})"
