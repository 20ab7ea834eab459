"""Django admin configuration for the checkout app."""

from django.contrib import admin
from django.http import HttpRequest

from django_reseller.checkout.models import (
    Coupon,
    CouponUsage,
    EventProcessingException,
    GatewayEvent,
    Purchase,
    PurchaseItem,
)


class ReadOnlyAdminMixin:
    """Disables add, change and delete in the admin."""

    def has_add_permission(self, request: HttpRequest, obj: object = None) -> bool:  # noqa: ARG002
        return False

    def has_change_permission(self, request: HttpRequest, obj: object = None) -> bool:  # noqa: ARG002
        return False

    def has_delete_permission(self, request: HttpRequest, obj: object = None) -> bool:  # noqa: ARG002
        return False


class PurchaseItemInline(ReadOnlyAdminMixin, admin.TabularInline):
    """Line items are snapshots taken at checkout and shown read-only."""

    model = PurchaseItem
    extra = 0
    readonly_fields = (
        "item_type",
        "service_id",
        "bundle_id",
        "addon_id",
        "item_name",
        "item_price",
        "billing_period",
    )


@admin.register(Purchase)
class PurchaseAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Read-only view of purchases.

    Payment status only changes through the checkout state machine, so the
    admin never edits purchases.
    """

    list_display = ("id", "user", "payment_status", "total_amount", "coupon_code", "created_at")
    list_filter = ("payment_status", "cancel_reason", "payment_method")
    search_fields = ("id", "user__email", "gateway_order_id", "gateway_payment_id", "coupon_code")
    readonly_fields = (
        "user",
        "subtotal",
        "tax_amount",
        "total_amount",
        "payment_status",
        "payment_method",
        "gateway_order_id",
        "gateway_payment_id",
        "expires_at",
        "cancel_reason",
        "coupon_code",
        "coupon_discount",
        "coupon_free_months",
        "customer_gst_number",
        "customer_business_name",
        "customer_address",
        "created_at",
        "updated_at",
    )
    inlines = (PurchaseItemInline,)


@admin.register(Coupon)
class CouponAdmin(admin.ModelAdmin):
    """Admin interface for managing coupons.

    ``current_uses`` is read-only; it is maintained when purchases complete.
    """

    list_display = (
        "code",
        "discount_type",
        "discount_value",
        "free_months",
        "current_uses",
        "max_uses",
        "valid_until",
        "is_active",
    )
    list_filter = ("discount_type", "is_active")
    search_fields = ("code",)
    readonly_fields = ("current_uses", "created_at", "updated_at")


@admin.register(CouponUsage)
class CouponUsageAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Read-only ledger of coupon redemptions."""

    list_display = ("coupon", "user", "purchase", "used_at")
    list_filter = ("coupon",)
    search_fields = ("coupon__code", "user__email")


@admin.register(GatewayEvent)
class GatewayEventAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Read-only admin for gateway webhook events."""

    list_display = ("gateway_event_id", "kind", "processed", "created_at")
    list_filter = ("kind", "processed")
    search_fields = ("gateway_event_id",)
    readonly_fields = ("gateway_event_id", "kind", "payload", "processed", "created_at")


@admin.register(EventProcessingException)
class EventProcessingExceptionAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    """Read-only admin for captured webhook processing errors."""

    list_display = ("message", "event", "created_at")
    readonly_fields = ("event", "data", "message", "traceback", "created_at")
