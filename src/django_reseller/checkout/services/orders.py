"""Order store and purchase state machine.

``OrderStore`` is the only writer of ``Purchase.payment_status``. Allowed
edges::

    pending    -> processing | cancelled | failed
    processing -> completed | failed | cancelled

A transition to the current status, or out of a terminal status, is a no-op so
that duplicate callback and webhook deliveries are harmless. Completion
records coupon usage and sends :data:`purchase_completed` in the same database
transaction as the status change.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from django.contrib.auth.models import AbstractBaseUser
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from django_reseller.checkout.exceptions import (
    AuthRequired,
    EmptyCart,
    InvalidStatusTransition,
    PurchaseNotFound,
)
from django_reseller.checkout.gateway_client import GatewayClient
from django_reseller.checkout.models import Coupon, Purchase, PurchaseItem
from django_reseller.checkout.services.coupons import CouponValidator
from django_reseller.checkout.services.pricing import compute_totals, to_minor_units
from django_reseller.checkout.signals import purchase_completed
from django_reseller.checkout.types import BusinessInfo, CartItem
from django_reseller.settings import get_config

logger = logging.getLogger(__name__)

Status = Purchase.Status

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    Status.PENDING: frozenset({Status.PROCESSING, Status.CANCELLED, Status.FAILED}),
    Status.PROCESSING: frozenset({Status.COMPLETED, Status.FAILED, Status.CANCELLED}),
}

PAYABLE_STATUSES = frozenset({Status.PENDING, Status.PROCESSING})

NOT_PAYABLE_MESSAGE = "This purchase can no longer be paid. Please start a new checkout."


@dataclass(frozen=True, slots=True)
class OrderData:
    """Result of creating (or reconstructing) a gateway order for a purchase.

    Attributes:
        success: Whether the order exists and can be paid.
        purchase_id: The purchase UUID as a string.
        gateway_order_id: The gateway's order id.
        amount: Amount to collect, in minor units.
        currency: ISO 4217 currency code.
        key: The gateway's public key id for the checkout widget.
        error: Failure message when ``success`` is false.
        warning: Non-fatal message, e.g. a rejected coupon.
    """

    success: bool
    purchase_id: str = ""
    gateway_order_id: str = ""
    amount: int = 0
    currency: str = ""
    key: str = ""
    error: str | None = None
    warning: str | None = None

    @classmethod
    def failed(cls, error: str) -> "OrderData":
        return cls(success=False, error=error)

    @classmethod
    def from_purchase(cls, purchase: Purchase) -> "OrderData":
        """Rebuild order data from a stored purchase without re-pricing it."""
        config = get_config()
        return cls(
            success=True,
            purchase_id=str(purchase.pk),
            gateway_order_id=purchase.gateway_order_id,
            amount=to_minor_units(purchase.total_amount, config.currency),
            currency=config.currency,
            key=config.gateway.key_id or "",
        )

    def as_dict(self) -> dict[str, Any]:
        """Return the JSON wire representation."""
        data: dict[str, Any] = {"success": self.success}
        if self.success:
            data.update(
                purchase_id=self.purchase_id,
                gateway_order_id=self.gateway_order_id,
                amount=self.amount,
                currency=self.currency,
                gateway_public_key=self.key,
            )
        if self.error:
            data["error"] = self.error
        if self.warning:
            data["warning"] = self.warning
        return data


def _item_ids(item: CartItem) -> dict[str, str]:
    return {
        "service_id": item.id if item.type == PurchaseItem.ItemType.SERVICE else "",
        "bundle_id": item.id if item.type == PurchaseItem.ItemType.BUNDLE else "",
        "addon_id": item.id if item.type == PurchaseItem.ItemType.ADDON else "",
    }


class OrderStore:
    """Stateless service owning purchase persistence and status changes."""

    @staticmethod
    def create_order(
        user: AbstractBaseUser | None,
        cart: Sequence[CartItem],
        coupon_code: str | None = None,
        gst_number: str | None = None,
        business_info: BusinessInfo | None = None,
        *,
        client: GatewayClient | None = None,
    ) -> OrderData:
        """Price a cart, persist it as a pending purchase and open a gateway order.

        Expired pending purchases for the user are swept first. An invalid
        coupon does not abort checkout; the order is priced without it and the
        coupon's message is returned as ``warning``. The purchase, its items
        and the gateway order request share one transaction, so a gateway
        failure leaves no rows behind.

        Args:
            user: The authenticated customer.
            cart: Snapshot of the cart lines.
            coupon_code: Optional coupon code as typed by the customer.
            gst_number: Optional customer GST number.
            business_info: Optional invoicing details.
            client: Gateway client override; built from settings by default.

        Returns:
            The :class:`OrderData` for the new purchase.

        Raises:
            AuthRequired: If no authenticated user is given.
            EmptyCart: If the cart has no items.
            GatewayError: If the gateway rejects the order.
        """
        if user is None or not user.is_authenticated:
            raise AuthRequired
        if not cart:
            raise EmptyCart

        config = get_config()
        OrderStore.cleanup_expired(user)

        coupon: Coupon | None = None
        discount = Decimal("0.00")
        warning = None
        if coupon_code and coupon_code.strip():
            result = CouponValidator.validate(coupon_code, user, cart)
            if result.valid:
                coupon = result.coupon
                discount = result.discount
            else:
                warning = result.error

        breakdown = compute_totals(cart, discount)
        total = max(breakdown.total, config.minimum_charge)
        business_info = business_info or BusinessInfo()
        gateway = client or GatewayClient(config.gateway)

        with transaction.atomic():
            purchase = Purchase.objects.create(
                user=user,
                subtotal=breakdown.subtotal,
                tax_amount=breakdown.tax_amount,
                total_amount=total,
                payment_status=Status.PENDING,
                expires_at=timezone.now() + timedelta(minutes=config.pending_order_expiry_minutes),
                coupon_code=coupon.code if coupon else "",
                coupon_discount=breakdown.discount if coupon else None,
                coupon_free_months=coupon.free_months if coupon else None,
                customer_gst_number=gst_number or business_info.gst_number,
                customer_business_name=business_info.business_name,
                customer_address=business_info.business_address,
            )
            PurchaseItem.objects.bulk_create(
                [
                    PurchaseItem(
                        purchase=purchase,
                        item_type=item.type,
                        item_name=item.name,
                        item_price=item.price,
                        billing_period=item.billing_period,
                        **_item_ids(item),
                    )
                    for item in cart
                ]
            )

            amount = to_minor_units(total, config.currency)
            order = gateway.create_order(
                amount=amount,
                currency=config.currency,
                receipt=f"{config.receipt_prefix}{purchase.pk.hex[:32]}",
                notes={
                    "purchase_id": str(purchase.pk),
                    "user_id": str(user.pk),
                    "item_count": str(len(cart)),
                },
            )
            purchase.gateway_order_id = order.id
            purchase.save(update_fields=["gateway_order_id", "updated_at"])

        logger.info(
            "Created purchase %s for user %s (total %s, gateway order %s)",
            purchase.pk,
            user.pk,
            total,
            order.id,
        )
        return OrderData(
            success=True,
            purchase_id=str(purchase.pk),
            gateway_order_id=order.id,
            amount=amount,
            currency=config.currency,
            key=config.gateway.key_id or "",
            warning=warning,
        )

    @staticmethod
    @transaction.atomic
    def update_status(
        purchase_id: object,
        status: str,
        gateway_payment_id: str | None = None,
        method: str | None = None,
        *,
        reason: str = "",
    ) -> Purchase:
        """Move a purchase through the state machine.

        Args:
            purchase_id: Primary key of the purchase.
            status: Target status.
            gateway_payment_id: Gateway payment id; required for ``completed``.
            method: Payment instrument reported by the gateway.
            reason: For ``cancelled``, one of :class:`Purchase.CancelReason`.

        Returns:
            The (possibly unchanged) purchase.

        Raises:
            PurchaseNotFound: If no purchase has this id.
            InvalidStatusTransition: If the edge is not allowed.
        """
        purchase = Purchase.objects.select_for_update().filter(pk=purchase_id).first()
        if purchase is None:
            raise PurchaseNotFound

        try:
            target = Status(status)
        except ValueError as exc:
            msg = f"Unknown payment status {status!r}."
            raise InvalidStatusTransition(msg) from exc

        current = purchase.payment_status
        if target == current:
            if target == Status.COMPLETED:
                OrderStore._fill_payment_details(purchase, gateway_payment_id, method)
            return purchase

        if purchase.is_terminal:
            logger.warning(
                "Ignoring %s -> %s for purchase %s: status is terminal",
                current,
                target,
                purchase.pk,
            )
            return purchase

        if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            msg = f"Cannot move purchase from {current} to {target}."
            raise InvalidStatusTransition(msg)

        if target == Status.COMPLETED and not (gateway_payment_id or purchase.gateway_payment_id):
            raise InvalidStatusTransition("Completing a purchase requires a gateway payment id.")

        purchase.payment_status = target
        update_fields = ["payment_status", "updated_at"]
        if gateway_payment_id:
            purchase.gateway_payment_id = gateway_payment_id
            update_fields.append("gateway_payment_id")
        if method:
            purchase.payment_method = method
            update_fields.append("payment_method")
        if target == Status.CANCELLED:
            purchase.cancel_reason = reason or Purchase.CancelReason.USER
            update_fields.append("cancel_reason")
        purchase.save(update_fields=update_fields)

        if target == Status.COMPLETED:
            CouponValidator.record_usage(purchase)
            purchase_completed.send(sender=Purchase, purchase=purchase, user=purchase.user)
            logger.info("Purchase %s completed (payment %s)", purchase.pk, purchase.gateway_payment_id)
        else:
            logger.info("Purchase %s moved from %s to %s", purchase.pk, current, target)
        return purchase

    @staticmethod
    def _fill_payment_details(purchase: Purchase, gateway_payment_id: str | None, method: str | None) -> None:
        """Fill in payment metadata a completed purchase is still missing."""
        update_fields = []
        if gateway_payment_id and not purchase.gateway_payment_id:
            purchase.gateway_payment_id = gateway_payment_id
            update_fields.append("gateway_payment_id")
        if method and not purchase.payment_method:
            purchase.payment_method = method
            update_fields.append("payment_method")
        if update_fields:
            purchase.save(update_fields=[*update_fields, "updated_at"])

    @staticmethod
    def get_details(purchase_id: object, *, user: AbstractBaseUser | None = None) -> Purchase:
        """Return a purchase with its items prefetched.

        Args:
            purchase_id: Primary key of the purchase.
            user: When given, only this user's purchases are visible.

        Raises:
            PurchaseNotFound: If the purchase does not exist or is not visible.
        """
        queryset = Purchase.objects.prefetch_related("items")
        if user is not None:
            queryset = queryset.filter(user=user)
        try:
            return queryset.get(pk=purchase_id)
        except (Purchase.DoesNotExist, ValidationError, ValueError) as exc:
            raise PurchaseNotFound from exc

    @staticmethod
    def cleanup_expired(user: AbstractBaseUser) -> int:
        """Cancel the user's pending purchases whose payment window has passed.

        Returns:
            The number of purchases cancelled.
        """
        now = timezone.now()
        count = Purchase.objects.filter(
            user=user,
            payment_status=Status.PENDING,
            expires_at__lt=now,
        ).update(
            payment_status=Status.CANCELLED,
            cancel_reason=Purchase.CancelReason.EXPIRED,
            updated_at=now,
        )
        if count:
            logger.info("Cancelled %d expired pending purchase(s) for user %s", count, user.pk)
        return count

    @staticmethod
    def is_payable(purchase: Purchase, *, now: datetime | None = None) -> bool:
        """Return True if the purchase can still be paid through its gateway order."""
        if purchase.payment_status not in PAYABLE_STATUSES or not purchase.gateway_order_id:
            return False
        now = now or timezone.now()
        return purchase.expires_at is None or purchase.expires_at > now

    @staticmethod
    @transaction.atomic
    def reopen_for_retry(purchase_id: object) -> Purchase:
        """Return a dismissed purchase to ``pending`` so it can be paid again.

        Only purchases cancelled because the customer closed the checkout
        widget, still inside their payment window and bound to a gateway
        order, can be reopened. Expired, user-cancelled, failed and completed
        purchases stay closed.

        Raises:
            PurchaseNotFound: If no purchase has this id.
            InvalidStatusTransition: If the purchase cannot be reopened.
        """
        purchase = Purchase.objects.select_for_update().filter(pk=purchase_id).first()
        if purchase is None:
            raise PurchaseNotFound

        if (
            purchase.payment_status != Status.CANCELLED
            or purchase.cancel_reason != Purchase.CancelReason.DISMISSED
            or not purchase.gateway_order_id
            or purchase.is_expired
        ):
            raise InvalidStatusTransition(NOT_PAYABLE_MESSAGE)

        purchase.payment_status = Status.PENDING
        purchase.cancel_reason = ""
        purchase.save(update_fields=["payment_status", "cancel_reason", "updated_at"])
        logger.info("Reopened dismissed purchase %s for retry", purchase.pk)
        return purchase

    @staticmethod
    def time_remaining(purchase: Purchase, *, now: datetime | None = None) -> timedelta:
        """Return how long the purchase stays payable (never negative)."""
        if purchase.expires_at is None:
            return timedelta(0)
        remaining = purchase.expires_at - (now or timezone.now())
        return max(remaining, timedelta(0))

    @staticmethod
    def format_countdown(remaining: timedelta) -> str:
        """Format a remaining duration as ``m:ss``, or ``"Expired"`` at zero."""
        seconds = int(remaining.total_seconds())
        if seconds <= 0:
            return "Expired"
        minutes, seconds = divmod(seconds, 60)
        return f"{minutes}:{seconds:02d}"
