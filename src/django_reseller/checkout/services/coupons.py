"""Coupon validation and discount allocation.

Coupons are checked in a fixed order (existence, validity window, per-user
usage, global usage cap) and the first failing check wins. Discounts follow
the lowest-price-item rule: when the cart has more than one line, percentage
and fixed coupons only discount the cheapest line, so a code meant for a small
add-on cannot discount a whole multi-item order.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from django.contrib.auth.models import AbstractBaseUser
from django.db import models, transaction
from django.utils import timezone

from django_reseller.checkout.exceptions import CouponInvalid, CouponReason
from django_reseller.checkout.models import Coupon, CouponUsage, Purchase, PurchaseItem
from django_reseller.checkout.services.pricing import cart_subtotal, round2
from django_reseller.checkout.types import CartItem
from django_reseller.settings import get_config

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")
_MONTHS_PER_YEAR = Decimal("12")


def normalize_code(code: str) -> str:
    """Return the canonical (stripped, upper-case) form of a coupon code."""
    return code.strip().upper()


@dataclass(frozen=True, slots=True)
class CouponResult:
    """Outcome of validating a coupon against a cart.

    Attributes:
        valid: Whether the coupon can be applied.
        discount: Discount amount to apply (zero when invalid).
        error: User-facing message when invalid.
        reason: Machine-readable rejection reason when invalid.
        coupon: The matched coupon when valid.
    """

    valid: bool
    discount: Decimal = _ZERO
    error: str | None = None
    reason: CouponReason | None = None
    coupon: Coupon | None = None

    @classmethod
    def rejected(cls, exc: CouponInvalid) -> "CouponResult":
        return cls(valid=False, error=exc.message, reason=exc.reason)


def compute_discount(coupon: Coupon, cart: Sequence[CartItem]) -> Decimal:
    """Compute the discount a coupon grants on a cart.

    Args:
        coupon: A coupon that already passed validation.
        cart: The cart snapshot.

    Returns:
        The discount amount, rounded to two places and never more than the
        cart subtotal. For multi-item carts, percentage, fixed and free-months
        discounts never exceed the cheapest item's price. A fixed-price
        service coupon brings the cheapest service line down to
        ``service_fixed_price`` and ignores bundles and add-ons.
    """
    if not cart:
        return _ZERO

    subtotal = cart_subtotal(cart)
    lowest = min(item.price for item in cart)
    single = len(cart) == 1
    value = coupon.discount_value or _ZERO

    if coupon.discount_type == Coupon.DiscountType.SERVICE_FIXED_PRICE:
        services = [item.price for item in cart if item.type == PurchaseItem.ItemType.SERVICE]
        if not services:
            return _ZERO
        discount = max(min(services) - get_config().service_fixed_price, _ZERO)
        return round2(min(discount, subtotal))

    if coupon.discount_type == Coupon.DiscountType.PERCENTAGE:
        base = subtotal if single else lowest
        discount = base * value / 100
    elif coupon.discount_type == Coupon.DiscountType.FIXED:
        discount = value if single else min(value, lowest)
    elif coupon.discount_type == Coupon.DiscountType.FREE_MONTHS:
        months = coupon.free_months or 1
        monthly_item = next((i for i in cart if i.price == lowest and i.is_monthly), None)
        # Non-monthly items are treated as annual prices.
        monthly_price = lowest if monthly_item is not None else round2(lowest / _MONTHS_PER_YEAR)
        discount = min(monthly_price * months, lowest)
    else:
        logger.warning("Coupon %s has unknown discount type %r", coupon.code, coupon.discount_type)
        discount = _ZERO

    if not single:
        discount = min(discount, lowest)
    return round2(max(min(discount, subtotal), _ZERO))


class CouponValidator:
    """Stateless service for coupon validation and redemption bookkeeping."""

    @staticmethod
    def check(
        code: str,
        user: AbstractBaseUser,
        *,
        now: datetime | None = None,
    ) -> Coupon:
        """Run the ordered eligibility checks and return the coupon.

        Raises:
            CouponInvalid: With the reason of the first failing check.
        """
        now = now or timezone.now()
        coupon = Coupon.objects.filter(code=normalize_code(code)).first()
        if coupon is None or not coupon.is_active:
            raise CouponInvalid(CouponReason.NOT_FOUND)

        if now < coupon.valid_from or (coupon.valid_until is not None and now >= coupon.valid_until):
            raise CouponInvalid(CouponReason.EXPIRED)

        if CouponUsage.objects.filter(coupon=coupon, user=user).exists():
            raise CouponInvalid(CouponReason.ALREADY_USED)

        if coupon.max_uses is not None and coupon.current_uses >= coupon.max_uses:
            raise CouponInvalid(CouponReason.LIMIT_REACHED)

        return coupon

    @staticmethod
    def validate(
        code: str,
        user: AbstractBaseUser,
        cart: Sequence[CartItem],
        *,
        now: datetime | None = None,
    ) -> CouponResult:
        """Validate a coupon for a user and cart and compute its discount.

        Args:
            code: The code as typed by the customer (any case).
            user: The customer applying the coupon.
            cart: The cart snapshot the discount applies to.
            now: Evaluation time; defaults to the current time.

        Returns:
            A :class:`CouponResult`. Rejections are reported in the result
            rather than raised, since checkout continues without a discount.
        """
        try:
            coupon = CouponValidator.check(code, user, now=now)
        except CouponInvalid as exc:
            logger.info("Coupon %r rejected for user %s: %s", code, user.pk, exc.reason)
            return CouponResult.rejected(exc)

        return CouponResult(valid=True, discount=compute_discount(coupon, cart), coupon=coupon)

    @staticmethod
    @transaction.atomic
    def record_usage(purchase: Purchase) -> bool:
        """Record the redemption of the purchase's coupon, at most once.

        Creates the ``CouponUsage`` ledger row and increments the coupon's
        ``current_uses`` only if no ledger row exists yet for this coupon and
        user. Must only be called for a purchase that has just completed.

        Args:
            purchase: The completed purchase.

        Returns:
            ``True`` if a new redemption was recorded, ``False`` otherwise.
        """
        if not purchase.coupon_code:
            return False

        coupon = Coupon.objects.select_for_update().filter(code=normalize_code(purchase.coupon_code)).first()
        if coupon is None:
            logger.warning(
                "Coupon %s on purchase %s no longer exists; usage not recorded",
                purchase.coupon_code,
                purchase.pk,
            )
            return False

        _, created = CouponUsage.objects.get_or_create(
            coupon=coupon,
            user_id=purchase.user_id,
            defaults={"purchase": purchase},
        )
        if not created:
            return False

        Coupon.objects.filter(pk=coupon.pk).update(current_uses=models.F("current_uses") + 1)
        logger.info("Recorded use of coupon %s by user %s on purchase %s", coupon.code, purchase.user_id, purchase.pk)
        return True
