"""Checkout error taxonomy.

Every error raised by the checkout core derives from :class:`CheckoutError`,
which carries a stable machine-readable ``code`` alongside the user-facing
message. Coupon problems are recoverable (checkout continues at full price);
everything else aborts the current checkout attempt.
"""

import enum


class CheckoutError(Exception):
    """Base class for checkout failures.

    Attributes:
        code: Stable identifier for the failure kind.
        message: Human-readable description safe to show to customers.
    """

    code: str = "checkout_error"
    default_message: str = "Checkout failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthRequired(CheckoutError):
    """No authenticated user is attached to the request."""

    code = "auth_required"
    default_message = "Authentication required."


class EmptyCart(CheckoutError):
    """An order was requested for a cart with no items."""

    code = "empty_cart"
    default_message = "Cart is empty."


class GatewayUnavailable(CheckoutError):
    """The gateway checkout script could not be loaded."""

    code = "gateway_unavailable"
    default_message = "Failed to load the payment gateway. Please try again."


class InvalidOrderData(CheckoutError):
    """A payment was started without a successful order result."""

    code = "invalid_order_data"
    default_message = "Invalid order data."


class GatewayError(CheckoutError):
    """The gateway rejected or failed an API call."""

    code = "gateway_error"
    default_message = "Failed to create order with the payment gateway."


class VerificationFailed(CheckoutError):
    """A payment callback failed signature, binding or amount checks."""

    code = "verification_failed"
    default_message = "Payment verification failed."


class PurchaseNotFound(CheckoutError):
    """No purchase exists for the given id (or it belongs to someone else)."""

    code = "purchase_not_found"
    default_message = "Purchase not found."


class InvalidStatusTransition(CheckoutError):
    """A status change that the purchase state machine does not allow."""

    code = "invalid_status_transition"
    default_message = "Invalid payment status transition."


class CouponReason(enum.StrEnum):
    """Why a coupon could not be applied."""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    LIMIT_REACHED = "limit_reached"


_COUPON_MESSAGES: dict[CouponReason, str] = {
    CouponReason.NOT_FOUND: "Invalid coupon code.",
    CouponReason.EXPIRED: "This coupon has expired or is not yet valid.",
    CouponReason.ALREADY_USED: "You have already used this coupon.",
    CouponReason.LIMIT_REACHED: "This coupon has reached its usage limit.",
}


class CouponInvalid(CheckoutError):
    """A coupon code was rejected; checkout may continue without it.

    Attributes:
        reason: The specific :class:`CouponReason` for the rejection.
    """

    code = "coupon_invalid"

    def __init__(self, reason: CouponReason) -> None:
        self.reason = reason
        super().__init__(_COUPON_MESSAGES[reason])
