"""Server-side payment verification.

A purchase only becomes ``completed`` here (or in the webhook handlers), after
the checkout callback's signature has been recomputed with the server-held key
secret and the payment has been fetched from the gateway and matched against
the stored order and amount. A signature, binding or amount mismatch fails the
purchase and is logged at error level; it is never retried.
"""

import logging
from dataclasses import dataclass
from typing import Any

from django.contrib.auth.models import AbstractBaseUser

from django_reseller.checkout.exceptions import GatewayError, PurchaseNotFound, VerificationFailed
from django_reseller.checkout.gateway_client import GatewayClient
from django_reseller.checkout.gateway_utils import verify_payment_signature
from django_reseller.checkout.models import Purchase
from django_reseller.checkout.services.orders import OrderStore
from django_reseller.checkout.services.pricing import to_minor_units
from django_reseller.settings import GatewayConfig, get_config

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class VerificationResult:
    """Outcome of a verification request."""

    success: bool
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.error:
            data["error"] = self.error
        return data


class PaymentVerifier:
    """Verifies checkout callbacks and completes the purchase they belong to.

    Args:
        client: Gateway API client; built from settings on first use.
        config: Gateway configuration; defaults to ``get_config().gateway``.
    """

    def __init__(self, client: GatewayClient | None = None, *, config: GatewayConfig | None = None) -> None:
        self.config = config or get_config().gateway
        self._client = client

    @property
    def client(self) -> GatewayClient:
        if self._client is None:
            self._client = GatewayClient(self.config)
        return self._client

    def verify(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        purchase_id: object,
        *,
        user: AbstractBaseUser | None,
    ) -> VerificationResult:
        """Verify a checkout callback and complete the purchase on success.

        Args:
            gateway_order_id: Order id echoed by the widget.
            gateway_payment_id: Payment id reported by the widget.
            signature: HMAC signature reported by the widget.
            purchase_id: The purchase the payment is for.
            user: The authenticated customer; other users' purchases are invisible.

        Returns:
            A :class:`VerificationResult`. A purchase that is already completed
            verifies successfully without contacting the gateway again.
        """
        if not (gateway_order_id and gateway_payment_id and signature and purchase_id):
            return VerificationResult(success=False, error="Missing required payment details.")
        if user is None or not user.is_authenticated:
            return VerificationResult(success=False, error="Authentication required.")

        try:
            purchase = OrderStore.get_details(purchase_id, user=user)
        except PurchaseNotFound as exc:
            return VerificationResult(success=False, error=exc.message)

        if purchase.payment_status == Purchase.Status.COMPLETED:
            return VerificationResult(success=True)

        try:
            method = self._check(purchase, gateway_order_id, gateway_payment_id, signature)
        except VerificationFailed as exc:
            return self._fail(purchase, exc.message)
        except GatewayError as exc:
            logger.error("Could not fetch payment %s for purchase %s: %s", gateway_payment_id, purchase.pk, exc)
            return VerificationResult(success=False, error="Could not confirm the payment. Please contact support.")

        return self.complete(purchase, gateway_payment_id, method)

    def _check(self, purchase: Purchase, gateway_order_id: str, gateway_payment_id: str, signature: str) -> str:
        """Run the integrity checks and return the payment method.

        Raises:
            VerificationFailed: On order, signature, status or amount mismatch.
            GatewayError: If the payment cannot be fetched.
        """
        if purchase.gateway_order_id != gateway_order_id:
            logger.error(
                "Order mismatch for purchase %s: expected %s, got %s",
                purchase.pk,
                purchase.gateway_order_id,
                gateway_order_id,
            )
            raise VerificationFailed("Payment does not belong to this order.")

        if not verify_payment_signature(gateway_order_id, gateway_payment_id, signature, self.config.key_secret or ""):
            logger.error("Invalid payment signature for purchase %s (payment %s)", purchase.pk, gateway_payment_id)
            raise VerificationFailed("Invalid payment signature.")

        payment = self.client.fetch_payment(gateway_payment_id)
        if payment.order_id and payment.order_id != gateway_order_id:
            logger.error(
                "Payment %s belongs to gateway order %s, not %s",
                payment.id,
                payment.order_id,
                gateway_order_id,
            )
            raise VerificationFailed("Payment does not belong to this order.")
        if not payment.is_successful:
            logger.error("Payment %s for purchase %s has status %s", payment.id, purchase.pk, payment.status)
            raise VerificationFailed("Payment was not successful.")

        expected = to_minor_units(purchase.total_amount)
        if payment.amount != expected:
            logger.error(
                "Amount mismatch for purchase %s: expected %s, gateway reported %s",
                purchase.pk,
                expected,
                payment.amount,
            )
            raise VerificationFailed("Payment amount does not match the order total.")

        return payment.method

    @staticmethod
    def complete(purchase: Purchase, gateway_payment_id: str, method: str = "") -> VerificationResult:
        """Move a verified purchase to ``completed`` through the state machine."""
        if purchase.payment_status == Purchase.Status.PENDING:
            OrderStore.update_status(purchase.pk, Purchase.Status.PROCESSING)
        purchase = OrderStore.update_status(purchase.pk, Purchase.Status.COMPLETED, gateway_payment_id, method)

        if purchase.payment_status != Purchase.Status.COMPLETED:
            logger.error(
                "Verified payment %s arrived for purchase %s in status %s",
                gateway_payment_id,
                purchase.pk,
                purchase.payment_status,
            )
            return VerificationResult(success=False, error="This order is no longer payable. Please contact support.")
        return VerificationResult(success=True)

    @staticmethod
    def _fail(purchase: Purchase, message: str) -> VerificationResult:
        OrderStore.update_status(purchase.pk, Purchase.Status.FAILED)
        return VerificationResult(success=False, error=message)
