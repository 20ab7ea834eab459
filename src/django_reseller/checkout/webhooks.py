"""Payment gateway webhook handling.

Provides a registry-based dispatch system for gateway webhook events. Each
event kind (e.g. ``payment.captured``) maps to a handler class that
encapsulates idempotent processing and error capture.

The ``gateway_webhook`` view verifies the body signature with the configured
webhook secret, deduplicates by the gateway's event id, persists the raw event
and delegates to the registered handler. Status changes go through
:class:`~django_reseller.checkout.services.orders.OrderStore`, so a webhook
racing the customer's own verification call is harmless.

Usage in URL configuration::

    from django_reseller.checkout.webhooks import gateway_webhook

    urlpatterns = [
        path("webhooks/gateway/", gateway_webhook),
    ]
"""

import json
import logging
import traceback

from django.db import transaction
from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from django_reseller.checkout.gateway_utils import compute_signature, verify_webhook_signature
from django_reseller.checkout.models import EventProcessingException, GatewayEvent, Purchase
from django_reseller.checkout.services.orders import OrderStore
from django_reseller.checkout.services.pricing import to_minor_units
from django_reseller.checkout.services.verification import PaymentVerifier
from django_reseller.settings import get_config

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Razorpay-Signature"
EVENT_ID_HEADER = "X-Razorpay-Event-Id"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class WebhookRegistry:
    """Registry mapping gateway event kinds to handler classes."""

    def __init__(self) -> None:
        self._registry: dict[str, type[Webhook]] = {}

    def register(self, kind: str, handler_class: "type[Webhook]") -> None:
        """Register a handler class for a gateway event kind."""
        self._registry[kind] = handler_class

    def get(self, kind: str) -> "type[Webhook] | None":
        """Return the handler class for a given event kind, or ``None``."""
        return self._registry.get(kind)

    def keys(self) -> list[str]:
        return list(self._registry.keys())


registry = WebhookRegistry()


# ---------------------------------------------------------------------------
# Base handler
# ---------------------------------------------------------------------------


class Webhook:
    """Base class for gateway webhook event handlers.

    Subclasses set ``name`` to the event kind they handle and implement
    ``process_webhook()``. The base ``process()`` method wraps execution in an
    idempotency check and exception capture.

    Attributes:
        name: The gateway event kind this handler processes.
        event: The ``GatewayEvent`` being handled.
    """

    name: str = ""

    def __init__(self, event: GatewayEvent) -> None:
        self.event = event

    def process(self) -> None:
        """Run the handler once, capturing failures to ``EventProcessingException``."""
        if self.event.processed:
            logger.info("Event %s already processed, skipping", self.event.gateway_event_id)
            return

        try:
            self.process_webhook()
            self.event.processed = True
            self.event.save(update_fields=["processed"])
        except Exception:
            self.log_exception()
            raise

    def process_webhook(self) -> None:
        """Implement event-specific processing logic.

        Raises:
            NotImplementedError: Subclasses must override this method.
        """
        raise NotImplementedError

    def log_exception(self) -> None:
        """Capture the current exception to ``EventProcessingException``."""
        tb = traceback.format_exc()
        logger.error(
            "Error processing webhook %s (event %s): %s",
            self.name,
            self.event.gateway_event_id,
            tb,
        )
        EventProcessingException.objects.create(
            event=self.event,
            data=json.dumps(self.event.payload, default=str),
            message=str(tb)[:500],
            traceback=tb,
        )

    def entity(self, name: str) -> dict[str, object]:
        """Return ``payload.<name>.entity`` from the event, or an empty dict."""
        payload = self.event.payload
        if isinstance(payload, dict):
            inner = payload.get("payload")
            if isinstance(inner, dict):
                wrapper = inner.get(name)
                if isinstance(wrapper, dict):
                    entity = wrapper.get("entity")
                    if isinstance(entity, dict):
                        return entity
        return {}

    def find_purchase(self, gateway_order_id: str) -> Purchase | None:
        """Return the purchase bound to a gateway order id, if any."""
        purchase = Purchase.objects.filter(gateway_order_id=gateway_order_id).first() if gateway_order_id else None
        if purchase is None:
            logger.warning("No purchase found for gateway order %r (%s)", gateway_order_id, self.name)
        return purchase

    def complete_from_payment(self, purchase: Purchase, payment: dict[str, object]) -> None:
        """Complete *purchase* if the payment amount matches its total."""
        payment_id = str(payment.get("id") or "")
        expected = to_minor_units(purchase.total_amount)
        amount = int(str(payment.get("amount") or 0))
        if amount != expected:
            logger.error(
                "Webhook amount mismatch for purchase %s: expected %s, payment %s reported %s",
                purchase.pk,
                expected,
                payment_id,
                amount,
            )
            OrderStore.update_status(purchase.pk, Purchase.Status.FAILED)
            return
        PaymentVerifier.complete(purchase, payment_id, str(payment.get("method") or ""))


# ---------------------------------------------------------------------------
# Concrete handlers
# ---------------------------------------------------------------------------


class PaymentCapturedWebhook(Webhook):
    """Handles ``payment.captured``: completes the purchase for the payment's order."""

    name = "payment.captured"

    @transaction.atomic
    def process_webhook(self) -> None:
        payment = self.entity("payment")
        purchase = self.find_purchase(str(payment.get("order_id") or ""))
        if purchase is None:
            return
        self.complete_from_payment(purchase, payment)
        logger.info("Processed payment.captured for purchase %s", purchase.pk)


class PaymentAuthorizedWebhook(Webhook):
    """Handles ``payment.authorized``: a pending purchase moves to processing."""

    name = "payment.authorized"

    @transaction.atomic
    def process_webhook(self) -> None:
        payment = self.entity("payment")
        purchase = self.find_purchase(str(payment.get("order_id") or ""))
        if purchase is None:
            return
        if purchase.payment_status == Purchase.Status.PENDING:
            OrderStore.update_status(
                purchase.pk,
                Purchase.Status.PROCESSING,
                str(payment.get("id") or "") or None,
                str(payment.get("method") or "") or None,
            )
        logger.info("Processed payment.authorized for purchase %s", purchase.pk)


class PaymentFailedWebhook(Webhook):
    """Handles ``payment.failed`` events.

    A failed attempt does not fail the purchase: the checkout widget may retry
    against the same gateway order. The purchase fails through verification,
    or is cancelled when it expires or the customer dismisses the widget.
    """

    name = "payment.failed"

    def process_webhook(self) -> None:
        payment = self.entity("payment")
        error = payment.get("error_description") or payment.get("error_code") or "No error details"
        logger.warning(
            "Payment %s failed for gateway order %s: %s",
            payment.get("id"),
            payment.get("order_id"),
            error,
        )


class OrderPaidWebhook(Webhook):
    """Handles ``order.paid``: ensures the order's purchase is completed."""

    name = "order.paid"

    @transaction.atomic
    def process_webhook(self) -> None:
        order = self.entity("order")
        payment = self.entity("payment")
        purchase = self.find_purchase(str(order.get("id") or payment.get("order_id") or ""))
        if purchase is None:
            return
        if not payment.get("id"):
            logger.warning("order.paid for purchase %s carries no payment; waiting for payment.captured", purchase.pk)
            return
        self.complete_from_payment(purchase, payment)
        logger.info("Processed order.paid for purchase %s", purchase.pk)


# ---------------------------------------------------------------------------
# Handler registration
# ---------------------------------------------------------------------------

registry.register("payment.captured", PaymentCapturedWebhook)
registry.register("payment.authorized", PaymentAuthorizedWebhook)
registry.register("payment.failed", PaymentFailedWebhook)
registry.register("order.paid", OrderPaidWebhook)


# ---------------------------------------------------------------------------
# Webhook endpoint view
# ---------------------------------------------------------------------------


def _event_id(request: HttpRequest, body: bytes) -> str:
    event_id = request.headers.get(EVENT_ID_HEADER, "")
    if event_id:
        return event_id
    # No delivery id: identical bodies are treated as the same delivery.
    return "body_" + compute_signature(body, "gateway-event")[:40]


@csrf_exempt
@require_POST
def gateway_webhook(request: HttpRequest) -> HttpResponse:
    """Receive and process a payment gateway webhook.

    Returns 400 when the signature is missing or invalid, or the body is not
    JSON. Every authentic delivery is acknowledged with 200, even when
    processing fails; failures are logged and captured to
    ``EventProcessingException``.
    """
    body = request.body
    signature = request.headers.get(SIGNATURE_HEADER, "")

    webhook_secret = get_config().gateway.webhook_secret
    if not webhook_secret:
        logger.error("Gateway webhook received but no webhook secret is configured")
        return HttpResponse(status=200)

    if not verify_webhook_signature(body, signature, str(webhook_secret)):
        logger.warning("Invalid gateway webhook signature")
        return HttpResponse(status=400)

    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Gateway webhook body is not valid JSON")
        return HttpResponse(status=400)
    if not isinstance(payload, dict):
        return HttpResponse(status=400)

    kind = str(payload.get("event", ""))
    gateway_event, created = GatewayEvent.objects.get_or_create(
        gateway_event_id=_event_id(request, body),
        defaults={"kind": kind, "payload": payload},
    )
    if not created:
        logger.info("Duplicate gateway event %s, returning 200", gateway_event.gateway_event_id)
        return HttpResponse(status=200)

    handler_class = registry.get(kind)
    if handler_class is None:
        logger.info("No handler registered for event kind '%s'", kind)
        return HttpResponse(status=200)

    try:
        handler_class(gateway_event).process()
    except Exception:
        logger.exception(
            "Error processing gateway event %s (kind=%s)",
            gateway_event.gateway_event_id,
            kind,
        )

    return HttpResponse(status=200)
