"""Checkout orchestrator.

Drives one checkout attempt for one customer: create the order, open the
gateway widget, verify the callback on the server and keep the local view of
the purchase in sync with the database by polling. Every external event
(script loaded, widget success or dismissal, poll tick, verification result)
goes through :meth:`CheckoutOrchestrator.dispatch`, which is the only place
that changes :class:`CheckoutState`.

The orchestrator never marks a purchase ``completed`` itself; that happens in
:class:`~django_reseller.checkout.services.verification.PaymentVerifier` or in
the webhook handlers, and is observed here by re-reading the purchase.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from django.db import connection

from django_reseller.checkout.exceptions import CheckoutError, GatewayUnavailable, InvalidOrderData
from django_reseller.checkout.models import Purchase
from django_reseller.checkout.services.gateway import (
    GatewayAdapter,
    WidgetDismissed,
    WidgetSucceeded,
)
from django_reseller.checkout.services.orders import NOT_PAYABLE_MESSAGE, OrderData, OrderStore
from django_reseller.checkout.services.verification import PaymentVerifier, VerificationResult
from django_reseller.checkout.types import BusinessInfo, CartItem, UserContext, UserDetails
from django_reseller.settings import get_config

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScriptLoaded:
    """The gateway script is available; the widget can be opened."""

    purchase_id: str


@dataclass(frozen=True, slots=True)
class PollTick:
    """Time to re-read the current purchase."""


@dataclass(frozen=True, slots=True)
class VerifyResult:
    """Server-side verification finished for a purchase."""

    purchase_id: str
    result: VerificationResult


Event = ScriptLoaded | WidgetSucceeded | WidgetDismissed | PollTick | VerifyResult


@dataclass
class CheckoutState:
    """UI-facing state of the checkout attempt."""

    is_loading: bool = False
    is_processing: bool = False
    current_purchase: Purchase | None = None
    payment_status: str | None = None
    error: str | None = None
    warning: str | None = None


class ScheduledTask:
    """Handle for a repeating callback."""

    def cancel(self) -> None:
        """Stop the callback from running again.

        Raises:
            NotImplementedError: Subclasses must override this method.
        """
        raise NotImplementedError


class Scheduler:
    """Runs a callback repeatedly at a fixed interval."""

    def call_every(self, interval: float, callback: Callable[[], None]) -> ScheduledTask:
        """Schedule *callback* every *interval* seconds until cancelled.

        Raises:
            NotImplementedError: Subclasses must override this method.
        """
        raise NotImplementedError


class _RepeatingTimer(ScheduledTask):
    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self._interval = interval
        self._callback = callback
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name="checkout-poll", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        try:
            while not self._stopped.wait(self._interval):
                try:
                    self._callback()
                except Exception:
                    logger.exception("Scheduled checkout callback failed")
        finally:
            # Callbacks query the database on this thread's own connection.
            connection.close()

    def cancel(self) -> None:
        """Stop the timer. A tick that is already running is not waited for."""
        self._stopped.set()


class ThreadingScheduler(Scheduler):
    """Scheduler backed by a daemon thread per task."""

    def call_every(self, interval: float, callback: Callable[[], None]) -> ScheduledTask:
        timer = _RepeatingTimer(interval, callback)
        timer.start()
        return timer


def _noop(*args: Any) -> None:
    pass


class CheckoutOrchestrator:
    """Coordinates order creation, payment and reconciliation for one customer.

    Args:
        user_context: The authenticated caller.
        store: Order store; defaults to :class:`OrderStore`.
        verifier: Payment verifier; defaults to a settings-backed one.
        adapter: Gateway adapter holding the UI's checkout widget.
        scheduler: Scheduler for status polling; defaults to
            :class:`ThreadingScheduler`.
        on_success: Called with the completed purchase.
        on_failure: Called with a user-facing error message.
        on_cancel: Called when the customer dismisses the widget.
    """

    def __init__(
        self,
        user_context: UserContext,
        *,
        store: Any = OrderStore,
        verifier: PaymentVerifier | None = None,
        adapter: GatewayAdapter | None = None,
        scheduler: Scheduler | None = None,
        on_success: Callable[[Purchase], None] = _noop,
        on_failure: Callable[[str], None] = _noop,
        on_cancel: Callable[[], None] = _noop,
    ) -> None:
        self.user_context = user_context
        self.store = store
        self.verifier = verifier or PaymentVerifier()
        self.adapter = adapter or GatewayAdapter()
        self.scheduler = scheduler or ThreadingScheduler()
        self.on_success = on_success
        self.on_failure = on_failure
        self.on_cancel = on_cancel

        self.state = CheckoutState()
        self._lock = threading.RLock()
        self._generation = 0
        self._poll_task: ScheduledTask | None = None
        self._order_data: OrderData | None = None
        self._user_details: UserDetails | None = None
        self._notified_purchase_id: str | None = None
        self._handlers: dict[type, Callable[[Any], None]] = {
            ScriptLoaded: self._on_script_loaded,
            WidgetDismissed: self._on_widget_dismissed,
            PollTick: self._on_poll_tick,
            VerifyResult: self._on_verify_result,
        }

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_order(
        self,
        cart: list[CartItem],
        coupon_code: str | None = None,
        gst_number: str | None = None,
        business_info: BusinessInfo | None = None,
    ) -> OrderData:
        """Create a pending purchase for *cart* and make it current.

        Failures are reported through ``state.error`` and ``on_failure`` and
        leave ``current_purchase`` untouched.
        """
        with self._lock:
            generation = self._generation
            self.state.is_loading = True
            self.state.error = None
            self.state.warning = None
            try:
                user = self.user_context.require_user()
                order_data = self.store.create_order(user, cart, coupon_code, gst_number, business_info)
                purchase = self.store.get_details(order_data.purchase_id, user=user)
            except CheckoutError as exc:
                logger.warning("Order creation failed: %s", exc.message)
                self.state.error = exc.message
                self.on_failure(exc.message)
                return OrderData.failed(exc.message)
            finally:
                self.state.is_loading = False

            if generation != self._generation:
                return order_data

            self.state.current_purchase = purchase
            self.state.payment_status = purchase.payment_status
            self.state.warning = order_data.warning
            self._start_polling()
            return order_data

    def process_payment(self, order_data: OrderData | None, user_details: UserDetails) -> None:
        """Open the gateway widget for a created order.

        Raises:
            InvalidOrderData: If *order_data* is not a successful order with a
                gateway order id. Nothing is sent to the gateway in that case.
            AuthRequired: If no user is signed in.
        """
        if order_data is None or not order_data.success or not order_data.gateway_order_id:
            raise InvalidOrderData
        self.user_context.require_user()

        with self._lock:
            self.state.is_processing = True
            self.state.error = None
            self._order_data = order_data
            self._user_details = user_details
            try:
                self.adapter.load_script()
            except CheckoutError as exc:
                self._initialization_failed(order_data.purchase_id, exc.message)
                return
            self.dispatch(ScriptLoaded(purchase_id=order_data.purchase_id))

    def retry_payment(self, purchase: Purchase, user_details: UserDetails) -> None:
        """Resume payment of an existing purchase without re-pricing it.

        A purchase cancelled by dismissing the widget is reopened first.
        Purchases that can no longer be paid (failed, completed, expired or
        cancelled for any other reason) are reported through ``on_failure``
        and the widget is not opened.

        Raises:
            InvalidOrderData: If the purchase has no gateway order.
        """
        if not purchase.gateway_order_id:
            raise InvalidOrderData("This purchase has no payment order to retry.")
        user = self.user_context.require_user()

        with self._lock:
            try:
                if purchase.payment_status == Purchase.Status.CANCELLED:
                    self.store.reopen_for_retry(purchase.pk)
                purchase = self.store.get_details(purchase.pk, user=user)
            except CheckoutError as exc:
                self.state.error = exc.message
                self.on_failure(exc.message)
                return

            if not self.store.is_payable(purchase):
                self._not_payable(purchase)
                return

            self.state.current_purchase = purchase
            self.state.payment_status = purchase.payment_status
            self._notified_purchase_id = None
            self._start_polling()
        self.process_payment(OrderData.from_purchase(purchase), user_details)

    def get_purchase(self, purchase_id: object) -> Purchase | None:
        """Return the customer's purchase, or ``None`` if it is not visible."""
        try:
            return self.store.get_details(purchase_id, user=self.user_context.require_user())
        except CheckoutError as exc:
            logger.debug("Purchase %s not available: %s", purchase_id, exc.message)
            return None

    def reset(self) -> None:
        """Forget the current attempt, stop polling and close the widget.

        Results of calls still in flight are discarded when they arrive.
        """
        with self._lock:
            self._generation += 1
            self._stop_polling()
            self.adapter.close()
            self.state = CheckoutState()
            self._order_data = None
            self._user_details = None
            self._notified_purchase_id = None

    def close(self) -> None:
        """Tear down when the owning view goes away."""
        self.reset()

    @property
    def expires_in(self) -> timedelta | None:
        purchase = self.state.current_purchase
        if purchase is None:
            return None
        return self.store.time_remaining(purchase)

    @property
    def countdown(self) -> str:
        remaining = self.expires_in
        return self.store.format_countdown(remaining or timedelta(0))

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def dispatch(self, event: Event, *, generation: int | None = None) -> None:
        """Feed an external event into the checkout state machine.

        Args:
            event: The event.
            generation: The generation the event was produced for. Events from
                before the last :meth:`reset` are dropped.
        """
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug("Discarding stale %s", type(event).__name__)
                return
            generation = self._generation
            if not isinstance(event, WidgetSucceeded):
                self._handlers[type(event)](event)
                return
            purchase_id = self._require_order_data().purchase_id
            user = self.user_context.user

        # The lock is released here unless the widget reported success from
        # inside open(), in which case the caller still holds it.
        result = self.verifier.verify(
            event.gateway_order_id,
            event.gateway_payment_id,
            event.signature,
            purchase_id,
            user=user,
        )
        self.dispatch(VerifyResult(purchase_id=purchase_id, result=result), generation=generation)

    def _bound_dispatch(self) -> Callable[[Event], None]:
        generation = self._generation

        def _dispatch(event: Event) -> None:
            self.dispatch(event, generation=generation)

        return _dispatch

    def _require_order_data(self) -> OrderData:
        if self._order_data is None:
            raise InvalidOrderData
        return self._order_data

    def _on_script_loaded(self, event: ScriptLoaded) -> None:
        order_data = self._require_order_data()
        try:
            purchase = self.store.get_details(event.purchase_id, user=self.user_context.user)
            if self.store.is_payable(purchase):
                purchase = self.store.update_status(purchase.pk, Purchase.Status.PROCESSING)
            if purchase.payment_status != Purchase.Status.PROCESSING or not self.store.is_payable(purchase):
                self._not_payable(purchase)
                return
            self._refresh(event.purchase_id)
            options = self.adapter.build_widget_options(order_data, self._user_details or UserDetails("", ""))
            self.adapter.open(options, self._bound_dispatch())
        except CheckoutError as exc:
            self._initialization_failed(event.purchase_id, exc.message)
        except Exception:
            logger.exception("Opening the checkout widget failed for purchase %s", event.purchase_id)
            self._initialization_failed(event.purchase_id, GatewayUnavailable.default_message)

    def _on_widget_dismissed(self, event: WidgetDismissed) -> None:
        purchase_id = self._require_order_data().purchase_id
        self.store.update_status(purchase_id, Purchase.Status.CANCELLED, reason=Purchase.CancelReason.DISMISSED)
        self.state.is_processing = False
        self._refresh(purchase_id)
        logger.info("Checkout dismissed for purchase %s", purchase_id)
        self.on_cancel()

    def _on_verify_result(self, event: VerifyResult) -> None:
        self.state.is_processing = False
        purchase = self._refresh(event.purchase_id)
        if event.result.success and purchase is not None:
            self._completed(purchase)
            return

        message = event.result.error or "Payment verification failed."
        self.state.error = message
        self.on_failure(message)

    def _on_poll_tick(self, event: PollTick) -> None:
        current = self.state.current_purchase
        if current is None:
            self._stop_polling()
            return
        try:
            purchase = self.store.get_details(current.pk, user=self.user_context.user)
        except CheckoutError as exc:
            logger.warning("Polling purchase %s failed: %s", current.pk, exc.message)
            return

        if purchase.payment_status != self.state.payment_status:
            logger.debug(
                "Purchase %s status changed from %s to %s",
                purchase.pk,
                self.state.payment_status,
                purchase.payment_status,
            )
            self.state.current_purchase = purchase
            self.state.payment_status = purchase.payment_status
            if purchase.payment_status == Purchase.Status.COMPLETED:
                self.state.is_processing = False
                self.adapter.close()
                self._completed(purchase)
        if purchase.is_terminal:
            self._stop_polling()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _refresh(self, purchase_id: object) -> Purchase | None:
        purchase = self.get_purchase(purchase_id)
        if purchase is not None:
            self.state.current_purchase = purchase
            self.state.payment_status = purchase.payment_status
            if purchase.is_terminal:
                self._stop_polling()
        return purchase

    def _completed(self, purchase: Purchase) -> None:
        self._stop_polling()
        if self._notified_purchase_id == str(purchase.pk):
            return
        self._notified_purchase_id = str(purchase.pk)
        self.on_success(purchase)

    def _not_payable(self, purchase: Purchase) -> None:
        if purchase.payment_status == Purchase.Status.PENDING and purchase.is_expired:
            self.store.update_status(purchase.pk, Purchase.Status.CANCELLED, reason=Purchase.CancelReason.EXPIRED)
        self.state.is_processing = False
        self.state.error = NOT_PAYABLE_MESSAGE
        self._refresh(purchase.pk)
        logger.warning("Purchase %s (%s) can no longer be paid", purchase.pk, purchase.payment_status)
        self.on_failure(NOT_PAYABLE_MESSAGE)

    def _initialization_failed(self, purchase_id: str, message: str) -> None:
        try:
            self.store.update_status(purchase_id, Purchase.Status.FAILED)
        except CheckoutError as exc:
            logger.warning("Could not mark purchase %s failed: %s", purchase_id, exc.message)
        self.state.is_processing = False
        self.state.error = message
        self._refresh(purchase_id)
        logger.warning("Payment initialization failed for purchase %s: %s", purchase_id, message)
        self.on_failure(message)

    def _start_polling(self) -> None:
        self._stop_polling()
        if self.state.current_purchase is None or self.state.current_purchase.is_terminal:
            return
        interval = get_config().status_poll_interval_seconds
        tick = self._bound_dispatch()
        self._poll_task = self.scheduler.call_every(interval, lambda: tick(PollTick()))

    def _stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
