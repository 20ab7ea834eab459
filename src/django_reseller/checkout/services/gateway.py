"""Payment gateway adapter for the client-side checkout widget.

The adapter makes sure the gateway's checkout script is available, builds the
widget configuration for an order, and turns the widget's callbacks into
:class:`WidgetSucceeded` and :class:`WidgetDismissed` events for the checkout
orchestrator. The widget itself is supplied by the UI layer as a
:class:`CheckoutWidget` subclass.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from django_reseller.checkout.exceptions import GatewayUnavailable
from django_reseller.checkout.gateway_client import GatewayClient
from django_reseller.checkout.services.orders import OrderData
from django_reseller.checkout.types import UserDetails
from django_reseller.settings import GatewayConfig, get_config

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WidgetSucceeded:
    """The widget reported a payment; its signature is not yet verified."""

    gateway_payment_id: str
    gateway_order_id: str
    signature: str

    @classmethod
    def from_callback(cls, response: dict[str, Any]) -> "WidgetSucceeded":
        """Construct the event from the widget's success payload."""
        return cls(
            gateway_payment_id=str(response.get("razorpay_payment_id") or response.get("gateway_payment_id") or ""),
            gateway_order_id=str(response.get("razorpay_order_id") or response.get("gateway_order_id") or ""),
            signature=str(response.get("razorpay_signature") or response.get("signature") or ""),
        )


@dataclass(frozen=True, slots=True)
class WidgetDismissed:
    """The customer closed the widget without paying."""


WidgetEvent = WidgetSucceeded | WidgetDismissed


@dataclass(frozen=True, slots=True)
class WidgetOptions:
    """Configuration handed to the checkout widget for one order."""

    key: str
    amount: int
    currency: str
    order_id: str
    name: str
    description: str
    prefill_name: str = ""
    prefill_email: str = ""
    prefill_contact: str = ""
    theme_color: str = ""
    timeout: int = 900
    retry_enabled: bool = True
    retry_max_count: int = 3

    def as_dict(self) -> dict[str, Any]:
        """Return the options in the widget's JSON shape."""
        return {
            "key": self.key,
            "amount": self.amount,
            "currency": self.currency,
            "name": self.name,
            "description": self.description,
            "order_id": self.order_id,
            "prefill": {
                "name": self.prefill_name,
                "email": self.prefill_email,
                "contact": self.prefill_contact,
            },
            "theme": {"color": self.theme_color},
            # Seconds; the widget reads its payment window from "timeout".
            "timeout": self.timeout,
            "retry": {"enabled": self.retry_enabled, "max_count": self.retry_max_count},
        }


class CheckoutWidget:
    """Base class for a UI binding of the gateway's checkout widget."""

    def open(
        self,
        options: dict[str, Any],
        on_success: Callable[[dict[str, Any]], None],
        on_dismiss: Callable[[], None],
    ) -> None:
        """Show the widget for *options*.

        ``on_success`` must be called with the gateway's success payload and
        ``on_dismiss`` when the customer closes the widget.

        Raises:
            NotImplementedError: Subclasses must override this method.
        """
        raise NotImplementedError

    def close(self) -> None:
        """Close the widget if it is showing and cancel its retry timer."""


class GatewayAdapter:
    """Bridges the checkout orchestrator and the gateway's checkout widget.

    Args:
        widget: The UI's widget binding.
        config: Gateway configuration; defaults to ``get_config().gateway``.
        script_loader: Callable returning True once the checkout script is
            available. Defaults to fetching ``checkout_script_url``.
    """

    def __init__(
        self,
        widget: CheckoutWidget | None = None,
        *,
        config: GatewayConfig | None = None,
        script_loader: Callable[[], bool] | None = None,
    ) -> None:
        self.widget = widget
        self.config = config or get_config().gateway
        self._script_loader = script_loader or self._fetch_script
        self._script_loaded = False
        self._is_open = False

    @property
    def script_loaded(self) -> bool:
        return self._script_loaded

    def _fetch_script(self) -> bool:
        return GatewayClient(self.config).fetch_script(self.config.checkout_script_url)

    def load_script(self) -> None:
        """Make the checkout script available, at most once per adapter.

        Raises:
            GatewayUnavailable: If the script cannot be loaded.
        """
        if self._script_loaded:
            return
        try:
            loaded = self._script_loader()
        except Exception as exc:
            logger.warning("Loading checkout script failed: %s", exc)
            raise GatewayUnavailable from exc
        if not loaded:
            raise GatewayUnavailable
        self._script_loaded = True
        logger.debug("Checkout script loaded from %s", self.config.checkout_script_url)

    def build_widget_options(self, order_data: OrderData, user_details: UserDetails) -> WidgetOptions:
        """Build the widget configuration for an order and customer."""
        return WidgetOptions(
            key=order_data.key or self.config.key_id or "",
            amount=order_data.amount,
            currency=order_data.currency,
            order_id=order_data.gateway_order_id,
            name=self.config.merchant_name,
            description=self.config.description,
            prefill_name=user_details.name,
            prefill_email=user_details.email,
            prefill_contact=user_details.phone,
            theme_color=self.config.theme_color,
            timeout=self.config.widget_timeout_seconds,
            retry_enabled=self.config.widget_retry_enabled,
            retry_max_count=self.config.widget_retry_max_count,
        )

    def open(self, options: WidgetOptions, on_event: Callable[[WidgetEvent], None]) -> None:
        """Open the widget and forward its outcome to *on_event*.

        Raises:
            GatewayUnavailable: If the script is not loaded or no widget is attached.
        """
        if not self._script_loaded or self.widget is None:
            raise GatewayUnavailable

        def on_success(response: dict[str, Any]) -> None:
            self._is_open = False
            on_event(WidgetSucceeded.from_callback(response))

        def on_dismiss() -> None:
            self._is_open = False
            on_event(WidgetDismissed())

        self._is_open = True
        try:
            self.widget.open(options.as_dict(), on_success, on_dismiss)
        except Exception:
            self._is_open = False
            raise
        logger.debug("Opened checkout widget for gateway order %s", options.order_id)

    def close(self) -> None:
        """Close the widget if this adapter opened it."""
        if self._is_open and self.widget is not None:
            self.widget.close()
        self._is_open = False
