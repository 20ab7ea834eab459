"""HTTP client for the payment gateway's server-side REST API.

Wraps the two calls the checkout core needs: creating a gateway order for a
purchase and fetching a payment to confirm its status and amount. Requests are
authenticated with HTTP basic auth (key id / key secret) taken from
``DJANGO_RESELLER["gateway"]``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from django_reseller.checkout.exceptions import GatewayError
from django_reseller.checkout.gateway_utils import obfuscate_key
from django_reseller.settings import GatewayConfig, get_config

logger = logging.getLogger(__name__)

SUCCESSFUL_PAYMENT_STATUSES = frozenset({"captured", "authorized"})


@dataclass(frozen=True, slots=True)
class GatewayOrder:
    """An order object created on the gateway.

    Attributes:
        id: Gateway order id (e.g. ``order_XXXX``).
        amount: Amount in minor units.
        currency: ISO 4217 currency code.
        receipt: Merchant receipt reference sent at creation.
        status: Gateway order status (``created``, ``attempted``, ``paid``).
    """

    id: str
    amount: int
    currency: str
    receipt: str = ""
    status: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "GatewayOrder":
        """Construct a ``GatewayOrder`` from the gateway's order JSON."""
        return cls(
            id=str(data["id"]),
            amount=int(data.get("amount", 0)),
            currency=str(data.get("currency", "")),
            receipt=str(data.get("receipt") or ""),
            status=str(data.get("status") or ""),
        )


@dataclass(frozen=True, slots=True)
class GatewayPayment:
    """A payment object fetched from the gateway.

    Attributes:
        id: Gateway payment id (e.g. ``pay_XXXX``).
        order_id: Gateway order id the payment belongs to.
        amount: Amount in minor units.
        currency: ISO 4217 currency code.
        status: ``created``, ``authorized``, ``captured``, ``refunded`` or ``failed``.
        method: Payment instrument (``card``, ``upi``, ``netbanking`` ...).
        notes: Free-form notes echoed back from the order.
    """

    id: str
    order_id: str
    amount: int
    currency: str
    status: str
    method: str = ""
    notes: dict[str, Any] = field(default_factory=dict)

    @property
    def is_successful(self) -> bool:
        """Return True for payments that were authorized or captured."""
        return self.status in SUCCESSFUL_PAYMENT_STATUSES

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "GatewayPayment":
        """Construct a ``GatewayPayment`` from the gateway's payment JSON."""
        notes = data.get("notes")
        return cls(
            id=str(data["id"]),
            order_id=str(data.get("order_id") or ""),
            amount=int(data.get("amount", 0)),
            currency=str(data.get("currency", "")),
            status=str(data.get("status") or ""),
            method=str(data.get("method") or ""),
            notes=notes if isinstance(notes, dict) else {},
        )


class GatewayClient:
    """Server-side gateway API client.

    Args:
        config: Gateway configuration; defaults to ``get_config().gateway``.
        transport: Optional ``httpx`` transport, used by tests to stub the API.

    Raises:
        ValueError: If the key id or key secret is not configured.
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        config = config or get_config().gateway
        if not config.key_id or not config.key_secret:
            msg = (
                "Payment gateway credentials are not configured. "
                "Set DJANGO_RESELLER['gateway']['key_id'] and ['key_secret']."
            )
            raise ValueError(msg)

        self.config = config
        self.key_id = str(config.key_id)
        self.base_url = config.api_base_url.rstrip("/")
        self._auth = (self.key_id, str(config.key_secret))
        self._transport = transport

        logger.debug("Initialized GatewayClient with key %s", obfuscate_key(self.key_id))

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            auth=self._auth,
            timeout=self.config.request_timeout,
            headers={"Accept": "application/json"},
            transport=self._transport,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request and return the decoded JSON body.

        Raises:
            GatewayError: On HTTP error statuses, connection failures or
                non-JSON responses.
        """
        with self._client() as client:
            try:
                response = client.request(method, path, **kwargs)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                logger.error(
                    "Gateway API %s %s failed with %s: %s",
                    method,
                    path,
                    exc.response.status_code,
                    exc.response.text[:500],
                )
                msg = f"Gateway request failed with status {exc.response.status_code}"
                raise GatewayError(msg) from exc
            except httpx.RequestError as exc:
                logger.error("Gateway API connection error for %s %s: %s", method, path, exc)
                raise GatewayError("Payment gateway is unreachable.") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError("Payment gateway returned an invalid response.") from exc
        if not isinstance(data, dict):
            raise GatewayError("Payment gateway returned an invalid response.")
        return data

    def create_order(
        self,
        *,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> GatewayOrder:
        """Create an order on the gateway.

        Args:
            amount: Amount to collect, in minor units.
            currency: ISO 4217 currency code.
            receipt: Merchant receipt reference (at most 40 characters).
            notes: Optional string key/value metadata echoed on payments.

        Returns:
            The created :class:`GatewayOrder`.

        Raises:
            GatewayError: If the gateway rejects the request.
        """
        payload = {
            "amount": amount,
            "currency": currency.upper(),
            "receipt": receipt[:40],
            "notes": notes or {},
        }
        data = self._request("POST", "/orders", json=payload)
        order = GatewayOrder.from_api(data)
        logger.info("Created gateway order %s for %s %s", order.id, amount, currency)
        return order

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        """Fetch a payment by id.

        Raises:
            GatewayError: If the payment cannot be retrieved.
        """
        data = self._request("GET", f"/payments/{payment_id}")
        return GatewayPayment.from_api(data)

    def fetch_script(self, url: str) -> bool:
        """Return True if the checkout script at *url* can be downloaded."""
        try:
            with httpx.Client(timeout=self.config.request_timeout, transport=self._transport) as client:
                response = client.get(url)
        except httpx.RequestError as exc:
            logger.warning("Checkout script %s unreachable: %s", url, exc)
            return False
        return response.is_success
