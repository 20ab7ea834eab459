"""Typed configuration for django-reseller.

Reads a single ``DJANGO_RESELLER`` dict from Django settings and exposes it as
composed, frozen dataclasses with sensible defaults.

Usage::

    from django_reseller.settings import get_config

    config = get_config()
    config.gateway.key_id
    config.tax_rate
    config.currency
"""

import functools
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.test.signals import setting_changed


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    """Payment gateway credentials and checkout widget configuration."""

    key_id: str | None = None
    key_secret: str | None = None
    webhook_secret: str | None = None
    api_base_url: str = "https://api.razorpay.com/v1"
    checkout_script_url: str = "https://checkout.razorpay.com/v1/checkout.js"
    request_timeout: float = 30.0
    widget_timeout_seconds: int = 900
    widget_retry_enabled: bool = True
    widget_retry_max_count: int = 3
    merchant_name: str = "BoostMySites"
    description: str = "AI-Powered Digital Services"
    theme_color: str = "#4F46E5"


@dataclass(frozen=True, slots=True)
class ResellerConfig:
    """Top-level django-reseller configuration."""

    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    currency: str = "INR"
    currency_symbol: str = "₹"
    tax_rate: Decimal = Decimal("0.18")
    pending_order_expiry_minutes: int = 15
    status_poll_interval_seconds: float = 5.0
    minimum_charge: Decimal = Decimal("1.00")
    service_fixed_price: Decimal = Decimal("84.00")
    receipt_prefix: str = "ord_"


_DECIMAL_KEYS = ("tax_rate", "minimum_charge", "service_fixed_price")


@functools.lru_cache(maxsize=1)
def get_config() -> ResellerConfig:
    """Build and return the reseller configuration.

    Reads ``settings.DJANGO_RESELLER`` (a plain dict) and returns a frozen
    :class:`ResellerConfig`.  Money-like values (``tax_rate``,
    ``minimum_charge``, ``service_fixed_price``) are coerced to
    :class:`~decimal.Decimal`.  The result is cached; the cache is cleared
    automatically when Django's ``setting_changed`` signal fires (e.g. inside
    ``override_settings``).
    """
    raw = getattr(settings, "DJANGO_RESELLER", {})
    if not isinstance(raw, Mapping):
        msg = "DJANGO_RESELLER must be a mapping (dict-like object)"
        raise TypeError(msg)
    raw_data = dict(raw)

    gateway_data = raw_data.pop("gateway", {})
    if not isinstance(gateway_data, Mapping):
        msg = "DJANGO_RESELLER['gateway'] must be a mapping (dict-like object)"
        raise TypeError(msg)

    for key in _DECIMAL_KEYS:
        if key in raw_data:
            raw_data[key] = _to_decimal(raw_data[key], key)

    config = ResellerConfig(
        gateway=GatewayConfig(**dict(gateway_data)),
        **raw_data,
    )
    _validate_reseller_config(config)
    return config


def _to_decimal(value: object, key: str) -> Decimal:
    """Coerce a settings value to ``Decimal`` via its string form."""
    if isinstance(value, bool):
        msg = f"DJANGO_RESELLER['{key}'] must be a number"
        raise TypeError(msg)
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        msg = f"DJANGO_RESELLER['{key}'] must be a number"
        raise ValueError(msg) from exc


def _validate_reseller_config(config: ResellerConfig) -> None:
    """Validate high-impact configuration values with clear error messages."""
    if not isinstance(config.pending_order_expiry_minutes, int) or config.pending_order_expiry_minutes <= 0:
        msg = "DJANGO_RESELLER['pending_order_expiry_minutes'] must be a positive integer"
        raise ValueError(msg)
    if not isinstance(config.currency, str) or not config.currency.strip():
        msg = "DJANGO_RESELLER['currency'] must be a non-empty string"
        raise ValueError(msg)
    if not isinstance(config.currency_symbol, str) or not config.currency_symbol.strip():
        msg = "DJANGO_RESELLER['currency_symbol'] must be a non-empty string"
        raise ValueError(msg)
    if not Decimal("0") <= config.tax_rate < Decimal("1"):
        msg = "DJANGO_RESELLER['tax_rate'] must be between 0 and 1"
        raise ValueError(msg)
    if config.minimum_charge < Decimal("0"):
        msg = "DJANGO_RESELLER['minimum_charge'] must not be negative"
        raise ValueError(msg)
    if config.service_fixed_price < Decimal("0"):
        msg = "DJANGO_RESELLER['service_fixed_price'] must not be negative"
        raise ValueError(msg)
    interval = config.status_poll_interval_seconds
    if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
        msg = "DJANGO_RESELLER['status_poll_interval_seconds'] must be a positive number"
        raise ValueError(msg)
    if not isinstance(config.gateway.widget_retry_enabled, bool):
        msg = "DJANGO_RESELLER['gateway']['widget_retry_enabled'] must be a boolean"
        raise TypeError(msg)
    if not isinstance(config.gateway.widget_retry_max_count, int) or config.gateway.widget_retry_max_count < 0:
        msg = "DJANGO_RESELLER['gateway']['widget_retry_max_count'] must be a non-negative integer"
        raise ValueError(msg)
    if not isinstance(config.gateway.widget_timeout_seconds, int) or config.gateway.widget_timeout_seconds <= 0:
        msg = "DJANGO_RESELLER['gateway']['widget_timeout_seconds'] must be a positive integer"
        raise ValueError(msg)


def _clear_config_cache(*, setting: str, **kwargs: object) -> None:  # noqa: ARG001
    """Clear the cached config when Django settings change during tests."""
    if setting == "DJANGO_RESELLER":
        get_config.cache_clear()


setting_changed.connect(_clear_config_cache, dispatch_uid="django_reseller.settings.clear_config_cache")
