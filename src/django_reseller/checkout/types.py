"""Value objects exchanged with the cart and auth collaborators.

The checkout core never reads ambient cart or session state. Callers pass a
:class:`CartItem` snapshot and a :class:`UserContext` explicitly.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from django.contrib.auth.models import AbstractBaseUser, AnonymousUser

from django_reseller.checkout.exceptions import AuthRequired

MONTHLY_BILLING_PERIODS = frozenset({"monthly", "month"})
ITEM_TYPES = frozenset({"service", "bundle", "addon"})


@dataclass(frozen=True, slots=True)
class CartItem:
    """A read-only snapshot of one cart line.

    Attributes:
        id: Catalog id of the service, bundle or add-on.
        name: Display name at checkout time.
        price: Pre-tax price of the line.
        type: One of ``"service"``, ``"bundle"`` or ``"addon"``.
        billing_period: Optional billing cadence such as ``"monthly"``.
    """

    id: str
    name: str
    price: Decimal
    type: str = "service"
    billing_period: str = ""

    @property
    def is_monthly(self) -> bool:
        """Return True when the item is billed per month."""
        return self.billing_period.lower() in MONTHLY_BILLING_PERIODS

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "CartItem":
        """Construct a ``CartItem`` from a decoded JSON cart line.

        Args:
            data: A mapping with ``id``, ``name``, ``price``, ``type`` and an
                optional ``billing_period``.

        Returns:
            A populated ``CartItem``.

        Raises:
            ValueError: If the price is missing, negative or not a number, or
                the item type is unknown.
        """
        try:
            price = Decimal(str(data["price"]))
        except (KeyError, InvalidOperation) as exc:
            msg = f"Cart item {data.get('id')!r} has an invalid price"
            raise ValueError(msg) from exc
        if not price.is_finite() or price < 0:
            msg = f"Cart item {data.get('id')!r} has an invalid price"
            raise ValueError(msg)

        item_type = str(data.get("type") or "service")
        if item_type not in ITEM_TYPES:
            msg = f"Cart item {data.get('id')!r} has unknown type {item_type!r}"
            raise ValueError(msg)

        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            price=price,
            type=item_type,
            billing_period=str(data.get("billing_period") or ""),
        )


@dataclass(frozen=True, slots=True)
class UserContext:
    """The authenticated caller, as supplied by the auth collaborator."""

    user: AbstractBaseUser | AnonymousUser | None = None

    @property
    def is_authenticated(self) -> bool:
        """Return True when a signed-in user is attached."""
        return self.user is not None and bool(self.user.is_authenticated)

    def require_user(self) -> AbstractBaseUser:
        """Return the signed-in user or raise :class:`AuthRequired`."""
        if not self.is_authenticated:
            raise AuthRequired
        return self.user  # type: ignore[return-value]


@dataclass(frozen=True, slots=True)
class UserDetails:
    """Contact details used to prefill the checkout widget."""

    name: str
    email: str
    phone: str = ""


@dataclass(frozen=True, slots=True)
class BusinessInfo:
    """Optional invoicing details supplied at checkout."""

    business_name: str = ""
    business_address: str = ""
    gst_number: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any] | None) -> "BusinessInfo":
        """Construct ``BusinessInfo`` from the checkout form's camelCase JSON."""
        data = data or {}
        return cls(
            business_name=str(data.get("businessName") or ""),
            business_address=str(data.get("businessAddress") or ""),
            gst_number=str(data.get("businessGstNumber") or ""),
        )
