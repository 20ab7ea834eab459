"""Amount conversion, signature helpers, and key obfuscation for the payment gateway.

The gateway represents monetary amounts as integers in the smallest currency
unit (paise for INR). It signs checkout callbacks with HMAC-SHA256 over
``"{order_id}|{payment_id}"`` keyed by the account's key secret, and signs
webhook bodies with HMAC-SHA256 keyed by the webhook secret. Both signatures
are transmitted as lowercase hex digests.
"""

import hashlib
import hmac
from decimal import ROUND_HALF_UP, Decimal

_OBFUSCATE_VISIBLE_CHARS = 4

ZERO_DECIMAL_CURRENCIES: frozenset[str] = frozenset({"JPY", "KRW", "VND"})


def convert_amount_for_api(amount: Decimal, currency: str) -> int:
    """Convert a Decimal amount to the integer minor-unit value the gateway expects.

    ``Decimal("944.00")`` in INR becomes ``94400``. Fractions of a minor unit
    are rounded half-up so a stored total always maps to the same integer.

    Args:
        amount: The monetary amount as a :class:`~decimal.Decimal`.
        currency: An ISO 4217 currency code (case-insensitive).

    Returns:
        The amount as an integer in the smallest currency unit.
    """
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def convert_amount_for_db(amount: int, currency: str) -> Decimal:
    """Convert an integer minor-unit amount from the gateway back to a Decimal.

    This is the inverse of :func:`convert_amount_for_api`.

    Args:
        amount: The integer amount in the smallest currency unit.
        currency: An ISO 4217 currency code (case-insensitive).

    Returns:
        The amount as a :class:`~decimal.Decimal` with two decimal places
        for normal-decimal currencies.
    """
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(str(amount))
    return (Decimal(str(amount)) / 100).quantize(Decimal("0.01"))


def compute_signature(message: str | bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 digest of *message* keyed by *secret*."""
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    """Check a checkout callback signature in constant time.

    Args:
        order_id: The gateway order id the payment claims to belong to.
        payment_id: The gateway payment id from the callback.
        signature: The hex signature delivered with the callback.
        secret: The server-held key secret.

    Returns:
        ``True`` if the signature matches, ``False`` otherwise.
    """
    if not (order_id and payment_id and signature and secret):
        return False
    expected = compute_signature(f"{order_id}|{payment_id}", secret)
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(body: bytes, signature: str, secret: str) -> bool:
    """Check a webhook body signature in constant time."""
    if not (signature and secret):
        return False
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected, signature)


def obfuscate_key(key: str) -> str:
    """Obfuscate an API key so it can be safely written to logs.

    Returns the last four characters of the key prefixed with ``"****"``.  If the key is
    shorter than four characters the entire value is masked and only ``"****"`` is
    returned.

    Args:
        key: The secret key to obfuscate.

    Returns:
        A partially masked string safe for log output.
    """
    if len(key) < _OBFUSCATE_VISIBLE_CHARS:
        return "****"
    return "****" + key[-_OBFUSCATE_VISIBLE_CHARS:]
