"""JSON endpoints for the checkout flow.

The storefront calls these from the browser: create an order for the current
cart, forward the gateway's success callback for verification, and read back a
purchase while polling for its status.
"""

import json
import logging
import uuid
from typing import Any

from django.contrib.auth.mixins import LoginRequiredMixin
from django.http import HttpRequest, JsonResponse
from django.views import View

from django_reseller.checkout.exceptions import CheckoutError, EmptyCart, GatewayError, PurchaseNotFound
from django_reseller.checkout.forms import CreateOrderForm, VerifyPaymentForm
from django_reseller.checkout.models import Purchase
from django_reseller.checkout.services.orders import OrderStore
from django_reseller.checkout.services.pricing import payment_method_display_name
from django_reseller.checkout.services.verification import PaymentVerifier
from django_reseller.checkout.types import BusinessInfo, CartItem

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[CheckoutError], int] = {
    EmptyCart: 400,
    GatewayError: 502,
    PurchaseNotFound: 404,
}


def _error(message: str, status: int = 400) -> JsonResponse:
    return JsonResponse({"success": False, "error": message}, status=status)


def _json_body(request: HttpRequest) -> dict[str, Any] | None:
    try:
        data = json.loads(request.body or b"{}")
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def purchase_to_dict(purchase: Purchase) -> dict[str, Any]:
    """Serialize a purchase and its items for the storefront."""
    return {
        "id": str(purchase.pk),
        "payment_status": purchase.payment_status,
        "payment_method": purchase.payment_method,
        "payment_method_display": payment_method_display_name(purchase.payment_method),
        "subtotal": str(purchase.subtotal),
        "tax_amount": str(purchase.tax_amount),
        "total_amount": str(purchase.total_amount),
        "coupon_code": purchase.coupon_code,
        "coupon_discount": str(purchase.coupon_discount) if purchase.coupon_discount is not None else None,
        "gateway_order_id": purchase.gateway_order_id,
        "gateway_payment_id": purchase.gateway_payment_id,
        "cancel_reason": purchase.cancel_reason,
        "expires_at": purchase.expires_at.isoformat() if purchase.expires_at else None,
        "created_at": purchase.created_at.isoformat(),
        "is_payable": OrderStore.is_payable(purchase),
        "items": [
            {
                "type": item.item_type,
                "id": item.catalog_id,
                "name": item.item_name,
                "price": str(item.item_price),
                "billing_period": item.billing_period,
            }
            for item in purchase.items.all()
        ],
    }


class CreateOrderView(LoginRequiredMixin, View):
    """Create a pending purchase and gateway order for the posted cart.

    Expects ``{"cart_items": [...], "coupon_code"?, "customer_gst_number"?,
    "business_info"?}``. Responds with the order data, 400 for an empty or
    malformed cart and 502 when the gateway rejects the order.
    """

    raise_exception = True

    def post(self, request: HttpRequest) -> JsonResponse:
        data = _json_body(request)
        if data is None:
            return _error("Invalid JSON body.")

        raw_items = data.get("cart_items") or []
        if not isinstance(raw_items, list):
            return _error("cart_items must be a list.")
        try:
            cart = [CartItem.from_api(item) for item in raw_items if isinstance(item, dict)]
        except ValueError as exc:
            return _error(str(exc))

        form = CreateOrderForm(data)
        if not form.is_valid():
            return JsonResponse(
                {"success": False, "error": "Invalid order details.", "errors": form.errors.get_json_data()},
                status=400,
            )

        business_info = data.get("business_info")
        try:
            order = OrderStore.create_order(
                request.user,
                cart,
                coupon_code=form.cleaned_data["coupon_code"] or None,
                gst_number=form.cleaned_data["customer_gst_number"] or None,
                business_info=BusinessInfo.from_api(business_info if isinstance(business_info, dict) else None),
            )
        except CheckoutError as exc:
            logger.warning("Order creation failed for user %s: %s", request.user.pk, exc.message)
            return _error(exc.message, _ERROR_STATUS.get(type(exc), 400))

        return JsonResponse(order.as_dict())


class VerifyPaymentView(LoginRequiredMixin, View):
    """Verify a checkout callback and complete the purchase."""

    raise_exception = True

    def post(self, request: HttpRequest) -> JsonResponse:
        data = _json_body(request)
        if data is None:
            return _error("Invalid JSON body.")

        form = VerifyPaymentForm(data)
        if not form.is_valid():
            return _error("Missing required payment details.")

        result = PaymentVerifier().verify(
            form.cleaned_data["gateway_order_id"],
            form.cleaned_data["gateway_payment_id"],
            form.cleaned_data["signature"],
            form.cleaned_data["purchase_id"],
            user=request.user,
        )
        return JsonResponse(result.as_dict(), status=200 if result.success else 400)


class PurchaseDetailView(LoginRequiredMixin, View):
    """Return one of the current user's purchases."""

    raise_exception = True

    def get(self, request: HttpRequest, purchase_id: uuid.UUID) -> JsonResponse:
        try:
            purchase = OrderStore.get_details(purchase_id, user=request.user)
        except PurchaseNotFound as exc:
            return _error(exc.message, 404)
        return JsonResponse(purchase_to_dict(purchase))
