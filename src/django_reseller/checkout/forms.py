"""Forms validating the checkout JSON endpoints."""

from django import forms


class CreateOrderForm(forms.Form):
    """Optional fields sent alongside the cart when creating an order."""

    coupon_code = forms.CharField(max_length=100, required=False, strip=True)
    customer_gst_number = forms.CharField(max_length=15, required=False, strip=True)


class VerifyPaymentForm(forms.Form):
    """The gateway's checkout callback, forwarded for server-side verification."""

    gateway_order_id = forms.CharField(max_length=100)
    gateway_payment_id = forms.CharField(max_length=100)
    signature = forms.CharField(max_length=200)
    purchase_id = forms.UUIDField()
