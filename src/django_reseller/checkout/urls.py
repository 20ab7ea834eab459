"""URL configuration for the checkout app.

Mount under any prefix in the host project::

    urlpatterns = [
        path("checkout/", include("django_reseller.checkout.urls")),
    ]
"""

from django.urls import path

from django_reseller.checkout.views import CreateOrderView, PurchaseDetailView, VerifyPaymentView
from django_reseller.checkout.webhooks import gateway_webhook

app_name = "checkout"

urlpatterns = [
    path("create-order/", CreateOrderView.as_view(), name="create-order"),
    path("verify-payment/", VerifyPaymentView.as_view(), name="verify-payment"),
    path("purchases/<uuid:purchase_id>/", PurchaseDetailView.as_view(), name="purchase-detail"),
    path("webhooks/gateway/", gateway_webhook, name="gateway-webhook"),
]
