"""Django app configuration for the checkout app."""

from django.apps import AppConfig


class DjangoResellerCheckoutConfig(AppConfig):
    """Configuration for the checkout app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "django_reseller.checkout"
    label = "reseller_checkout"
    verbose_name = "Checkout"
