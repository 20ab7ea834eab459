"""Custom signals for the checkout app.

Signals:
    purchase_completed: Sent exactly once when a purchase transitions to
        COMPLETED. Cart implementations listen for it to clear themselves.
        Sender: The ``Purchase`` class.
        Kwargs:
            purchase: The ``Purchase`` instance that was completed.
            user: The user who owns the purchase.
"""

from django.dispatch import Signal

purchase_completed = Signal()
