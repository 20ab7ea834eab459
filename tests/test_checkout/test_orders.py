"""Tests for OrderStore and the purchase state machine."""

import itertools
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.utils import timezone

from django_reseller.checkout.exceptions import (
    AuthRequired,
    EmptyCart,
    GatewayError,
    InvalidStatusTransition,
    PurchaseNotFound,
)
from django_reseller.checkout.gateway_client import GatewayClient, GatewayOrder
from django_reseller.checkout.models import Coupon, CouponUsage, Purchase, PurchaseItem
from django_reseller.checkout.services.orders import OrderData, OrderStore
from django_reseller.checkout.signals import purchase_completed
from django_reseller.checkout.types import BusinessInfo, CartItem

User = get_user_model()
Status = Purchase.Status


def _item(price: str, item_id: str = "svc-1", item_type: str = "service", **kwargs: str) -> CartItem:
    return CartItem(id=item_id, name=f"Item {item_id}", price=Decimal(price), type=item_type, **kwargs)


# -- Fixtures -----------------------------------------------------------------


@pytest.fixture
def user(db):
    return User.objects.create_user(username="buyer", email="buyer@example.com", password="testpass123")


@pytest.fixture
def other_user(db):
    return User.objects.create_user(username="someone", email="someone@example.com", password="testpass123")


@pytest.fixture
def gateway_client():
    counter = itertools.count(1)
    client = MagicMock(spec=GatewayClient)
    client.create_order.side_effect = lambda **kwargs: GatewayOrder(
        id=f"order_TEST{next(counter)}",
        amount=kwargs["amount"],
        currency=kwargs["currency"],
        receipt=kwargs["receipt"],
        status="created",
    )
    return client


@pytest.fixture
def save20(db):
    return Coupon.objects.create(
        code="SAVE20",
        discount_type=Coupon.DiscountType.PERCENTAGE,
        discount_value=Decimal("20"),
    )


@pytest.fixture
def flat100(db):
    return Coupon.objects.create(
        code="FLAT100",
        discount_type=Coupon.DiscountType.FIXED,
        discount_value=Decimal("100"),
    )


def _purchase(user, status=Status.PENDING, **kwargs) -> Purchase:
    defaults = {
        "total_amount": Decimal("944.00"),
        "gateway_order_id": "order_EXISTING",
        "expires_at": timezone.now() + timedelta(minutes=15),
    }
    defaults.update(kwargs)
    return Purchase.objects.create(user=user, payment_status=status, **defaults)


# =============================================================================
# create_order
# =============================================================================


@pytest.mark.django_db
class TestCreateOrder:
    def test_creates_purchase_with_coupon(self, user, gateway_client, save20):
        order = OrderStore.create_order(user, [_item("1000")], coupon_code="save20", client=gateway_client)

        assert order.success is True
        assert order.amount == 94400
        assert order.currency == "INR"
        assert order.key == "rzp_test_key"
        assert order.gateway_order_id == "order_TEST1"
        assert order.warning is None

        purchase = Purchase.objects.get(pk=order.purchase_id)
        assert purchase.payment_status == Status.PENDING
        assert purchase.subtotal == Decimal("1000.00")
        assert purchase.tax_amount == Decimal("144.00")
        assert purchase.total_amount == Decimal("944.00")
        assert purchase.coupon_code == "SAVE20"
        assert purchase.coupon_discount == Decimal("200.00")
        assert purchase.gateway_order_id == "order_TEST1"

    def test_fixed_coupon_on_two_items(self, user, gateway_client, flat100):
        order = OrderStore.create_order(
            user,
            [_item("500", "a"), _item("2000", "b")],
            coupon_code="FLAT100",
            client=gateway_client,
        )

        purchase = Purchase.objects.get(pk=order.purchase_id)
        assert purchase.coupon_discount == Decimal("100.00")
        assert purchase.total_amount == Decimal("2832.00")
        assert order.amount == 283200

    def test_sets_expiry_fifteen_minutes_ahead(self, user, gateway_client):
        before = timezone.now()
        order = OrderStore.create_order(user, [_item("1000")], client=gateway_client)

        purchase = Purchase.objects.get(pk=order.purchase_id)
        assert before + timedelta(minutes=15) <= purchase.expires_at <= timezone.now() + timedelta(minutes=15)

    def test_persists_items(self, user, gateway_client):
        cart = [
            _item("1000", "svc-9", "service", billing_period="monthly"),
            _item("2500", "bnd-1", "bundle"),
            _item("300", "add-7", "addon"),
        ]

        order = OrderStore.create_order(user, cart, client=gateway_client)

        items = list(PurchaseItem.objects.filter(purchase_id=order.purchase_id).order_by("id"))
        assert [(i.item_type, i.service_id, i.bundle_id, i.addon_id) for i in items] == [
            ("service", "svc-9", "", ""),
            ("bundle", "", "bnd-1", ""),
            ("addon", "", "", "add-7"),
        ]
        assert items[0].billing_period == "monthly"
        assert items[1].item_price == Decimal("2500.00")

    def test_gateway_order_request(self, user, gateway_client):
        order = OrderStore.create_order(user, [_item("1000", "a"), _item("10", "b")], client=gateway_client)

        purchase = Purchase.objects.get(pk=order.purchase_id)
        kwargs = gateway_client.create_order.call_args.kwargs
        assert kwargs["amount"] == 119180
        assert kwargs["currency"] == "INR"
        assert kwargs["receipt"] == f"ord_{purchase.pk.hex}"
        assert len(kwargs["receipt"]) == 36
        assert kwargs["notes"] == {
            "purchase_id": str(purchase.pk),
            "user_id": str(user.pk),
            "item_count": "2",
        }

    def test_rejected_coupon_becomes_warning(self, user, gateway_client, save20):
        previous = _purchase(user)
        CouponUsage.objects.create(coupon=save20, user=user, purchase=previous)

        order = OrderStore.create_order(user, [_item("1000")], coupon_code="SAVE20", client=gateway_client)

        assert order.success is True
        assert order.warning == "You have already used this coupon."
        purchase = Purchase.objects.get(pk=order.purchase_id)
        assert purchase.total_amount == Decimal("1180.00")
        assert purchase.coupon_code == ""
        assert purchase.coupon_discount is None

    def test_unknown_coupon_becomes_warning(self, user, gateway_client):
        order = OrderStore.create_order(user, [_item("1000")], coupon_code="NOPE", client=gateway_client)

        assert order.warning == "Invalid coupon code."
        assert order.amount == 118000

    def test_minimum_charge_applies(self, user, gateway_client):
        Coupon.objects.create(code="FREE", discount_type=Coupon.DiscountType.PERCENTAGE, discount_value=Decimal("100"))

        order = OrderStore.create_order(user, [_item("1000")], coupon_code="FREE", client=gateway_client)

        purchase = Purchase.objects.get(pk=order.purchase_id)
        assert purchase.total_amount == Decimal("1.00")
        assert order.amount == 100

    def test_business_info_is_stored(self, user, gateway_client):
        info = BusinessInfo(business_name="Acme Pvt Ltd", business_address="1 MG Road", gst_number="29ABCDE1234F1Z5")

        order = OrderStore.create_order(user, [_item("1000")], business_info=info, client=gateway_client)

        purchase = Purchase.objects.get(pk=order.purchase_id)
        assert purchase.customer_business_name == "Acme Pvt Ltd"
        assert purchase.customer_address == "1 MG Road"
        assert purchase.customer_gst_number == "29ABCDE1234F1Z5"

    def test_explicit_gst_number_wins(self, user, gateway_client):
        info = BusinessInfo(gst_number="29ABCDE1234F1Z5")

        order = OrderStore.create_order(
            user,
            [_item("1000")],
            gst_number="07AAAAA0000A1Z5",
            business_info=info,
            client=gateway_client,
        )

        assert Purchase.objects.get(pk=order.purchase_id).customer_gst_number == "07AAAAA0000A1Z5"

    def test_empty_cart(self, user, gateway_client):
        with pytest.raises(EmptyCart):
            OrderStore.create_order(user, [], client=gateway_client)

        assert Purchase.objects.count() == 0
        gateway_client.create_order.assert_not_called()

    def test_anonymous_user(self, db, gateway_client):
        with pytest.raises(AuthRequired):
            OrderStore.create_order(AnonymousUser(), [_item("1000")], client=gateway_client)

        with pytest.raises(AuthRequired):
            OrderStore.create_order(None, [_item("1000")], client=gateway_client)

    def test_gateway_failure_rolls_back(self, user, gateway_client):
        gateway_client.create_order.side_effect = GatewayError("Gateway request failed with status 500")

        with pytest.raises(GatewayError):
            OrderStore.create_order(user, [_item("1000")], client=gateway_client)

        assert Purchase.objects.count() == 0
        assert PurchaseItem.objects.count() == 0

    def test_sweeps_expired_pending_purchases_first(self, user, other_user, gateway_client):
        stale = _purchase(user, expires_at=timezone.now() - timedelta(minutes=1))
        fresh = _purchase(user)
        someone_elses = _purchase(other_user, expires_at=timezone.now() - timedelta(minutes=1))

        OrderStore.create_order(user, [_item("1000")], client=gateway_client)

        stale.refresh_from_db()
        fresh.refresh_from_db()
        someone_elses.refresh_from_db()
        assert stale.payment_status == Status.CANCELLED
        assert stale.cancel_reason == Purchase.CancelReason.EXPIRED
        assert fresh.payment_status == Status.PENDING
        assert someone_elses.payment_status == Status.PENDING


# =============================================================================
# update_status
# =============================================================================


@pytest.mark.django_db
class TestUpdateStatus:
    def test_pending_to_processing(self, user):
        purchase = _purchase(user)

        result = OrderStore.update_status(purchase.pk, Status.PROCESSING)

        assert result.payment_status == Status.PROCESSING

    def test_processing_to_completed(self, user):
        purchase = _purchase(user, Status.PROCESSING)

        result = OrderStore.update_status(purchase.pk, "completed", "pay_123", "upi")

        purchase.refresh_from_db()
        assert result.payment_status == Status.COMPLETED
        assert purchase.gateway_payment_id == "pay_123"
        assert purchase.payment_method == "upi"

    def test_completion_requires_payment_id(self, user):
        purchase = _purchase(user, Status.PROCESSING)

        with pytest.raises(InvalidStatusTransition, match="gateway payment id"):
            OrderStore.update_status(purchase.pk, Status.COMPLETED)

    def test_pending_cannot_complete_directly(self, user):
        purchase = _purchase(user)

        with pytest.raises(InvalidStatusTransition):
            OrderStore.update_status(purchase.pk, Status.COMPLETED, "pay_123")

    def test_processing_cannot_go_back_to_pending(self, user):
        purchase = _purchase(user, Status.PROCESSING)

        with pytest.raises(InvalidStatusTransition):
            OrderStore.update_status(purchase.pk, Status.PENDING)

    def test_unknown_status(self, user):
        purchase = _purchase(user)

        with pytest.raises(InvalidStatusTransition, match="Unknown payment status"):
            OrderStore.update_status(purchase.pk, "refunded")

    def test_missing_purchase(self, db):
        with pytest.raises(PurchaseNotFound):
            OrderStore.update_status("00000000-0000-0000-0000-000000000000", Status.PROCESSING)

    def test_cancel_records_reason(self, user):
        purchase = _purchase(user, Status.PROCESSING)

        OrderStore.update_status(purchase.pk, Status.CANCELLED, reason=Purchase.CancelReason.DISMISSED)

        purchase.refresh_from_db()
        assert purchase.payment_status == Status.CANCELLED
        assert purchase.cancel_reason == Purchase.CancelReason.DISMISSED

    def test_cancel_defaults_to_user_reason(self, user):
        purchase = _purchase(user)

        OrderStore.update_status(purchase.pk, Status.CANCELLED)

        purchase.refresh_from_db()
        assert purchase.cancel_reason == Purchase.CancelReason.USER

    @pytest.mark.parametrize("terminal", [Status.COMPLETED, Status.FAILED, Status.CANCELLED])
    def test_terminal_states_are_closed(self, user, terminal):
        purchase = _purchase(user, terminal, gateway_payment_id="pay_done")

        for target in Status.values:
            OrderStore.update_status(purchase.pk, target, "pay_other", "card")

        purchase.refresh_from_db()
        assert purchase.payment_status == terminal
        assert purchase.gateway_payment_id == "pay_done"

    def test_completion_is_idempotent(self, user, save20):
        purchase = _purchase(user, Status.PROCESSING, coupon_code="SAVE20")
        received = []

        def receiver(sender, purchase, user, **kwargs):
            received.append(purchase.pk)

        purchase_completed.connect(receiver)
        try:
            first = OrderStore.update_status(purchase.pk, Status.COMPLETED, "pay_123", "card")
            second = OrderStore.update_status(purchase.pk, Status.COMPLETED, "pay_123", "card")
        finally:
            purchase_completed.disconnect(receiver)

        assert first.payment_status == second.payment_status == Status.COMPLETED
        assert received == [purchase.pk]
        save20.refresh_from_db()
        assert save20.current_uses == 1
        assert CouponUsage.objects.filter(coupon=save20, user=user).count() == 1

    def test_completion_without_coupon_records_no_usage(self, user):
        purchase = _purchase(user, Status.PROCESSING)

        OrderStore.update_status(purchase.pk, Status.COMPLETED, "pay_123")

        assert CouponUsage.objects.count() == 0

    def test_repeat_completion_fills_missing_method(self, user):
        purchase = _purchase(user, Status.PROCESSING)
        OrderStore.update_status(purchase.pk, Status.COMPLETED, "pay_123")

        OrderStore.update_status(purchase.pk, Status.COMPLETED, "pay_123", "netbanking")

        purchase.refresh_from_db()
        assert purchase.payment_method == "netbanking"

    def test_failure_records_no_coupon_usage(self, user, save20):
        purchase = _purchase(user, Status.PROCESSING, coupon_code="SAVE20")

        OrderStore.update_status(purchase.pk, Status.FAILED)

        save20.refresh_from_db()
        assert save20.current_uses == 0
        assert CouponUsage.objects.count() == 0


# =============================================================================
# Reads, expiry and retry
# =============================================================================


@pytest.mark.django_db
class TestGetDetails:
    def test_returns_purchase_with_items(self, user):
        purchase = _purchase(user)
        PurchaseItem.objects.create(
            purchase=purchase,
            item_type="service",
            service_id="svc-1",
            item_name="SEO Audit",
            item_price=Decimal("800.00"),
        )

        result = OrderStore.get_details(purchase.pk, user=user)

        assert result == purchase
        assert [item.item_name for item in result.items.all()] == ["SEO Audit"]

    def test_scoped_to_user(self, user, other_user):
        purchase = _purchase(user)

        with pytest.raises(PurchaseNotFound):
            OrderStore.get_details(purchase.pk, user=other_user)

    def test_malformed_id(self, db):
        with pytest.raises(PurchaseNotFound):
            OrderStore.get_details("not-a-uuid")


@pytest.mark.django_db
class TestExpiry:
    def test_cleanup_expired_counts_and_is_repeatable(self, user):
        _purchase(user, expires_at=timezone.now() - timedelta(seconds=1))
        _purchase(user, Status.PROCESSING, expires_at=timezone.now() - timedelta(seconds=1))

        assert OrderStore.cleanup_expired(user) == 1
        assert OrderStore.cleanup_expired(user) == 0

    def test_is_payable(self, user):
        assert OrderStore.is_payable(_purchase(user)) is True
        assert OrderStore.is_payable(_purchase(user, Status.PROCESSING)) is True

    def test_expired_pending_is_not_payable(self, user):
        purchase = _purchase(user, expires_at=timezone.now() - timedelta(seconds=1))

        assert OrderStore.is_payable(OrderStore.get_details(purchase.pk)) is False

    def test_terminal_or_unbound_purchase_is_not_payable(self, user):
        assert OrderStore.is_payable(_purchase(user, Status.COMPLETED)) is False
        assert OrderStore.is_payable(_purchase(user, Status.CANCELLED)) is False
        assert OrderStore.is_payable(_purchase(user, gateway_order_id="")) is False

    def test_time_remaining(self, user):
        now = timezone.now()
        purchase = _purchase(user, expires_at=now + timedelta(minutes=14, seconds=5))

        assert OrderStore.time_remaining(purchase, now=now) == timedelta(minutes=14, seconds=5)
        assert OrderStore.time_remaining(purchase, now=now + timedelta(hours=1)) == timedelta(0)

    @pytest.mark.parametrize(
        ("remaining", "expected"),
        [
            (timedelta(minutes=14, seconds=5), "14:05"),
            (timedelta(seconds=59), "0:59"),
            (timedelta(minutes=15), "15:00"),
            (timedelta(0), "Expired"),
            (timedelta(seconds=-3), "Expired"),
        ],
    )
    def test_format_countdown(self, remaining, expected):
        assert OrderStore.format_countdown(remaining) == expected


@pytest.mark.django_db
class TestReopenForRetry:
    def test_reopens_dismissed_purchase(self, user):
        purchase = _purchase(user, Status.CANCELLED, cancel_reason=Purchase.CancelReason.DISMISSED)

        result = OrderStore.reopen_for_retry(purchase.pk)

        assert result.payment_status == Status.PENDING
        assert result.cancel_reason == ""

    @pytest.mark.parametrize(
        ("status", "reason"),
        [
            (Status.CANCELLED, Purchase.CancelReason.EXPIRED),
            (Status.CANCELLED, Purchase.CancelReason.USER),
            (Status.FAILED, ""),
            (Status.COMPLETED, ""),
        ],
    )
    def test_other_closed_purchases_stay_closed(self, user, status, reason):
        purchase = _purchase(user, status, cancel_reason=reason)

        with pytest.raises(InvalidStatusTransition):
            OrderStore.reopen_for_retry(purchase.pk)

        purchase.refresh_from_db()
        assert purchase.payment_status == status

    def test_expired_dismissed_purchase_stays_closed(self, user):
        purchase = _purchase(
            user,
            Status.CANCELLED,
            cancel_reason=Purchase.CancelReason.DISMISSED,
            expires_at=timezone.now() - timedelta(seconds=1),
        )

        with pytest.raises(InvalidStatusTransition):
            OrderStore.reopen_for_retry(purchase.pk)


# =============================================================================
# OrderData
# =============================================================================


@pytest.mark.django_db
class TestOrderData:
    def test_from_purchase(self, user):
        purchase = _purchase(user, total_amount=Decimal("2832.00"))

        data = OrderData.from_purchase(purchase)

        assert data.success is True
        assert data.purchase_id == str(purchase.pk)
        assert data.gateway_order_id == "order_EXISTING"
        assert data.amount == 283200

    def test_as_dict_success(self):
        data = OrderData(
            success=True,
            purchase_id="p1",
            gateway_order_id="order_1",
            amount=94400,
            currency="INR",
            key="rzp_test_key",
            warning="Invalid coupon code.",
        )

        assert data.as_dict() == {
            "success": True,
            "purchase_id": "p1",
            "gateway_order_id": "order_1",
            "amount": 94400,
            "currency": "INR",
            "gateway_public_key": "rzp_test_key",
            "warning": "Invalid coupon code.",
        }

    def test_as_dict_failure(self):
        assert OrderData.failed("Cart is empty.").as_dict() == {"success": False, "error": "Cart is empty."}
