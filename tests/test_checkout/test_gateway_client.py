"""Tests for the gateway REST client, using httpx.MockTransport."""

import base64
import json

import httpx
import pytest

from django_reseller.checkout.exceptions import GatewayError
from django_reseller.checkout.gateway_client import GatewayClient, GatewayOrder, GatewayPayment
from django_reseller.settings import GatewayConfig

CONFIG = GatewayConfig(key_id="rzp_test_key", key_secret="test_key_secret")


def _client(handler) -> GatewayClient:
    return GatewayClient(CONFIG, transport=httpx.MockTransport(handler))


# =============================================================================
# Construction
# =============================================================================


@pytest.mark.unit
class TestConstruction:
    @pytest.mark.parametrize(
        "config",
        [
            GatewayConfig(),
            GatewayConfig(key_id="rzp_test_key"),
            GatewayConfig(key_secret="secret"),
        ],
    )
    def test_missing_credentials(self, config):
        with pytest.raises(ValueError, match="credentials are not configured"):
            GatewayClient(config)

    def test_base_url_is_normalized(self):
        client = GatewayClient(GatewayConfig(key_id="k", key_secret="s", api_base_url="https://gw.example.com/v1/"))

        assert client.base_url == "https://gw.example.com/v1"


# =============================================================================
# create_order
# =============================================================================


@pytest.mark.unit
class TestCreateOrder:
    def test_posts_order_with_basic_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"id": "order_ABC", "amount": 94400, "currency": "INR", "receipt": "ord_1", "status": "created"},
            )

        order = _client(handler).create_order(
            amount=94400,
            currency="inr",
            receipt="ord_" + "x" * 60,
            notes={"purchase_id": "p1"},
        )

        assert order == GatewayOrder(id="order_ABC", amount=94400, currency="INR", receipt="ord_1", status="created")
        assert seen["method"] == "POST"
        assert seen["path"] == "/v1/orders"
        expected_auth = base64.b64encode(b"rzp_test_key:test_key_secret").decode()
        assert seen["auth"] == f"Basic {expected_auth}"
        assert seen["body"] == {
            "amount": 94400,
            "currency": "INR",
            "receipt": ("ord_" + "x" * 60)[:40],
            "notes": {"purchase_id": "p1"},
        }

    def test_http_error_becomes_gateway_error(self):
        client = _client(lambda request: httpx.Response(400, json={"error": {"description": "bad amount"}}))

        with pytest.raises(GatewayError, match="status 400"):
            client.create_order(amount=0, currency="INR", receipt="r")

    def test_connection_error_becomes_gateway_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("boom", request=request)

        with pytest.raises(GatewayError, match="unreachable"):
            _client(handler).create_order(amount=100, currency="INR", receipt="r")

    def test_non_json_response(self):
        client = _client(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(GatewayError, match="invalid response"):
            client.create_order(amount=100, currency="INR", receipt="r")

    def test_non_object_json_response(self):
        client = _client(lambda request: httpx.Response(200, json=["order_1"]))

        with pytest.raises(GatewayError, match="invalid response"):
            client.create_order(amount=100, currency="INR", receipt="r")


# =============================================================================
# fetch_payment / fetch_script
# =============================================================================


@pytest.mark.unit
class TestFetchPayment:
    def test_fetches_payment(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/payments/pay_123"
            return httpx.Response(
                200,
                json={
                    "id": "pay_123",
                    "order_id": "order_ABC",
                    "amount": 94400,
                    "currency": "INR",
                    "status": "captured",
                    "method": "upi",
                    "notes": [],
                },
            )

        payment = _client(handler).fetch_payment("pay_123")

        assert payment.order_id == "order_ABC"
        assert payment.amount == 94400
        assert payment.method == "upi"
        assert payment.notes == {}
        assert payment.is_successful is True

    @pytest.mark.parametrize(
        ("status", "successful"),
        [("captured", True), ("authorized", True), ("created", False), ("failed", False), ("refunded", False)],
    )
    def test_is_successful(self, status, successful):
        payment = GatewayPayment(id="pay_1", order_id="order_1", amount=1, currency="INR", status=status)

        assert payment.is_successful is successful

    def test_not_found(self):
        client = _client(lambda request: httpx.Response(404, json={}))

        with pytest.raises(GatewayError, match="status 404"):
            client.fetch_payment("pay_missing")


@pytest.mark.unit
class TestFetchScript:
    def test_reachable_script(self):
        client = _client(lambda request: httpx.Response(200, text="/* checkout */"))

        assert client.fetch_script("https://checkout.example.com/v1/checkout.js") is True

    def test_missing_script(self):
        client = _client(lambda request: httpx.Response(404))

        assert client.fetch_script("https://checkout.example.com/v1/checkout.js") is False

    def test_unreachable_script(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        assert _client(handler).fetch_script("https://checkout.example.com/v1/checkout.js") is False
