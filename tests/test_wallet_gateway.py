"""Wallet gateway against a scripted requests session."""

from __future__ import annotations

import json
from decimal import Decimal

import pytest
import requests

from taskmarket.errors import (
    AlreadyCaptured, InvalidSignature, PaymentIncomplete, ProviderError, ProviderUnavailable,
)
from taskmarket.services.gateways import WalletGateway

API = "https://api.test.paypal"


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = json.dumps(self._payload)

    def json(self):
        return self._payload


class FakeSession:
    """Answers by (method, path); records every call."""

    def __init__(self, routes=None):
        self.routes = {("POST", "/v1/oauth2/token"): FakeResponse(200, {"access_token": "tok", "expires_in": 3600})}
        self.routes.update(routes or {})
        self.calls = []

    def _answer(self, method, url, kwargs):
        path = url[len(API):]
        self.calls.append((method, path, kwargs))
        answer = self.routes[(method, path)]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def post(self, url, **kwargs):
        return self._answer("POST", url, kwargs)

    def request(self, method, url, **kwargs):
        return self._answer(method, url, kwargs)


def order(status="COMPLETED", value="150.00", order_id="ORDER-1", payment_id="7"):
    return {
        "id": order_id,
        "status": status,
        "payer": {"email_address": "payer@example.com"},
        "purchase_units": [{
            "custom_id": payment_id,
            "amount": {"currency_code": "USD", "value": value},
            "payments": {"captures": [{
                "id": "CAP-1", "amount": {"value": value}, "create_time": "2024-05-01T10:00:00Z",
            }]},
        }],
        "links": [{"rel": "approve", "href": "https://paypal.test/approve"}],
    }


def make_gateway(routes=None, webhook_id="WH-1"):
    session = FakeSession(routes)
    gateway = WalletGateway(
        client_id="cid", secret="sec", api_base=API, webhook_id=webhook_id, session=session,
    )
    return gateway, session


@pytest.mark.unit
class TestCreateIntent:
    """Tests for order creation."""

    def test_creates_order_with_payment_id(self) -> None:
        gateway, session = make_gateway({
            ("POST", "/v2/checkout/orders"): FakeResponse(201, order(status="CREATED")),
        })
        handle = gateway.create_intent(Decimal("150"), {"payment_id": 7})

        assert handle.reference == "ORDER-1"
        assert handle.extra["approve_url"] == "https://paypal.test/approve"
        _, _, kwargs = session.calls[-1]
        unit = kwargs["json"]["purchase_units"][0]
        assert unit["custom_id"] == "7"
        assert unit["amount"] == {"currency_code": "USD", "value": "150.00"}
        assert kwargs["headers"]["Authorization"] == "Bearer tok"

    def test_token_is_cached(self) -> None:
        gateway, session = make_gateway({
            ("POST", "/v2/checkout/orders"): FakeResponse(201, order(status="CREATED")),
        })
        gateway.create_intent(Decimal("1"), {"payment_id": 1})
        gateway.create_intent(Decimal("1"), {"payment_id": 2})
        token_calls = [c for c in session.calls if c[1] == "/v1/oauth2/token"]
        assert len(token_calls) == 1

    def test_network_error_is_retryable(self) -> None:
        gateway, _ = make_gateway({
            ("POST", "/v2/checkout/orders"): requests.ConnectionError("reset"),
        })
        with pytest.raises(ProviderUnavailable):
            gateway.create_intent(Decimal("1"), {"payment_id": 1})

    def test_server_error_is_retryable(self) -> None:
        gateway, _ = make_gateway({("POST", "/v2/checkout/orders"): FakeResponse(503)})
        with pytest.raises(ProviderUnavailable):
            gateway.create_intent(Decimal("1"), {"payment_id": 1})

    def test_rejected_credentials(self) -> None:
        gateway, _ = make_gateway({("POST", "/v1/oauth2/token"): FakeResponse(401, {"error": "invalid_client"})})
        with pytest.raises(ProviderError) as exc:
            gateway.create_intent(Decimal("1"), {"payment_id": 1})
        assert not exc.value.retryable


@pytest.mark.unit
class TestCapture:
    """Tests for confirm (order capture)."""

    def test_completed_capture(self) -> None:
        gateway, _ = make_gateway({
            ("POST", "/v2/checkout/orders/ORDER-1/capture"): FakeResponse(201, order()),
        })
        conf = gateway.confirm("ORDER-1")
        assert conf.reference == "ORDER-1"
        assert conf.id == "CAP-1"
        assert conf.amount == Decimal("150.00")
        assert conf.payer_email == "payer@example.com"
        assert conf.captured_at.year == 2024

    def test_already_captured_carries_confirmation(self) -> None:
        gateway, _ = make_gateway({
            ("POST", "/v2/checkout/orders/ORDER-1/capture"): FakeResponse(
                422, {"details": [{"issue": "ORDER_ALREADY_CAPTURED"}]}
            ),
            ("GET", "/v2/checkout/orders/ORDER-1"): FakeResponse(200, order()),
        })
        with pytest.raises(AlreadyCaptured) as exc:
            gateway.confirm("ORDER-1")
        assert exc.value.confirmation.amount == Decimal("150.00")

    def test_not_approved_is_incomplete(self) -> None:
        gateway, _ = make_gateway({
            ("POST", "/v2/checkout/orders/ORDER-1/capture"): FakeResponse(
                422, {"details": [{"issue": "ORDER_NOT_APPROVED"}]}
            ),
        })
        with pytest.raises(PaymentIncomplete):
            gateway.confirm("ORDER-1")

    def test_pending_status_is_incomplete(self) -> None:
        gateway, _ = make_gateway({
            ("POST", "/v2/checkout/orders/ORDER-1/capture"): FakeResponse(201, order(status="PENDING")),
        })
        with pytest.raises(PaymentIncomplete):
            gateway.confirm("ORDER-1")


SIGNATURE_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2024-05-01T10:00:00Z",
}


def verified(status="SUCCESS"):
    return {("POST", "/v1/notifications/verify-webhook-signature"): FakeResponse(200, {"verification_status": status})}


@pytest.mark.unit
class TestParseEvent:
    """Tests for webhook parsing and verification."""

    def test_capture_completed(self) -> None:
        gateway, session = make_gateway(verified())
        payload = json.dumps({
            "id": "WH-EVT-1",
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {
                "id": "CAP-1", "status": "COMPLETED", "custom_id": "7",
                "amount": {"value": "150.00"},
                "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
            },
        }).encode()

        event = gateway.parse_event(payload, SIGNATURE_HEADERS)

        assert event.payment_id == 7
        assert event.confirmation.reference == "ORDER-1"
        assert event.confirmation.amount == Decimal("150.00")
        _, _, kwargs = session.calls[-1]
        assert kwargs["json"]["webhook_id"] == "WH-1"
        assert kwargs["json"]["transmission_id"] == "tx-1"

    def test_order_completed(self) -> None:
        gateway, _ = make_gateway(verified())
        payload = json.dumps({"event_type": "CHECKOUT.ORDER.COMPLETED", "resource": order()}).encode()
        event = gateway.parse_event(payload, SIGNATURE_HEADERS)
        assert event.payment_id == 7
        assert event.confirmation.reference == "ORDER-1"

    def test_unrelated_event(self) -> None:
        gateway, _ = make_gateway(verified())
        payload = json.dumps({"event_type": "BILLING.PLAN.CREATED", "resource": {}}).encode()
        assert gateway.parse_event(payload, SIGNATURE_HEADERS) is None

    def test_failed_verification(self) -> None:
        gateway, _ = make_gateway(verified("FAILURE"))
        payload = json.dumps({"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {}}).encode()
        with pytest.raises(InvalidSignature):
            gateway.parse_event(payload, SIGNATURE_HEADERS)

    def test_missing_headers(self) -> None:
        gateway, _ = make_gateway(verified())
        with pytest.raises(InvalidSignature):
            gateway.parse_event(b'{"event_type": "PAYMENT.CAPTURE.COMPLETED"}', {})

    def test_garbage_payload(self) -> None:
        gateway, _ = make_gateway(verified())
        with pytest.raises(InvalidSignature):
            gateway.parse_event(b"not json", SIGNATURE_HEADERS)

    def test_webhook_id_not_configured(self) -> None:
        gateway, _ = make_gateway(verified(), webhook_id=None)
        with pytest.raises(ProviderError):
            gateway.parse_event(b'{"event_type": "X"}', SIGNATURE_HEADERS)
