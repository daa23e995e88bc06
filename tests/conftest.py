"""Shared fixtures: an app on in-memory SQLite, fake gateways and row builders."""

from __future__ import annotations

import json
import uuid
from decimal import Decimal
from typing import Any, Mapping, Optional

import pytest
from flask import g

from taskmarket import create_app
from taskmarket.config import Config
from taskmarket.errors import AlreadyCaptured, InvalidSignature
from taskmarket.extensions import db
from taskmarket.models import Invoice, Task, TaskAssignment
from taskmarket.models.payment import PaymentMethod
from taskmarket.services.assignment_status import seed_statuses, status_by_name
from taskmarket.services.gateways import (
    IntentHandle, PaymentGateway, ProviderConfirmation, ProviderEvent,
)
from taskmarket.utils import to_money

CLIENT = "client-1"
OTHER_CLIENT = "client-2"
CONTRACTOR = "contractor-1"
OTHER_CONTRACTOR = "contractor-2"


class FakeGateway(PaymentGateway):
    """In-memory provider.

    ``captured`` maps reference -> amount the provider reports on confirm;
    a missing entry means the provider reports the payment's full intent amount.
    ``fail_next`` is raised (once) by the next create_intent/confirm call.
    Webhooks are JSON ``{"type", "payment_id", "reference", "amount"}`` and
    need the header ``X-Fake-Signature: ok``.
    """

    def __init__(self, method: PaymentMethod):
        self.method = method
        self.intents: dict[str, Decimal] = {}
        self.captured: dict[str, Decimal] = {}
        self.confirm_calls: list[str] = []
        self.fail_next: Optional[Exception] = None
        self.already_captured = False

    def _maybe_fail(self):
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc

    def create_intent(self, amount, metadata: Mapping[str, Any]) -> IntentHandle:
        self._maybe_fail()
        reference = f"{self.method.value}_{metadata['payment_id']}_{uuid.uuid4().hex[:8]}"
        self.intents[reference] = to_money(amount)
        return IntentHandle(reference=reference, client_handle=f"secret_{reference}")

    def _confirmation(self, reference: str, amount=None) -> ProviderConfirmation:
        if amount is None:
            amount = self.captured.get(reference, self.intents.get(reference, Decimal("0")))
        return ProviderConfirmation(
            provider=self.method,
            id=f"cap_{reference}",
            reference=reference,
            status="COMPLETED",
            amount=to_money(amount),
            payer_email="payer@example.com",
        )

    def confirm(self, reference: str) -> ProviderConfirmation:
        self.confirm_calls.append(reference)
        self._maybe_fail()
        if self.already_captured:
            raise AlreadyCaptured(self._confirmation(reference))
        return self._confirmation(reference)

    def parse_event(self, payload: bytes, headers: Mapping[str, str]) -> Optional[ProviderEvent]:
        lowered = {k.lower(): v for k, v in headers.items()}
        if lowered.get("x-fake-signature") != "ok":
            raise InvalidSignature("Invalid signature")
        event = json.loads(payload)
        if event.get("type") != "payment.completed":
            return None
        return ProviderEvent(
            provider=self.method,
            event_type=event["type"],
            payment_id=int(event["payment_id"]),
            confirmation=self._confirmation(event["reference"], event.get("amount")),
        )


def fake_event(payment_id, reference, amount, event_type="payment.completed") -> bytes:
    return json.dumps({
        "type": event_type,
        "payment_id": payment_id,
        "reference": reference,
        "amount": str(amount),
    }).encode()


@pytest.fixture()
def app(tmp_path):
    class TestConfig(Config):
        TESTING = True
        SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
        LOG_DIR = str(tmp_path / "logs")
        LOG_JSON = False
        SENTRY_DSN = ""
        ASSIGNMENT_STATUSES = ["PENDING", "IN_PROGRESS", "COMPLETED", "ACCEPTED"]
        ASSIGNMENT_STATUS_STRICT = False
        ASSIGNMENT_STATUS_COMPLETED = "COMPLETED"
        ASSIGNMENT_STATUS_ON_PAYMENT = "ACCEPTED"
        INVOICE_TAX_RATE = "0.21"
        STRIPE_SECRET_KEY = "sk_test_x"
        STRIPE_WEBHOOK_SECRET = "whsec_x"
        PAYPAL_WEBHOOK_ID = "WH-1"

    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        seed_statuses()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def gateways(app):
    fakes = {
        PaymentMethod.CARD: FakeGateway(PaymentMethod.CARD),
        PaymentMethod.WALLET: FakeGateway(PaymentMethod.WALLET),
    }
    app.extensions["gateway_factory"] = lambda config: fakes
    return fakes


@pytest.fixture()
def client(app, gateways):
    # requests reuse the fixture's app context, so g (and the cached
    # principal in it) would leak from one request into the next
    @app.before_request
    def _forget_principal():
        g.pop("_login_user", None)

    return app.test_client()


@pytest.fixture()
def make_invoice(app):
    """Insert an unbilled invoice with a fixed total (no tax maths)."""
    counter = {"n": 0}

    def _make(total, *, client_id=CLIENT, contractor_id=CONTRACTOR, payment_id=None):
        counter["n"] += 1
        inv = Invoice(
            invoice_number=f"INV-TEST-{counter['n']}",
            contractor_id=contractor_id,
            client_id=client_id,
            total_price=to_money(total),
            payment_id=payment_id,
        )
        db.session.add(inv)
        db.session.commit()
        return inv.id

    return _make


@pytest.fixture()
def make_assignment(app):
    def _make(*, client_id=CLIENT, contractor_id=CONTRACTOR, status="IN_PROGRESS", price="100.00"):
        task = Task(owner_id=client_id, name="Logo design", price=Decimal(price))
        db.session.add(task)
        db.session.flush()
        assignment = TaskAssignment(
            task_id=task.id,
            client_id=client_id,
            contractor_id=contractor_id,
            status_id=status_by_name(status).id,
        )
        db.session.add(assignment)
        db.session.commit()
        return task.id, assignment.id

    return _make


def auth(user_id=CLIENT) -> dict:
    return {"X-User-Id": user_id}
