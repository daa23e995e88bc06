# taskmarket/services/reconciliation.py
"""Checkout and confirmation orchestration.

Checkout:      cart snapshot -> claim (ledger) -> provider intent -> reference
Confirmation:  redirect callback or webhook -> reference check -> mark_paid
               -> assignment hook

Both confirmation paths end in ``_finalize`` so whichever arrives first
performs the transition and the other one is reported as a no-op.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from flask import current_app

from ..extensions import db
from ..errors import (
    AlreadyCaptured, AlreadyPaid, AmountMismatch, NoBillableInvoices, NotAllowed,
    ProviderError, ReferenceMismatch, ValidationFailed,
)
from ..models.payment import Payment, PaymentMethod
from . import assignment_status, cart_service, invoice_store, payment_ledger
from .gateways import PaymentGateway, ProviderConfirmation, build_gateways
from ..utils import to_money

log = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    payment_id: int
    amount: Decimal
    provider_handle: str
    reference: str
    dropped_invoice_ids: list[int] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "payment_id": self.payment_id,
            "amount": str(self.amount),
            "provider_handle": self.provider_handle,
            "reference": self.reference,
            "dropped_invoice_ids": self.dropped_invoice_ids,
            **self.extra,
        }


@dataclass
class ConfirmationOutcome:
    status: str                  # "paid" | "ignored"
    payment_id: Optional[int] = None
    transitioned: bool = False   # False for duplicates and ignored events
    advanced_assignments: list[int] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status in ("paid", "ignored")

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status,
            "payment_id": self.payment_id,
            "transitioned": self.transitioned,
            "advanced_assignments": self.advanced_assignments,
        }


class ReconciliationEngine:
    def __init__(self, gateways: Mapping[PaymentMethod, PaymentGateway]):
        self._gateways = dict(gateways)

    @classmethod
    def from_app(cls, app=None) -> "ReconciliationEngine":
        """Fresh gateways for this request, built by the app's gateway factory."""
        app = app or current_app
        factory = app.extensions.get("gateway_factory", build_gateways)
        return cls(factory(app.config))

    def gateway(self, method) -> PaymentGateway:
        method = PaymentMethod.parse(method)
        gw = self._gateways.get(method)
        if gw is None:
            raise ValidationFailed(f"No gateway configured for {method.value}", method=method.value)
        return gw

    # -----------------
    # Checkout
    # -----------------

    def checkout(self, client_id: str, invoice_ids=None, method="card") -> CheckoutResult:
        gateway = self.gateway(method)
        if invoice_ids is None:
            invoice_ids = cart_service.snapshot_ids(client_id)
            if not invoice_ids:
                raise NoBillableInvoices("Cart is empty")

        claim = payment_ledger.create_payment(client_id, invoice_ids, gateway.method)
        cart_service.discard_invoices(client_id, claim.claimed_ids)

        # the invoices stay claimed by this payment even if the provider fails
        handle = self._open_intent(gateway, claim.payment)
        return CheckoutResult(
            payment_id=claim.payment.id,
            amount=to_money(claim.payment.amount),
            provider_handle=handle.client_handle,
            reference=handle.reference,
            dropped_invoice_ids=claim.dropped_ids,
            extra=handle.extra,
        )

    def open_intent(self, client_id: str, payment_id: int) -> CheckoutResult:
        """Retry: new provider intent for the same unpaid payment."""
        payment = self._owned_payment(payment_id, client_id)
        if payment.is_paid:
            raise AlreadyPaid(f"Payment {payment.id} is already paid", payment_id=payment.id)
        handle = self._open_intent(self.gateway(payment.method), payment)
        return CheckoutResult(
            payment_id=payment.id,
            amount=to_money(payment.amount),
            provider_handle=handle.client_handle,
            reference=handle.reference,
            extra=handle.extra,
        )

    def _open_intent(self, gateway: PaymentGateway, payment: Payment):
        payment_id = payment.id
        amount = to_money(payment.amount)
        try:
            handle = gateway.create_intent(amount, {"payment_id": payment_id, "payer_id": payment.payer_id})
        except ProviderError as e:
            log.warning("Intent failed payment_id=%s method=%s: %s", payment_id, gateway.method.value, e.message)
            e.details.setdefault("payment_id", payment_id)
            raise
        payment_ledger.attach_reference(payment_id, handle.reference)
        log.info("Intent open payment_id=%s reference=%s", payment_id, handle.reference)
        return handle

    # -----------------
    # Confirmation (pull)
    # -----------------

    def confirm_payment(self, payment_id: int, provider_transaction_id: str,
                        amount=None, client_id: Optional[str] = None) -> ConfirmationOutcome:
        if not provider_transaction_id:
            raise ValidationFailed("provider_transaction_id is required")
        payment = self._owned_payment(payment_id, client_id)

        if payment.provider_reference != provider_transaction_id:
            log.warning("Reference mismatch payment_id=%s", payment_id)
            raise ReferenceMismatch(
                "Transaction does not belong to this payment", payment_id=payment_id,
            )
        if amount is not None:
            try:
                reported = to_money(amount)
            except (InvalidOperation, ValueError):
                raise ValidationFailed("amount must be numeric", amount=amount) from None
            if reported != to_money(payment.amount):
                raise AmountMismatch(
                    "Reported amount does not match the payment",
                    payment_id=payment_id, expected=str(payment.amount), reported=str(reported),
                )
        if payment.is_paid:
            log.info("Confirm on paid payment_id=%s, duplicate", payment_id)
            return ConfirmationOutcome(status="paid", payment_id=payment_id)

        gateway = self.gateway(payment.method)
        try:
            confirmation = gateway.confirm(provider_transaction_id)
        except AlreadyCaptured as e:
            log.info("Already captured payment_id=%s, finalising", payment_id)
            confirmation = e.confirmation
        return self._finalize(payment, confirmation)

    # -----------------
    # Confirmation (push)
    # -----------------

    def handle_provider_event(self, method, raw_payload: bytes,
                              headers: Mapping[str, str]) -> ConfirmationOutcome:
        gateway = self.gateway(method)
        event = gateway.parse_event(raw_payload, headers)
        if event is None:
            return ConfirmationOutcome(status="ignored")

        payment = payment_ledger.get_payment(event.payment_id)
        if payment.method != gateway.method:
            raise ReferenceMismatch("Event provider does not match the payment", payment_id=payment.id)
        return self._finalize(payment, event.confirmation)

    # -----------------
    # Shared
    # -----------------

    def _finalize(self, payment: Payment, confirmation: ProviderConfirmation) -> ConfirmationOutcome:
        payment_id = payment.id
        # a missing provider reference is a mismatch too
        if not confirmation.reference or payment.provider_reference != confirmation.reference:
            log.warning("Confirmation reference mismatch payment_id=%s", payment_id)
            raise ReferenceMismatch(
                "Provider transaction does not belong to this payment", payment_id=payment_id,
            )
        transitioned = payment_ledger.mark_paid(payment_id, confirmation)
        if not transitioned:
            log.info("Duplicate confirmation payment_id=%s", payment_id)

        # mark_paid has committed; a failed hook is picked up by the next confirmation
        advanced = []
        try:
            for aid in invoice_store.assignment_ids_for_payment(payment_id):
                if assignment_status.on_invoice_paid(aid):
                    advanced.append(aid)
        except Exception:
            db.session.rollback()
            log.exception("Assignment hook failed payment_id=%s", payment_id)
        return ConfirmationOutcome(
            status="paid", payment_id=payment_id,
            transitioned=transitioned, advanced_assignments=advanced,
        )

    def _owned_payment(self, payment_id: int, client_id: Optional[str]) -> Payment:
        payment = payment_ledger.get_payment(payment_id)
        if client_id is not None and payment.payer_id != client_id:
            raise NotAllowed("Payment belongs to another client", payment_id=payment_id)
        return payment
