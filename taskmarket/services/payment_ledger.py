# taskmarket/services/payment_ledger.py
"""Payment records and their link to invoices.

Two writes here carry the billing guarantees and both are conditional
``UPDATE ... WHERE`` statements whose row counts are checked:

* the claim, ``invoice.payment_id = :pid WHERE payment_id IS NULL``, so two
  concurrent checkouts can never bill the same invoice;
* the paid flip, ``payment.is_paid = true WHERE is_paid = false``, so the
  redirect callback and the webhook can both arrive and only one of them
  performs the transition. The invoice cascade runs in the same
  transaction.
"""
from __future__ import annotations
import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select, update, cast, String

from ..extensions import db
from ..errors import (
    AlreadyPaid, AmountMismatch, NoBillableInvoices, PaymentNotFound, ValidationFailed,
)
from ..models.invoice import Invoice
from ..models.payment import Payment, PaymentMethod
from ..utils import iso, to_money

log = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass
class PaymentClaim:
    payment: Payment
    claimed_ids: list[int]
    dropped_ids: list[int] = field(default_factory=list)


@dataclass
class MonthlyTotal:
    month: str  # YYYY-MM
    total: Decimal
    count: int

    def to_dict(self) -> dict:
        return {"month": self.month, "total": str(self.total), "count": self.count}


@dataclass
class PaymentTotals:
    total_amount: Decimal
    count: int
    monthly: list[MonthlyTotal]

    def to_dict(self) -> dict:
        return {
            "total_amount": str(self.total_amount),
            "count": self.count,
            "monthly": [m.to_dict() for m in self.monthly],
        }


def _normalize_ids(invoice_ids: Iterable) -> list[int]:
    try:
        ids = sorted({int(i) for i in (invoice_ids or [])})
    except (TypeError, ValueError):
        raise ValidationFailed("Invoice ids must be integers") from None
    if not ids:
        raise ValidationFailed("At least one invoice id is required")
    return ids


# -----------------
# Create / claim
# -----------------

def create_payment(client_id: str, invoice_ids, payment_method) -> PaymentClaim:
    """Create a Payment over the client's still-unbilled invoices among ``invoice_ids``.

    Invoices that are already billed (or not the client's) are dropped rather
    than failing the whole checkout. If nothing is left, ``NoBillableInvoices``.
    """
    method = PaymentMethod.parse(payment_method)
    requested = _normalize_ids(invoice_ids)
    session = db.session

    try:
        billable = session.execute(
            select(Invoice.id, Invoice.total_price).where(
                Invoice.id.in_(requested),
                Invoice.client_id == client_id,
                Invoice.payment_id.is_(None),
            )
        ).all()
        if not billable:
            raise NoBillableInvoices("Nothing left to bill", invoice_ids=requested)

        billable_ids = [row.id for row in billable]
        payment = Payment(
            payer_id=client_id,
            amount=to_money(sum((row.total_price for row in billable), ZERO)),
            payment_method=method.value,
        )
        session.add(payment)
        session.flush()

        result = session.execute(
            update(Invoice)
            .where(
                Invoice.id.in_(billable_ids),
                Invoice.client_id == client_id,
                Invoice.payment_id.is_(None),
            )
            .values(payment_id=payment.id)
            .execution_options(synchronize_session=False)
        )

        claimed = session.execute(
            select(Invoice.id, Invoice.total_price).where(Invoice.payment_id == payment.id)
        ).all()
        if not claimed:
            raise NoBillableInvoices("Nothing left to bill", invoice_ids=requested)

        if result.rowcount != len(billable_ids):
            log.warning(
                "Claim race lost payment_id=%s requested=%s claimed=%s",
                payment.id, len(billable_ids), len(claimed),
            )
        # amount always follows the rows this payment actually owns
        payment.amount = to_money(sum((row.total_price for row in claimed), ZERO))
        session.commit()
    except Exception:
        session.rollback()
        raise

    claimed_ids = sorted(row.id for row in claimed)
    dropped = [i for i in requested if i not in set(claimed_ids)]
    log.info(
        "Payment created id=%s method=%s amount=%s invoices=%s dropped=%s",
        payment.id, method.value, payment.amount, claimed_ids, dropped,
    )
    return PaymentClaim(payment=payment, claimed_ids=claimed_ids, dropped_ids=dropped)


def attach_reference(payment_id: int, reference: str) -> Payment:
    """Store (or overwrite, on retry) the provider reference of an unpaid payment."""
    session = db.session
    try:
        result = session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.is_paid.is_(False))
            .values(provider_reference=reference, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            payment = get_payment(payment_id)
            raise AlreadyPaid(f"Payment {payment.id} is already paid", payment_id=payment.id)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return get_payment(payment_id)


# -----------------
# Mark paid
# -----------------

def mark_paid(payment_id: int, confirmation) -> bool:
    """Flip the payment and all of its invoices to paid, at most once.

    Returns True when this call performed the transition, False when the
    payment was already paid (duplicate webhook / second callback). Safe to
    re-run after any failure: nothing is committed unless both the payment
    and the invoice cascade are written.
    """
    session = db.session
    payment = session.get(Payment, payment_id)
    if payment is None:
        raise PaymentNotFound(f"Payment {payment_id} not found", payment_id=payment_id)
    if payment.is_paid:
        log.info("Payment %s already paid, confirmation ignored", payment_id)
        return False

    if confirmation is not None and to_money(confirmation.amount) != to_money(payment.amount):
        log.error(
            "Amount mismatch payment_id=%s expected=%s captured=%s",
            payment_id, payment.amount, confirmation.amount,
        )
        raise AmountMismatch(
            "Captured amount does not match the payment",
            payment_id=payment_id,
            expected=str(payment.amount),
            captured=str(confirmation.amount),
        )

    now = datetime.utcnow()
    try:
        flipped = session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.is_paid.is_(False))
            .values(
                is_paid=True,
                paid_at=now,
                updated_at=now,
                payment_result=confirmation.to_dict() if confirmation is not None else None,
            )
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount == 0:
            session.rollback()
            log.info("Payment %s finalised concurrently, nothing to do", payment_id)
            return False
        cascade = session.execute(
            update(Invoice)
            .where(Invoice.payment_id == payment_id, Invoice.is_paid.is_(False))
            .values(is_paid=True, paid_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.expire_all()
    log.info("Payment %s marked paid (%s invoices)", payment_id, cascade.rowcount)
    return True


# -----------------
# Reads
# -----------------

def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise PaymentNotFound(f"Payment {payment_id} not found", payment_id=payment_id)
    return payment


def state_of(payment: Payment):
    return payment.state


def find_by_reference(reference: str) -> Optional[Payment]:
    return db.session.execute(
        select(Payment).where(Payment.provider_reference == reference)
    ).scalar_one_or_none()


def get_payments_for_client(client_id: str) -> list[Payment]:
    return list(db.session.execute(
        select(Payment).where(Payment.payer_id == client_id).order_by(Payment.created_at.desc(), Payment.id.desc())
    ).scalars())


def get_payments_for_contractor(contractor_id: str) -> list[Payment]:
    """Payments that cover at least one invoice issued by the contractor."""
    covered = select(Invoice.payment_id).where(
        Invoice.contractor_id == contractor_id, Invoice.payment_id.is_not(None)
    )
    return list(db.session.execute(
        select(Payment).where(Payment.id.in_(covered)).order_by(Payment.created_at.desc(), Payment.id.desc())
    ).scalars())


def list_payments(*, page: int = 1, limit: int = 10, query: Optional[str] = None,
                  payer_id: Optional[str] = None) -> dict:
    page = max(int(page or 1), 1)
    limit = max(int(limit or 10), 1)
    stmt = select(Payment)
    count_stmt = select(func.count(Payment.id))
    if payer_id is not None:
        stmt = stmt.where(Payment.payer_id == payer_id)
        count_stmt = count_stmt.where(Payment.payer_id == payer_id)
    if query and query != "all":
        like = f"%{query}%"
        stmt = stmt.where(cast(Payment.id, String).like(like))
        count_stmt = count_stmt.where(cast(Payment.id, String).like(like))
    rows = db.session.execute(
        stmt.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).offset((page - 1) * limit)
    ).scalars().all()
    total = db.session.execute(count_stmt).scalar_one()
    return {"data": rows, "total_pages": math.ceil(total / limit) if total else 0}


# -----------------
# Reporting (derived, never stored)
# -----------------

def monthly_totals(entries: Iterable[tuple[datetime, Decimal]]) -> list[MonthlyTotal]:
    buckets: "OrderedDict[str, list]" = OrderedDict()
    for when, amount in sorted(entries, key=lambda e: e[0]):
        key = when.strftime("%Y-%m")
        bucket = buckets.setdefault(key, [ZERO, 0])
        bucket[0] += to_money(amount)
        bucket[1] += 1
    return [MonthlyTotal(month=k, total=to_money(v[0]), count=v[1]) for k, v in buckets.items()]


def _totals(entries: list[tuple[datetime, Decimal]]) -> PaymentTotals:
    return PaymentTotals(
        total_amount=to_money(sum((amount for _, amount in entries), ZERO)),
        count=len(entries),
        monthly=monthly_totals(entries),
    )


def client_summary(client_id: str) -> PaymentTotals:
    return _totals([(p.created_at, p.amount) for p in get_payments_for_client(client_id)])


def contractor_summary(contractor_id: str) -> PaymentTotals:
    """Only the contractor's own invoices count toward each payment."""
    rows = db.session.execute(
        select(Payment.id, Payment.created_at, func.sum(Invoice.total_price))
        .join(Invoice, Invoice.payment_id == Payment.id)
        .where(Invoice.contractor_id == contractor_id)
        .group_by(Payment.id, Payment.created_at)
    ).all()
    return _totals([(created, Decimal(str(total))) for _, created, total in rows])


def payment_summary(latest: int = 6) -> dict:
    """Admin overview: overall totals, per-month sales and the latest payments."""
    entries = [
        (created, amount)
        for created, amount in db.session.execute(select(Payment.created_at, Payment.amount)).all()
    ]
    totals = _totals(entries)
    recent = db.session.execute(
        select(Payment).order_by(Payment.created_at.desc(), Payment.id.desc()).limit(latest)
    ).scalars().all()
    return {
        "payments_count": totals.count,
        "total_sales": str(totals.total_amount),
        "sales_data": [m.to_dict() for m in totals.monthly],
        "latest": [payment_to_dict(p, with_invoices=False) for p in recent],
    }


def payment_to_dict(payment: Payment, *, with_invoices: bool = True) -> dict:
    data = {
        "id": payment.id,
        "payer_id": payment.payer_id,
        "amount": str(payment.amount),
        "payment_method": payment.payment_method,
        "state": payment.state.value,
        "provider_reference": payment.provider_reference,
        "payment_result": payment.payment_result,
        "is_paid": bool(payment.is_paid),
        "paid_at": iso(payment.paid_at),
        "created_at": iso(payment.created_at),
    }
    if with_invoices:
        data["invoices"] = [
            {
                "id": inv.id,
                "invoice_number": inv.invoice_number,
                "total_price": str(inv.total_price),
                "is_paid": bool(inv.is_paid),
            }
            for inv in payment.invoices
        ]
    return data
