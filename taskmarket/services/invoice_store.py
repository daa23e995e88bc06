# taskmarket/services/invoice_store.py
from __future__ import annotations
import logging
import secrets
import time
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import select

from ..extensions import db
from ..errors import InvoiceNotFound, ValidationFailed
from ..models.assignment import TaskAssignment
from ..models.invoice import Invoice, InvoiceItem
from ..utils import to_money

log = logging.getLogger(__name__)

ADDITIONAL_SUFFIX = " (Additional Invoice)"


def _quantity(raw) -> int:
    q = raw.get("quantity")
    return 1 if q is None else int(q)


def calc_total(items, tax_rate) -> dict:
    """Subtotal, tax and total (all Decimal, cents) for ``{price, quantity}`` items."""
    subtotal = to_money(sum(
        (Decimal(str(i["price"])) * _quantity(i) for i in items),
        Decimal("0"),
    ))
    tax = to_money(subtotal * Decimal(str(tax_rate)))
    return {"subtotal": subtotal, "tax": tax, "total": to_money(subtotal + tax)}


def _new_invoice_number() -> str:
    return f"INV-{int(time.time() * 1000)}-{secrets.token_hex(2).upper()}"


def _clean_items(items) -> list[dict]:
    if not items:
        raise ValidationFailed("An invoice needs at least one item")
    cleaned = []
    for pos, raw in enumerate(items):
        try:
            price = Decimal(str(raw["price"]))
            quantity = _quantity(raw)
        except (KeyError, TypeError, ValueError, InvalidOperation):
            raise ValidationFailed("Each item needs a numeric price and quantity", position=pos) from None
        if price < 0 or quantity < 1:
            raise ValidationFailed("Price must be >= 0 and quantity >= 1", position=pos)
        cleaned.append({
            "task_id": raw.get("task_id"),
            "name": (raw.get("name") or "Service").strip() or "Service",
            "price": to_money(price),
            "quantity": quantity,
        })
    return cleaned


# -----------------
# Reads
# -----------------

def get_invoice(invoice_id: int) -> Invoice:
    inv = db.session.get(Invoice, invoice_id)
    if inv is None:
        raise InvoiceNotFound(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
    return inv


def get_invoice_by_number(invoice_number: str) -> Invoice:
    inv = db.session.execute(
        select(Invoice).where(Invoice.invoice_number == invoice_number)
    ).scalar_one_or_none()
    if inv is None:
        raise InvoiceNotFound(f"Invoice {invoice_number} not found", invoice_number=invoice_number)
    return inv


def list_incoming(client_id: str) -> list[Invoice]:
    return list(db.session.execute(
        select(Invoice).where(Invoice.client_id == client_id).order_by(Invoice.created_at.desc(), Invoice.id.desc())
    ).scalars())


def list_outgoing(contractor_id: str) -> list[Invoice]:
    return list(db.session.execute(
        select(Invoice).where(Invoice.contractor_id == contractor_id).order_by(Invoice.created_at.desc(), Invoice.id.desc())
    ).scalars())


def assignment_ids_for_payment(payment_id: int) -> list[int]:
    rows = db.session.execute(
        select(InvoiceItem.assignment_id)
        .join(Invoice, Invoice.id == InvoiceItem.invoice_id)
        .where(Invoice.payment_id == payment_id, InvoiceItem.assignment_id.is_not(None))
        .distinct()
    ).scalars()
    return sorted(rows)


# -----------------
# Issue (contractor side)
# -----------------

def issue_invoice(*, contractor_id: str, client_id: str, items, tax_rate=None) -> Invoice:
    """Create an unbilled invoice from a contractor to a client.

    Items are linked to the matching task assignment when there is one. An
    assignment that already appears on an earlier invoice still gets billed,
    the item is just labelled as an additional invoice.
    """
    if not contractor_id or not client_id:
        raise ValidationFailed("contractor_id and client_id are required")
    cleaned = _clean_items(items)
    if tax_rate is None:
        tax_rate = current_app.config.get("INVOICE_TAX_RATE", "0.21")
    totals = calc_total(cleaned, tax_rate)

    inv = Invoice(
        invoice_number=_new_invoice_number(),
        contractor_id=contractor_id,
        client_id=client_id,
        total_price=totals["total"],
    )
    try:
        db.session.add(inv)
        db.session.flush()
        for pos, item in enumerate(cleaned):
            assignment_id = None
            name = item["name"]
            if item["task_id"] is not None:
                assignment_id = db.session.execute(
                    select(TaskAssignment.id).where(
                        TaskAssignment.task_id == item["task_id"],
                        TaskAssignment.client_id == client_id,
                        TaskAssignment.contractor_id == contractor_id,
                    )
                ).scalar_one_or_none()
            if assignment_id is not None:
                previous = db.session.execute(
                    select(Invoice.invoice_number)
                    .join(InvoiceItem, InvoiceItem.invoice_id == Invoice.id)
                    .where(InvoiceItem.assignment_id == assignment_id, InvoiceItem.invoice_id != inv.id)
                    .limit(1)
                ).scalar_one_or_none()
                if previous:
                    log.warning("Additional invoice for assignment %s (already on %s)", assignment_id, previous)
                    name = f"{name}{ADDITIONAL_SUFFIX}"
            inv.items.append(InvoiceItem(
                task_id=item["task_id"],
                assignment_id=assignment_id,
                position=pos,
                name=name,
                price=item["price"],
                quantity=item["quantity"],
            ))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    log.info("Invoice issued number=%s total=%s", inv.invoice_number, inv.total_price)
    return inv


def invoice_to_dict(inv: Invoice) -> dict:
    return {
        "id": inv.id,
        "invoice_number": inv.invoice_number,
        "contractor_id": inv.contractor_id,
        "client_id": inv.client_id,
        "total_price": str(inv.total_price),
        "payment_id": inv.payment_id,
        "is_paid": bool(inv.is_paid),
        "paid_at": inv.paid_at.isoformat() if inv.paid_at else None,
        "items": [
            {
                "task_id": it.task_id,
                "assignment_id": it.assignment_id,
                "name": it.name,
                "price": str(it.price),
                "quantity": it.quantity,
            }
            for it in inv.items
        ],
    }
