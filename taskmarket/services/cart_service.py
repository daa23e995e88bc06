# taskmarket/services/cart_service.py
"""Per-client cart of invoices waiting for checkout.

The cart is only a staging view. Whether an invoice can be billed is
decided by ``invoice.payment_id`` at claim time, so anything billed
elsewhere simply drops out of ``get_cart``.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import AlreadyBilled, InvoiceNotFound
from ..models.cart import Cart, CartItem
from ..models.invoice import Invoice
from ..utils import to_money

log = logging.getLogger(__name__)


@dataclass
class CartLine:
    invoice_id: int
    invoice_number: str
    contractor_id: str
    total_price: Decimal

    def to_dict(self) -> dict:
        return {
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "contractor_id": self.contractor_id,
            "total_price": str(self.total_price),
        }


@dataclass
class CartView:
    owner_id: str
    lines: list[CartLine]

    @property
    def invoice_ids(self) -> list[int]:
        return [line.invoice_id for line in self.lines]

    @property
    def total(self) -> Decimal:
        return to_money(sum((line.total_price for line in self.lines), Decimal("0")))

    def to_dict(self) -> dict:
        return {
            "owner_id": self.owner_id,
            "items": [line.to_dict() for line in self.lines],
            "count": len(self.lines),
            "total": str(self.total),
        }


def _find_cart(client_id: str):
    return db.session.execute(select(Cart).where(Cart.owner_id == client_id)).scalar_one_or_none()


def _get_or_create_cart(client_id: str) -> Cart:
    cart = _find_cart(client_id)
    if cart is not None:
        return cart
    cart = Cart(owner_id=client_id)
    db.session.add(cart)
    try:
        db.session.commit()
    except IntegrityError:
        # another request created it first
        db.session.rollback()
        cart = _find_cart(client_id)
    return cart


def add_invoice(client_id: str, invoice_id: int) -> CartView:
    inv = db.session.get(Invoice, invoice_id)
    if inv is None or inv.client_id != client_id:
        raise InvoiceNotFound(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
    if inv.payment_id is not None:
        raise AlreadyBilled(
            f"Invoice {inv.invoice_number} is already billed",
            invoice_id=inv.id, payment_id=inv.payment_id,
        )

    cart = _get_or_create_cart(client_id)
    already = db.session.execute(
        select(CartItem.id).where(CartItem.cart_id == cart.id, CartItem.invoice_id == inv.id)
    ).scalar_one_or_none()
    if already is None:
        db.session.add(CartItem(cart_id=cart.id, invoice_id=inv.id))
        try:
            db.session.commit()
        except IntegrityError:
            # double click: the unique (cart, invoice) row already exists
            db.session.rollback()
        else:
            log.info("Cart add owner=%s invoice_id=%s", client_id, inv.id)
    return get_cart(client_id)


def remove_invoice(client_id: str, invoice_id: int) -> CartView:
    cart = _find_cart(client_id)
    if cart is not None:
        try:
            db.session.execute(
                delete(CartItem)
                .where(CartItem.cart_id == cart.id, CartItem.invoice_id == invoice_id)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        db.session.expire_all()
    return get_cart(client_id)


def get_cart(client_id: str) -> CartView:
    rows = db.session.execute(
        select(Invoice.id, Invoice.invoice_number, Invoice.contractor_id, Invoice.total_price)
        .join(CartItem, CartItem.invoice_id == Invoice.id)
        .join(Cart, Cart.id == CartItem.cart_id)
        .where(
            Cart.owner_id == client_id,
            Invoice.client_id == client_id,
            Invoice.payment_id.is_(None),
        )
        .order_by(CartItem.id)
    ).all()
    lines = [
        CartLine(
            invoice_id=r.id,
            invoice_number=r.invoice_number,
            contractor_id=r.contractor_id,
            total_price=to_money(r.total_price),
        )
        for r in rows
    ]
    return CartView(owner_id=client_id, lines=lines)


def snapshot_ids(client_id: str) -> list[int]:
    """Invoice ids currently billable from the client's cart."""
    return get_cart(client_id).invoice_ids


def discard_invoices(client_id: str, invoice_ids: Iterable[int]) -> int:
    """Drop the given invoices from the client's cart after they were claimed."""
    ids = list(invoice_ids)
    cart = _find_cart(client_id)
    if cart is None or not ids:
        return 0
    try:
        result = db.session.execute(
            delete(CartItem)
            .where(CartItem.cart_id == cart.id, CartItem.invoice_id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    db.session.expire_all()
    return result.rowcount
