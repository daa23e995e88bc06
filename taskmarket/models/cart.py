from datetime import datetime
from ..extensions import db


class Cart(db.Model):
    """Per-client staging area for checkout. A view, not a billing record."""
    __tablename__ = "cart"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    items = db.relationship(
        'CartItem',
        backref='cart',
        lazy='selectin',
        order_by='CartItem.id',
        cascade='all, delete-orphan',
    )


class CartItem(db.Model):
    __tablename__ = "cart_item"
    __table_args__ = (
        db.UniqueConstraint("cart_id", "invoice_id", name="uq_cart_item_invoice"),
    )

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey('cart.id'), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey('invoice.id'), nullable=False, index=True)
    added_at = db.Column(db.DateTime, default=datetime.utcnow)

    invoice = db.relationship('Invoice', lazy='joined')
