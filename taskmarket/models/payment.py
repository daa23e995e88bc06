import enum
from datetime import datetime
from ..extensions import db
from ..errors import UnsupportedPaymentMethod


class PaymentMethod(str, enum.Enum):
    CARD = "card"      # card-network processor (Stripe)
    WALLET = "wallet"  # wallet-style processor (PayPal)

    @classmethod
    def parse(cls, value) -> "PaymentMethod":
        if isinstance(value, cls):
            return value
        raw = (value or "").strip().lower()
        aliases = {"stripe": cls.CARD, "paypal": cls.WALLET}
        if raw in aliases:
            return aliases[raw]
        try:
            return cls(raw)
        except ValueError:
            raise UnsupportedPaymentMethod(f"Unsupported payment method: {value!r}", method=value) from None


class PaymentState(str, enum.Enum):
    CREATED = "CREATED"          # no provider reference yet
    INTENT_OPEN = "INTENT_OPEN"  # provider transaction pending
    PAID = "PAID"


class Payment(db.Model):
    __tablename__ = "payment"

    id = db.Column(db.Integer, primary_key=True)
    payer_id = db.Column(db.String(64), nullable=False, index=True)

    # fixed at creation from the invoices actually claimed; never recomputed
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    payment_method = db.Column(db.String(20), nullable=False)
    provider_reference = db.Column(db.String(128), index=True)
    payment_result = db.Column(db.JSON)

    is_paid = db.Column(db.Boolean, nullable=False, default=False, index=True)
    paid_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    invoices = db.relationship('Invoice', backref='payment', lazy='selectin', order_by='Invoice.id')

    @property
    def method(self) -> PaymentMethod:
        return PaymentMethod(self.payment_method)

    @property
    def state(self) -> PaymentState:
        if self.is_paid:
            return PaymentState.PAID
        if self.provider_reference:
            return PaymentState.INTENT_OPEN
        return PaymentState.CREATED
