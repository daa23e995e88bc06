from datetime import datetime
from ..extensions import db


class Invoice(db.Model):
    __tablename__ = "invoice"

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(64), unique=True, nullable=False, index=True)
    contractor_id = db.Column(db.String(64), nullable=False, index=True)
    client_id = db.Column(db.String(64), nullable=False, index=True)
    total_price = db.Column(db.Numeric(12, 2), nullable=False)

    # NULL = unbilled. Set once, by a conditional claim (see services.payment_ledger)
    payment_id = db.Column(db.Integer, db.ForeignKey('payment.id'), index=True)
    is_paid = db.Column(db.Boolean, nullable=False, default=False)
    paid_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    items = db.relationship(
        'InvoiceItem',
        backref='invoice',
        lazy='selectin',
        order_by='InvoiceItem.position',
        cascade='all, delete-orphan',
    )


class InvoiceItem(db.Model):
    __tablename__ = "invoice_item"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey('invoice.id'), nullable=False, index=True)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id'), index=True)
    assignment_id = db.Column(db.Integer, db.ForeignKey('task_assignment.id'), index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    name = db.Column(db.String(200), nullable=False, default="Service")
    price = db.Column(db.Numeric(12, 2), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
