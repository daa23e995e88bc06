# taskmarket/blueprints/payments/routes.py
from flask import current_app, jsonify, request
from flask_login import login_required, current_user

from ...errors import NotAllowed, ValidationFailed
from ...services import payment_ledger
from ...services.reconciliation import ReconciliationEngine
from . import payments_bp


# -----------------
# Helpers
# -----------------

def _payload() -> dict:
    return request.get_json(silent=True) or request.form.to_dict()


def _invoice_ids(data):
    """``None`` means: check out whatever is in the cart."""
    raw = data.get("invoice_ids")
    if raw is None:
        return None
    if not isinstance(raw, (list, tuple)):
        raise ValidationFailed("invoice_ids must be a list", invoice_ids=raw)
    return raw


def _can_see(payment) -> bool:
    uid = current_user.id
    if payment.payer_id == uid:
        return True
    return any(inv.contractor_id == uid for inv in payment.invoices)


# -----------------
# Checkout
# -----------------

@payments_bp.post("/checkout")
@login_required
def checkout():
    data = _payload()
    method = data.get("payment_method") or data.get("method")
    if not method:
        raise ValidationFailed("payment_method is required")
    engine = ReconciliationEngine.from_app()
    result = engine.checkout(current_user.id, _invoice_ids(data), method)
    return jsonify(result.to_dict()), 201


@payments_bp.post("/<int:payment_id>/intent")
@login_required
def retry_intent(payment_id):
    result = ReconciliationEngine.from_app().open_intent(current_user.id, payment_id)
    return jsonify(result.to_dict())


# -----------------
# Redirect confirmation (pull)
# -----------------

@payments_bp.post("/<int:payment_id>/confirm")
@login_required
def confirm(payment_id):
    data = _payload()
    outcome = ReconciliationEngine.from_app().confirm_payment(
        payment_id,
        data.get("provider_transaction_id") or data.get("transaction_id"),
        amount=data.get("amount"),
        client_id=current_user.id,
    )
    return jsonify(outcome.to_dict())


# -----------------
# Reads
# -----------------

@payments_bp.get("/<int:payment_id>")
@login_required
def payment_detail(payment_id):
    payment = payment_ledger.get_payment(payment_id)
    if not _can_see(payment):
        raise NotAllowed("Not your payment", payment_id=payment_id)
    return jsonify(payment_ledger.payment_to_dict(payment))


@payments_bp.get("")
@login_required
def payment_list():
    page = request.args.get("page", 1, type=int)
    limit = request.args.get("limit", current_app.config.get("PAGE_SIZE", 10), type=int)
    result = payment_ledger.list_payments(
        page=page, limit=limit, query=request.args.get("query"), payer_id=current_user.id,
    )
    return jsonify({
        "data": [payment_ledger.payment_to_dict(p, with_invoices=False) for p in result["data"]],
        "total_pages": result["total_pages"],
        "page": page,
    })


@payments_bp.get("/summary")
@login_required
def payment_summary():
    """Spending as a client and earnings as a contractor, per month."""
    uid = current_user.id
    return jsonify({
        "client": payment_ledger.client_summary(uid).to_dict(),
        "contractor": payment_ledger.contractor_summary(uid).to_dict(),
    })
