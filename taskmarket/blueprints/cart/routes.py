# taskmarket/blueprints/cart/routes.py
from flask import jsonify, request
from flask_login import login_required, current_user

from ...errors import ValidationFailed
from ...services import cart_service
from . import cart_bp


def _invoice_id_from_request() -> int:
    data = request.get_json(silent=True) or request.form
    raw = data.get("invoice_id")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationFailed("invoice_id must be an integer", invoice_id=raw) from None


@cart_bp.get("")
@login_required
def cart_view():
    return jsonify(cart_service.get_cart(current_user.id).to_dict())


@cart_bp.post("/add")
@login_required
def cart_add():
    view = cart_service.add_invoice(current_user.id, _invoice_id_from_request())
    return jsonify(view.to_dict())


@cart_bp.post("/remove")
@login_required
def cart_remove():
    view = cart_service.remove_invoice(current_user.id, _invoice_id_from_request())
    return jsonify(view.to_dict())
