# taskmarket/blueprints/assignments/routes.py
from flask import jsonify, request
from flask_login import login_required, current_user

from ...errors import ValidationFailed
from ...services import assignment_status
from . import assignments_bp


@assignments_bp.patch("/<int:assignment_id>/status")
@login_required
def update_status(assignment_id):
    data = request.get_json(silent=True) or request.form
    name = str(data.get("status") or "").strip()
    if not name:
        raise ValidationFailed("status is required")
    assignment = assignment_status.advance(assignment_id, name, actor_id=current_user.id)
    return jsonify(assignment_status.assignment_to_dict(assignment))


@assignments_bp.get("/statuses")
def statuses():
    return jsonify([
        {"name": s.name, "order": s.order, "color": s.color, "description": s.description}
        for s in assignment_status.list_statuses()
    ])
