# taskmarket/services/assignment_status.py
from __future__ import annotations
import logging
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import select, update

from ..extensions import db
from ..errors import AssignmentNotFound, InvalidStatusTransition, NotAllowed, StatusNotFound
from ..models.assignment import TaskAssignment, TaskAssignmentStatus

log = logging.getLogger(__name__)

DEFAULT_COLORS = {
    "PENDING": "#808080",
    "IN_PROGRESS": "#1E90FF",
    "COMPLETED": "#FFA500",
    "ACCEPTED": "#28A745",
}


def list_statuses() -> list[TaskAssignmentStatus]:
    return list(db.session.execute(
        select(TaskAssignmentStatus).order_by(TaskAssignmentStatus.order, TaskAssignmentStatus.id)
    ).scalars())


def status_by_name(name: str) -> TaskAssignmentStatus:
    key = (name or "").strip().upper()
    status = db.session.execute(
        select(TaskAssignmentStatus).where(TaskAssignmentStatus.name == key)
    ).scalar_one_or_none()
    if status is None:
        raise StatusNotFound(f"Unknown status {name!r}", status=name)
    return status


def seed_statuses(names=None) -> list[TaskAssignmentStatus]:
    """Create missing statuses and re-apply the configured order. Safe to re-run."""
    if names is None:
        names = current_app.config.get("ASSIGNMENT_STATUSES") or []
    existing = {s.name: s for s in list_statuses()}
    try:
        for order, raw in enumerate(names, start=1):
            name = raw.strip().upper()
            status = existing.get(name)
            if status is None:
                db.session.add(TaskAssignmentStatus(
                    name=name,
                    description=name.replace("_", " ").title(),
                    order=order,
                    color=DEFAULT_COLORS.get(name, "#808080"),
                ))
            elif status.order != order:
                status.order = order
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return list_statuses()


def get_assignment(assignment_id: int) -> TaskAssignment:
    assignment = db.session.get(TaskAssignment, assignment_id)
    if assignment is None:
        raise AssignmentNotFound(f"Assignment {assignment_id} not found", assignment_id=assignment_id)
    return assignment


def _completed_order() -> Optional[int]:
    name = current_app.config.get("ASSIGNMENT_STATUS_COMPLETED", "COMPLETED")
    try:
        return status_by_name(name).order
    except StatusNotFound:
        return None


def advance(assignment_id: int, new_status_name: str, actor_id: Optional[str] = None) -> TaskAssignment:
    """Move an assignment to ``new_status_name``.

    Backward moves are refused in strict mode and only logged otherwise,
    since re-opening a completed assignment is a legitimate flow.
    """
    assignment = get_assignment(assignment_id)
    if actor_id is not None and actor_id not in (assignment.contractor_id, assignment.client_id):
        raise NotAllowed("Only the contractor or the client can change this assignment",
                         assignment_id=assignment_id)

    target = status_by_name(new_status_name)
    current = assignment.status
    if current is not None and target.order < current.order:
        if current_app.config.get("ASSIGNMENT_STATUS_STRICT", False):
            raise InvalidStatusTransition(
                f"Cannot move from {current.name} back to {target.name}",
                assignment_id=assignment_id, current=current.name, target=target.name,
            )
        log.warning("Assignment %s moved back %s -> %s", assignment_id, current.name, target.name)

    if current is not None and current.id == target.id:
        return assignment

    try:
        assignment.status_id = target.id
        assignment.status = target
        completed = _completed_order()
        if completed is not None and target.order >= completed:
            if assignment.completed_at is None:
                assignment.completed_at = datetime.utcnow()
        else:
            assignment.completed_at = None
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    log.info("Assignment %s status -> %s", assignment_id, target.name)
    return assignment


def on_invoice_paid(assignment_id: int) -> bool:
    """Forward-only move to the on-payment status. True if the status changed.

    The update is guarded on the current status being lower in the order,
    so repeated calls (duplicate webhooks) are no-ops.
    """
    name = current_app.config.get("ASSIGNMENT_STATUS_ON_PAYMENT", "ACCEPTED")
    target = status_by_name(name)
    lower = select(TaskAssignmentStatus.id).where(TaskAssignmentStatus.order < target.order)
    values = {"status_id": target.id, "updated_at": datetime.utcnow()}

    completed = _completed_order()
    try:
        result = db.session.execute(
            update(TaskAssignment)
            .where(TaskAssignment.id == assignment_id, TaskAssignment.status_id.in_(lower))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount and completed is not None and target.order >= completed:
            db.session.execute(
                update(TaskAssignment)
                .where(TaskAssignment.id == assignment_id, TaskAssignment.completed_at.is_(None))
                .values(completed_at=values["updated_at"])
                .execution_options(synchronize_session=False)
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    db.session.expire_all()
    if result.rowcount:
        log.info("Assignment %s advanced to %s after payment", assignment_id, target.name)
        return True
    return False


def assignment_to_dict(assignment: TaskAssignment) -> dict:
    status = assignment.status
    return {
        "id": assignment.id,
        "task_id": assignment.task_id,
        "client_id": assignment.client_id,
        "contractor_id": assignment.contractor_id,
        "status": status.name if status else None,
        "status_color": status.color if status else None,
        "completed_at": assignment.completed_at.isoformat() if assignment.completed_at else None,
    }
