from datetime import datetime
from ..extensions import db


class TaskAssignmentStatus(db.Model):
    __tablename__ = "task_assignment_status"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    description = db.Column(db.String(255))
    order = db.Column(db.Integer, nullable=False, default=1, index=True)
    color = db.Column(db.String(16), nullable=False, default="#808080")


class TaskAssignment(db.Model):
    __tablename__ = "task_assignment"
    __table_args__ = (
        db.UniqueConstraint("task_id", "contractor_id", name="uq_assignment_task_contractor"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=False, index=True)
    client_id = db.Column(db.String(64), nullable=False, index=True)
    contractor_id = db.Column(db.String(64), nullable=False, index=True)
    status_id = db.Column(db.Integer, db.ForeignKey('task_assignment_status.id'), nullable=False, index=True)

    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    task = db.relationship('Task', back_populates='assignments')
    status = db.relationship('TaskAssignmentStatus', lazy='joined')
