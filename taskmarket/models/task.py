# taskmarket/models/task.py
from datetime import datetime
from ..extensions import db

class Task(db.Model):
    __tablename__ = 'task'

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.String(64), nullable=False, index=True)  # client
    name = db.Column(db.String(200), nullable=False, index=True)
    description = db.Column(db.Text)
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    # soft delete once assignments exist
    archived = db.Column(db.Boolean, nullable=False, default=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    assignments = db.relationship(
        'TaskAssignment',
        back_populates='task',
        lazy='selectin',
    )
