"""In-app notification model.

One row per (recipient, event). Created by the notification service;
`read` starts False and is flipped by the client that displays it.
"""

import uuid

from studiodesk.extensions import db


class Notification(db.Model):
    __tablename__ = "notifications"

    PRIORITIES = ["low", "normal", "high"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False, index=True
    )
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    event_type = db.Column(db.String(64), nullable=False)
    priority = db.Column(db.String(20), default="normal")
    link = db.Column(db.String(500), nullable=True)
    role = db.Column(db.String(20), default="client")  # admin | client
    actor_id = db.Column(db.String(36), nullable=True)
    entity_type = db.Column(db.String(50), nullable=True)
    entity_id = db.Column(db.String(36), nullable=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # named metadata_ to avoid clashing with SQLAlchemy's Model.metadata
    read = db.Column(db.Boolean, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.Index(
            "ix_notifications_dedup", "user_id", "event_type", "entity_id", "created_at"
        ),
    )

    def __repr__(self):
        return f"<Notification {self.event_type} -> {self.user_id}>"
