"""Booking and project models.

- Booking: one per paid service checkout. Carries the checkout session id
  both as a column and, for rows written before that column existed, as a
  `stripe_session:<id>` line in notes.
- Project: one per booking (unique booking_id), the unit of client work.
"""

import re
import uuid

from studiodesk.extensions import db

SESSION_TOKEN_PREFIX = "stripe_session:"
_SESSION_TOKEN_RE = re.compile(r"stripe_session:(\S+)")


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    service_id = db.Column(db.String(36), nullable=True)
    package_id = db.Column(db.String(36), nullable=True)
    full_name = db.Column(db.String(255))
    email = db.Column(db.String(255))
    phone = db.Column(db.String(50), default="")
    booking_date = db.Column(db.Date)
    booking_time = db.Column(db.String(20), default="TBD")
    status = db.Column(db.String(50), default="pending")
    project_status = db.Column(db.String(50), default="not_started")
    notes = db.Column(db.Text)
    stripe_session_id = db.Column(db.String(255), index=True, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    payments = db.relationship("Payment", back_populates="booking", lazy="dynamic")
    project = db.relationship("Project", back_populates="booking", uselist=False)

    def session_id_from_notes(self):
        """Return the checkout session id embedded in notes, or None."""
        if not self.notes:
            return None
        match = _SESSION_TOKEN_RE.search(self.notes)
        return match.group(1) if match else None

    def __repr__(self):
        return f"<Booking {self.id} ({self.status})>"


class Project(db.Model):
    __tablename__ = "projects"

    PAYMENT_MODELS = ["one_time", "subscription"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    client_id = db.Column(db.String(36), nullable=True)
    workspace_id = db.Column(db.String(36), nullable=True)
    service_id = db.Column(db.String(36), nullable=True)
    booking_id = db.Column(
        db.String(36), db.ForeignKey("bookings.id"), unique=True, nullable=True
    )
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(50), default="pending")
    progress = db.Column(db.Integer, default=0)
    start_date = db.Column(db.Date)
    payment_model = db.Column(db.String(20), default="one_time")
    client_notes = db.Column(db.Text, nullable=True)
    client_notes_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    booking = db.relationship("Booking", back_populates="project")
    subscription = db.relationship(
        "ProjectSubscription",
        back_populates="project",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def is_owned_by(self, user_id):
        """True if user_id matches any of the project's ownership fields."""
        return user_id is not None and user_id in (
            self.user_id, self.client_id, self.workspace_id
        )

    def __repr__(self):
        return f"<Project {self.name} ({self.status})>"
