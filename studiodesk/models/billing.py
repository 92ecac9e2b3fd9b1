"""Billing models.

- BillingCustomer: links a workspace to a Stripe customer ID.
- Subscription: user-level subscription mirror (one row per user).
- ProjectSubscription: project-level subscription mirror (one row per
  project). project_subscriptions is the source of truth for what the
  client portal shows and what cancellation acts on.
- Payment: one row per paid checkout session or renewal invoice.
"""

import uuid

from studiodesk.extensions import db


class BillingCustomer(db.Model):
    __tablename__ = "billing_customers"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    workspace_id = db.Column(db.String(36), unique=True, nullable=False)
    stripe_customer_id = db.Column(
        db.String(255), unique=True, nullable=False
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<BillingCustomer stripe={self.stripe_customer_id}>"


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), unique=True, nullable=False
    )
    stripe_subscription_id = db.Column(db.String(255), index=True)
    stripe_customer_id = db.Column(db.String(255))
    price_id = db.Column(db.String(255))
    status = db.Column(db.String(50), nullable=False)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self):
        return f"<Subscription user={self.user_id} ({self.status})>"


class ProjectSubscription(db.Model):
    __tablename__ = "project_subscriptions"

    # -- Valid statuses (synced from Stripe) --
    STATUSES = [
        "active",
        "trialing",
        "past_due",
        "paused",
        "canceled",
        "incomplete",
        "unpaid",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    project_id = db.Column(
        db.String(36), db.ForeignKey("projects.id"), unique=True, nullable=False
    )
    stripe_subscription_id = db.Column(
        db.String(255), unique=True, nullable=True
    )
    stripe_customer_id = db.Column(db.String(255), nullable=True)
    stripe_checkout_session_id = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(50), nullable=False, default="active")
    next_renewal_date = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, default=False)
    paused_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resume_at = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)
    access_until = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    project = db.relationship("Project", back_populates="subscription")

    def __repr__(self):
        return f"<ProjectSubscription project={self.project_id} ({self.status})>"


class Payment(db.Model):
    __tablename__ = "payments"

    STATUSES = ["paid", "pending", "failed"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=False
    )
    amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="USD")
    status = db.Column(db.String(20), nullable=False, default="paid")
    description = db.Column(db.String(500))
    stripe_session_id = db.Column(db.String(255), unique=True, nullable=True)
    stripe_invoice_id = db.Column(db.String(255), unique=True, nullable=True)
    customer_email = db.Column(db.String(255))
    customer_name = db.Column(db.String(255))
    service_id = db.Column(db.String(36), nullable=True)
    package_id = db.Column(db.String(36), nullable=True)
    stripe_receipt_url = db.Column(db.Text, nullable=True)
    payment_method = db.Column(db.String(50), default="card")
    booking_id = db.Column(
        db.String(36), db.ForeignKey("bookings.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    booking = db.relationship("Booking", back_populates="payments")

    def __repr__(self):
        return f"<Payment {self.amount} {self.currency} ({self.status})>"
