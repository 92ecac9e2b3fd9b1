"""Subscription service — client-initiated cancellation.

Responsible for:
- Ownership / input checks for POST /api/subscriptions/cancel
- Recovering a missing Stripe subscription id through an ordered list of
  named strategies (each recovered id is persisted straight away)
- Issuing the cancel (immediate or at period end), idempotently
- Syncing the local mirror and emitting SUBSCRIPTION_CANCELED

Every failure is raised as CancellationError with a stable code.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import stripe
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from studiodesk.extensions import db
from studiodesk.models.billing import Payment, ProjectSubscription, Subscription
from studiodesk.models.project import Project
from studiodesk.services.billing_service import (
    customer_id_for_workspace,
    extract_period_end,
    object_id,
)
from studiodesk.services.notification_service import emit_event_safely

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "VALIDATION_ERROR": 400,
    "UNAUTHORIZED": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "NO_ACTIVE_SUBSCRIPTION": 404,
    "MISSING_STRIPE_SUBSCRIPTION_ID": 409,
    "DB_ERROR": 500,
    "STRIPE_ERROR": 502,
    "DB_UPDATE_FAILED": 500,
}

LIVE_STATUSES = ("active", "trialing")


class CancellationError(Exception):
    def __init__(self, code, message, debug=None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = ERROR_STATUS.get(code, 500)
        self.debug = debug


@dataclass
class RecoveryState:
    """What the cascade knows so far about a project's Stripe ids."""

    project: Project
    mirror: ProjectSubscription
    user_email: str = None
    subscription_id: str = None
    customer_id: str = None
    session_id: str = None
    trace: list = field(default_factory=list)


# ──────────────────────────────────────────────
# Customer lookup (shared with backfill)
# ──────────────────────────────────────────────

def lookup_customer_by_email(email):
    """First Stripe customer with this email, or None."""
    if not email:
        return None
    try:
        result = stripe.Customer.list(email=email, limit=1)
    except stripe.error.StripeError as e:
        logger.warning(f"Customer lookup by email failed: {e}")
        return None
    data = result.get("data") or []
    return data[0].get("id") if data else None


def find_customer_id(workspace_id, email):
    """Workspace-level stored customer id, else a Stripe lookup by email."""
    return customer_id_for_workspace(workspace_id) or lookup_customer_by_email(email)


# ──────────────────────────────────────────────
# Recovery strategies
#
# Each takes the RecoveryState and returns a dict with any of
# subscription_id / customer_id / session_id, or None.
# ──────────────────────────────────────────────

def _stored_subscription_id(state):
    if state.mirror.stripe_subscription_id:
        return {
            "subscription_id": state.mirror.stripe_subscription_id,
            "customer_id": state.mirror.stripe_customer_id,
        }
    return None


def _checkout_session_id(state):
    """Stored session id, else booking column, else newest payment, else notes token."""
    if state.mirror.stripe_checkout_session_id:
        return state.mirror.stripe_checkout_session_id

    booking = state.project.booking
    if booking is None:
        return None
    if booking.stripe_session_id:
        return booking.stripe_session_id

    payment = (
        Payment.query
        .filter(Payment.booking_id == booking.id, Payment.stripe_session_id.isnot(None))
        .order_by(Payment.created_at.desc())
        .first()
    )
    if payment:
        return payment.stripe_session_id

    return booking.session_id_from_notes()


def _checkout_session_lookup(state):
    session_id = _checkout_session_id(state)
    if not session_id:
        return None

    try:
        session = stripe.checkout.Session.retrieve(
            session_id, expand=["subscription", "customer"]
        )
    except stripe.error.StripeError as e:
        logger.warning(f"Could not retrieve checkout session {session_id}: {e}")
        return None

    return {
        "session_id": session_id,
        "subscription_id": object_id(session.get("subscription")),
        "customer_id": object_id(session.get("customer")),
    }


def _workspace_customer(state):
    if state.customer_id:
        return None
    customer_id = find_customer_id(state.project.workspace_id, state.user_email)
    return {"customer_id": customer_id} if customer_id else None


def newest_live_subscription(customer_id):
    """Most recently created active/trialing subscription for a customer."""
    try:
        result = stripe.Subscription.list(customer=customer_id, status="all", limit=20)
    except stripe.error.StripeError as e:
        logger.warning(f"Could not list subscriptions for {customer_id}: {e}")
        return None

    live = [s for s in (result.get("data") or []) if s.get("status") in LIVE_STATUSES]
    if not live:
        return None
    return max(live, key=lambda s: s.get("created") or 0)


def _customer_subscriptions(state):
    if not state.customer_id:
        return None
    sub = newest_live_subscription(state.customer_id)
    return {"subscription_id": sub.get("id")} if sub else None


RECOVERY_STRATEGIES = [
    ("stored_subscription_id", _stored_subscription_id),
    ("checkout_session_lookup", _checkout_session_lookup),
    ("workspace_customer", _workspace_customer),
    ("customer_subscriptions", _customer_subscriptions),
]


def _persist_recovered_ids(state):
    mirror = state.mirror
    changed = False
    if state.subscription_id and mirror.stripe_subscription_id != state.subscription_id:
        mirror.stripe_subscription_id = state.subscription_id
        changed = True
    if state.customer_id and not mirror.stripe_customer_id:
        mirror.stripe_customer_id = state.customer_id
        changed = True
    if state.session_id and not mirror.stripe_checkout_session_id:
        mirror.stripe_checkout_session_id = state.session_id
        changed = True
    if not changed:
        return
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.warning(f"Could not persist recovered ids for project {state.project.id}: {e}")


def resolve_subscription_id(state):
    """Run the strategies in order until a subscription id is known."""
    for name, strategy in RECOVERY_STRATEGIES:
        if state.subscription_id:
            break
        result = strategy(state) or {}
        state.trace.append({"strategy": name, "found": sorted(k for k, v in result.items() if v)})
        for key in ("subscription_id", "customer_id", "session_id"):
            if result.get(key) and not getattr(state, key):
                setattr(state, key, result[key])
        if result and name != "stored_subscription_id":
            logger.info(f"Recovery strategy {name} found {state.trace[-1]['found']}")
            _persist_recovered_ids(state)
    return state.subscription_id


# ──────────────────────────────────────────────
# Cancellation
# ──────────────────────────────────────────────

def _validate(project_id, cancel_at_period_end, cancel_reason):
    if not isinstance(project_id, str) or not project_id.strip():
        raise CancellationError("VALIDATION_ERROR", "project_id is required")
    if not isinstance(cancel_at_period_end, bool):
        raise CancellationError("VALIDATION_ERROR", "cancel_at_period_end must be a boolean")
    if cancel_reason is not None and not isinstance(cancel_reason, str):
        raise CancellationError("VALIDATION_ERROR", "cancel_reason must be a string")


def cancel_project_subscription(user, project_id, cancel_at_period_end=True,
                                cancel_reason=None, debug=False):
    """Cancel the Stripe subscription behind a project.

    Returns the success payload (without requestId).
    Raises CancellationError.
    """
    _validate(project_id, cancel_at_period_end, cancel_reason)
    if debug and not user.is_admin:
        raise CancellationError("FORBIDDEN", "Debug mode is restricted to admins")

    try:
        project = db.session.get(Project, project_id)
        mirror = (
            ProjectSubscription.query.filter_by(project_id=project_id).first()
            if project else None
        )
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"DB error loading project {project_id}: {e}")
        raise CancellationError("DB_ERROR", "Could not load project") from e

    if project is None:
        raise CancellationError("NOT_FOUND", "Project not found")
    if not project.is_owned_by(user.id):
        raise CancellationError("FORBIDDEN", "Not authorized to cancel this subscription")
    if mirror is None:
        raise CancellationError(
            "NO_ACTIVE_SUBSCRIPTION", "No subscription found for this project"
        )

    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    state = RecoveryState(project=project, mirror=mirror, user_email=user.email)

    subscription_id = resolve_subscription_id(state)
    debug_info = {"recovery": state.trace} if debug else None
    if not subscription_id:
        logger.error(f"No Stripe subscription id recoverable for project {project_id}")
        raise CancellationError(
            "MISSING_STRIPE_SUBSCRIPTION_ID",
            "No Stripe subscription could be found for this project. Please contact support.",
            debug=debug_info,
        )

    try:
        remote = stripe.Subscription.retrieve(subscription_id)
        if remote.get("status") == "canceled":
            action = "already_canceled"
        elif remote.get("cancel_at_period_end") and cancel_at_period_end:
            action = "already_scheduled"
        elif cancel_at_period_end:
            remote = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
            action = "scheduled"
        else:
            remote = stripe.Subscription.cancel(subscription_id)
            action = "canceled"
    except stripe.error.StripeError as e:
        logger.error(f"Stripe error canceling {subscription_id}: {e}")
        if debug_info is not None:
            debug_info["stripe_error"] = str(e)
        raise CancellationError(
            "STRIPE_ERROR", "Payment provider error while canceling", debug=debug_info
        ) from e

    logger.info(f"Subscription {subscription_id} for project {project_id}: {action}")
    now = datetime.now(timezone.utc)
    access_until = extract_period_end(remote) or now
    at_period_end = action in ("scheduled", "already_scheduled")

    try:
        mirror.status = "canceled"
        mirror.canceled_at = mirror.canceled_at or now
        mirror.cancel_reason = cancel_reason or mirror.cancel_reason
        mirror.cancel_at_period_end = at_period_end
        mirror.access_until = access_until
        user_row = Subscription.query.filter_by(
            stripe_subscription_id=subscription_id
        ).first()
        if user_row:
            user_row.status = "canceled"
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Failed to update local mirror for project {project_id}: {e}")
        raise CancellationError(
            "DB_UPDATE_FAILED",
            "Subscription was canceled but the local record could not be updated",
            debug=debug_info,
        ) from e

    emit_event_safely(
        "SUBSCRIPTION_CANCELED",
        entity_type="project",
        entity_id=project.id,
        metadata={"project_name": project.name, "cancel_reason": cancel_reason},
        actor_id=user.id,
        target_user_id=project.client_id or project.user_id,
    )

    if at_period_end:
        message = "Subscription will be canceled at period end"
    elif action == "already_canceled":
        message = "Subscription is already canceled"
    else:
        message = "Subscription canceled"

    payload = {
        "ok": True,
        "status": "canceled",
        "cancel_at_period_end": at_period_end,
        "access_until": access_until.isoformat(),
        "message": message,
    }
    if debug_info is not None:
        debug_info["action"] = action
        debug_info["subscription_id"] = subscription_id
        payload["debug"] = debug_info
    return payload
