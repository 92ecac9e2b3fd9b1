"""Stripe service — webhook verification and event handling.

Responsible for:
- Verifying webhook signatures
- Idempotency via the stripe_events table (recorded and committed
  *before* processing)
- Dispatching to event-specific handlers that sync payments, bookings,
  projects and the subscription mirrors
- Emitting notifications once processing has committed
"""

import json
import logging
from datetime import datetime, timedelta, timezone

import bleach
import stripe
from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from studiodesk.extensions import db
from studiodesk.models.billing import Payment, Subscription
from studiodesk.models.project import SESSION_TOKEN_PREFIX, Booking, Project
from studiodesk.models.stripe_event import StripeEvent
from studiodesk.models.user import User
from studiodesk.services.billing_service import (
    extract_period_end,
    extract_price_id,
    find_project_subscription,
    get_or_create_billing_customer,
    invoice_subscription_id,
    object_id,
    set_mirror_status,
    ts_to_datetime,
    upsert_project_subscription,
    upsert_user_subscription,
)
from studiodesk.services.notification_service import emit_event_safely

logger = logging.getLogger(__name__)

SUCCESSFUL_PAYMENT_STATUSES = ("paid", "no_payment_required")
METADATA_NOTES_MAX = 500
CUSTOM_FIELD_NOTES_MAX = 255
RECENT_PROJECT_WINDOW_SECONDS = 3600


class WebhookProcessingError(Exception):
    """A handler failed; processing writes were rolled back."""


# ──────────────────────────────────────────────
# Webhook Handling
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header):
    """Verify Stripe webhook signature and construct the event.

    Returns the verified Stripe event object.
    Raises stripe.error.SignatureVerificationError on invalid signature.
    """
    webhook_secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)


def _event_payload(event):
    return json.loads(json.dumps(event, default=str))


def record_event(event):
    """Insert the stripe_events row and commit.

    Returns False if this event id was already recorded (including a
    concurrent insert that won the race).
    Raises WebhookProcessingError if the insert fails for any other reason.
    """
    event_id = event["id"]

    try:
        if StripeEvent.query.filter_by(stripe_event_id=event_id).first():
            return False
        db.session.add(StripeEvent(
            stripe_event_id=event_id,
            event_type=event["type"],
            payload=_event_payload(event),
        ))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return False
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Could not record event {event_id}: {e}")
        raise WebhookProcessingError(str(e)) from e
    return True


def handle_webhook_event(event):
    """Process a verified Stripe webhook event.

    Returns "duplicate", "ignored" or "processed".
    Raises WebhookProcessingError if a handler fails.
    """
    event_id = event["id"]
    event_type = event["type"]
    logger.info(f"[{event_id}] Event received: {event_type}")

    if not record_event(event):
        logger.info(f"[{event_id}] Duplicate webhook event, skipping")
        return "duplicate"

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"[{event_id}] No handler for {event_type}, recorded only")
        return "ignored"

    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    try:
        notifications = handler(event) or []
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"[{event_id}] Error handling {event_type}: {e}", exc_info=True)
        raise WebhookProcessingError(str(e)) from e

    for notify_type, kwargs in notifications:
        emit_event_safely(notify_type, **kwargs)

    return "processed"


# ──────────────────────────────────────────────
# checkout.session.completed
# ──────────────────────────────────────────────

def _resolve_receipt_url(session):
    """Best-effort receipt link for a completed checkout session."""
    mode = session.get("mode")
    try:
        if mode == "payment" and session.get("payment_intent"):
            intent = stripe.PaymentIntent.retrieve(object_id(session.get("payment_intent")))
            charge_id = object_id(intent.get("latest_charge"))
            if charge_id:
                charge = stripe.Charge.retrieve(charge_id)
                return charge.get("receipt_url")
        elif mode == "subscription" and session.get("subscription"):
            sub = stripe.Subscription.retrieve(
                object_id(session.get("subscription")), expand=["latest_invoice"]
            )
            invoice = sub.get("latest_invoice")
            if invoice and not isinstance(invoice, str):
                return invoice.get("hosted_invoice_url") or invoice.get("invoice_pdf")
    except stripe.error.StripeError as e:
        logger.warning(f"Could not resolve receipt URL for session {session.get('id')}: {e}")
    return None


def _payment_model(session):
    metadata = session.get("metadata") or {}
    if metadata.get("payment_model"):
        return metadata["payment_model"]
    return "subscription" if session.get("mode") == "subscription" else "one_time"


def _customer_name(session):
    details = session.get("customer_details") or {}
    metadata = session.get("metadata") or {}
    return details.get("name") or metadata.get("customer_name") or "Customer"


def _customer_email(session):
    details = session.get("customer_details") or {}
    return session.get("customer_email") or details.get("email") or ""


def _create_booking(session, user_id):
    metadata = session.get("metadata") or {}
    session_id = session.get("id")
    service_name = metadata.get("service_name") or "Service Project"

    booking = Booking(
        user_id=user_id,
        service_id=metadata.get("service_id"),
        package_id=metadata.get("package_id"),
        full_name=_customer_name(session),
        email=_customer_email(session),
        phone="",
        booking_date=datetime.now(timezone.utc).date(),
        booking_time="TBD",
        status="pending",
        project_status="not_started",
        stripe_session_id=session_id,
        notes=(
            f"{SESSION_TOKEN_PREFIX}{session_id}\n"
            f"Service: {service_name}\n"
            f"Package: {metadata.get('package_name') or 'Unknown'}\n"
            f"Payment Model: {_payment_model(session)}"
        ),
    )
    db.session.add(booking)
    db.session.flush()
    logger.info(f"Booking {booking.id} created for user {user_id}")
    return booking


def _create_project(session, user_id, booking):
    """Create the project for a booking.

    Returns (project, created). A uniqueness violation on booking_id means
    another delivery created it first; the existing project is returned.
    """
    existing = Project.query.filter_by(booking_id=booking.id).first()
    if existing:
        return existing, False

    metadata = session.get("metadata") or {}
    service_name = metadata.get("service_name") or "Service Project"
    project = Project(
        user_id=user_id,
        client_id=user_id,
        workspace_id=user_id,
        service_id=metadata.get("service_id"),
        booking_id=booking.id,
        name=service_name,
        description=f"Project for {_customer_name(session)}",
        status="pending",
        progress=0,
        start_date=datetime.now(timezone.utc).date(),
        payment_model=_payment_model(session),
    )
    try:
        with db.session.begin_nested():
            db.session.add(project)
    except IntegrityError:
        logger.info(f"Project already exists for booking {booking.id}, fetching existing")
        return Project.query.filter_by(booking_id=booking.id).first(), False

    logger.info(f"Project {project.id} created for booking {booking.id}")
    return project, True


def extract_client_notes(session):
    """Client notes from metadata (≤500 chars) or the legacy 'notes' custom field (≤255)."""
    metadata = session.get("metadata") or {}
    notes = metadata.get("client_notes")
    if isinstance(notes, str):
        notes = notes.strip()
        if 0 < len(notes) <= METADATA_NOTES_MAX:
            return notes

    for custom_field in session.get("custom_fields") or []:
        if custom_field.get("key") != "notes":
            continue
        value = (custom_field.get("text") or {}).get("value")
        if isinstance(value, str):
            value = value.strip()
            if 0 < len(value) <= CUSTOM_FIELD_NOTES_MAX:
                return value
    return None


def _save_client_notes(project, session):
    """Persist sanitized client notes. Failures are logged, never raised."""
    try:
        notes = extract_client_notes(session)
        if not notes:
            return
        with db.session.begin_nested():
            project.client_notes = bleach.clean(notes, tags=[], strip=True)
            project.client_notes_updated_at = datetime.now(timezone.utc)
        logger.info(f"Client notes saved to project {project.id}")
    except Exception as e:
        logger.warning(f"Failed to save client notes for project {project.id}: {e}")


def _link_billing_customer(workspace_id, customer_id):
    """Remember the workspace's Stripe customer. A conflicting row is left alone."""
    try:
        with db.session.begin_nested():
            get_or_create_billing_customer(workspace_id, customer_id)
    except IntegrityError as e:
        logger.warning(f"Billing customer not linked for workspace {workspace_id}: {e}")


def _handle_checkout_completed(event):
    """Handle checkout.session.completed.

    Records the payment (plus booking + project for service purchases)
    and, for subscription checkouts, links both subscription mirrors.
    """
    session = event["data"]["object"]
    metadata = session.get("metadata") or {}
    session_id = session.get("id")
    user_id = metadata.get("user_id")
    mode = session.get("mode")
    notifications = []

    if session.get("payment_status") not in SUCCESSFUL_PAYMENT_STATUSES:
        logger.info(
            f"checkout {session_id} not paid ({session.get('payment_status')}), skipping"
        )
        return notifications
    if not user_id:
        logger.warning(f"checkout {session_id} completed without metadata.user_id, skipping")
        return notifications

    project = None
    existing_payment = Payment.query.filter_by(stripe_session_id=session_id).first()

    if existing_payment is None:
        receipt_url = _resolve_receipt_url(session)

        booking = None
        if metadata.get("service_id"):
            booking = _create_booking(session, user_id)

        description = metadata.get("service_name") or metadata.get("package_name") or "Payment"
        if mode == "subscription":
            description = f"Subscription: {description}"

        payment_method_types = session.get("payment_method_types") or []
        db.session.add(Payment(
            user_id=user_id,
            stripe_session_id=session_id,
            amount=(session.get("amount_total") or 0) / 100,
            currency=(session.get("currency") or "usd").upper(),
            status="paid",
            description=description,
            customer_email=_customer_email(session) or None,
            customer_name=(session.get("customer_details") or {}).get("name"),
            service_id=metadata.get("service_id"),
            package_id=metadata.get("package_id"),
            stripe_receipt_url=receipt_url,
            payment_method=payment_method_types[0] if payment_method_types else "card",
            booking_id=booking.id if booking else None,
        ))
        db.session.flush()
        logger.info(f"Payment recorded for session {session_id} (user {user_id})")

        if booking is not None:
            project, created = _create_project(session, user_id, booking)
            if project is not None:
                _save_client_notes(project, session)
            if created:
                notifications.append(("PROJECT_CREATED", {
                    "entity_type": "project",
                    "entity_id": project.id,
                    "metadata": {"project_name": project.name},
                    "target_user_id": user_id,
                }))
    else:
        logger.info(f"Payment already exists for session {session_id}")
        if existing_payment.booking_id:
            project = Project.query.filter_by(booking_id=existing_payment.booking_id).first()

    subscription_id = object_id(session.get("subscription"))
    if mode == "subscription" and subscription_id:
        customer_id = object_id(session.get("customer"))
        sub = stripe.Subscription.retrieve(subscription_id)
        if project is not None:
            upsert_project_subscription(project.id, sub, checkout_session_id=session_id)
        upsert_user_subscription(user_id, sub, stripe_customer_id=customer_id)
        if project is not None and project.workspace_id and customer_id:
            _link_billing_customer(project.workspace_id, customer_id)

    return notifications


# ──────────────────────────────────────────────
# customer.subscription.*
# ──────────────────────────────────────────────

def _latest_subscription_project(**filters):
    since = filters.pop("since", None)
    query = Project.query.filter_by(payment_model="subscription", **filters)
    if since is not None:
        query = query.filter(Project.created_at >= since)
    return query.order_by(Project.created_at.desc()).first()


def _recent_cutoff():
    return datetime.now(timezone.utc) - timedelta(seconds=RECENT_PROJECT_WINDOW_SECONDS)


def _by_subscription_metadata(sub, customer):
    metadata = sub.get("metadata") or {}
    if metadata.get("service_id") and metadata.get("user_id"):
        return _latest_subscription_project(
            service_id=metadata["service_id"], user_id=metadata["user_id"]
        )
    return None


def _by_recent_user_project(sub, customer):
    user_id = (sub.get("metadata") or {}).get("user_id")
    if user_id:
        return _latest_subscription_project(user_id=user_id, since=_recent_cutoff())
    return None


def _by_customer_metadata(sub, customer):
    if not customer:
        return None
    metadata = customer.get("metadata") or {}
    if metadata.get("last_user_id") and metadata.get("last_service_id"):
        return _latest_subscription_project(
            user_id=metadata["last_user_id"], service_id=metadata["last_service_id"]
        )
    return None


def _by_customer_email(sub, customer):
    if not customer or not customer.get("email"):
        return None
    user = User.query.filter_by(email=customer["email"]).first()
    if user:
        return _latest_subscription_project(user_id=user.id, since=_recent_cutoff())
    return None


PROJECT_MATCH_STRATEGIES = [
    ("subscription_metadata", _by_subscription_metadata),
    ("recent_user_project", _by_recent_user_project),
    ("customer_metadata", _by_customer_metadata),
    ("customer_email", _by_customer_email),
]


def find_project_for_subscription(sub):
    """Locate the project a new subscription belongs to, or None."""
    customer = None
    customer_id = object_id(sub.get("customer"))
    if customer_id:
        try:
            customer = stripe.Customer.retrieve(customer_id)
            if customer.get("deleted"):
                customer = None
        except stripe.error.StripeError as e:
            logger.warning(f"Could not retrieve customer {customer_id}: {e}")

    for name, strategy in PROJECT_MATCH_STRATEGIES:
        project = strategy(sub, customer)
        if project is not None:
            logger.info(f"Subscription {sub.get('id')} matched project {project.id} via {name}")
            return project
    return None


def _handle_subscription_created(event):
    sub = event["data"]["object"]
    stripe_subscription_id = sub.get("id")
    notifications = []

    existing = find_project_subscription(stripe_subscription_id)
    if existing:
        logger.info(
            f"subscription.created: {stripe_subscription_id} already linked "
            f"to project {existing.project_id}"
        )
    else:
        project = find_project_for_subscription(sub)
        if project is not None:
            upsert_project_subscription(project.id, sub)
            notifications.append(("SUBSCRIPTION_ACTIVATED", {
                "entity_type": "project",
                "entity_id": project.id,
                "metadata": {"project_name": project.name},
                "target_user_id": project.client_id or project.user_id,
            }))
        else:
            logger.warning(
                f"subscription.created: no project found for {stripe_subscription_id}"
            )

    user_id = (sub.get("metadata") or {}).get("user_id")
    if user_id:
        upsert_user_subscription(user_id, sub)

    return notifications


def _handle_subscription_updated(event):
    """Mirror status / renewal / cancel flag onto rows that already exist."""
    sub = event["data"]["object"]
    stripe_subscription_id = sub.get("id")
    period_end = extract_period_end(sub)
    matched = False

    user_row = Subscription.query.filter_by(
        stripe_subscription_id=stripe_subscription_id
    ).first()
    if user_row:
        user_row.status = sub.get("status") or user_row.status
        user_row.price_id = extract_price_id(sub) or user_row.price_id
        if period_end:
            user_row.current_period_end = period_end
        matched = True

    project_row = find_project_subscription(stripe_subscription_id)
    if project_row:
        upsert_project_subscription(project_row.project_id, sub)
        matched = True

    if not matched:
        logger.info(f"subscription.updated: no local rows for {stripe_subscription_id}")
    db.session.flush()


def _handle_subscription_deleted(event):
    sub = event["data"]["object"]
    stripe_subscription_id = sub.get("id")

    project_row, user_row = set_mirror_status(
        stripe_subscription_id,
        "canceled",
        cancel_at_period_end=False,
        canceled_at=datetime.now(timezone.utc),
    )
    if project_row and not project_row.access_until:
        project_row.access_until = (
            ts_to_datetime(sub.get("ended_at")) or datetime.now(timezone.utc)
        )
    if not project_row and not user_row:
        logger.warning(f"subscription.deleted: no local record for {stripe_subscription_id}")


def _handle_subscription_paused(event):
    sub = event["data"]["object"]
    pause = sub.get("pause_collection") or {}
    project_row, _ = set_mirror_status(
        sub.get("id"),
        "paused",
        paused_at=datetime.now(timezone.utc),
        resume_at=ts_to_datetime(pause.get("resumes_at")),
    )
    if project_row:
        return [("SUBSCRIPTION_PAUSED", _project_notification(project_row))]
    return []


def _handle_subscription_resumed(event):
    sub = event["data"]["object"]
    status = sub.get("status") or "active"
    project_fields = {"paused_at": None, "resume_at": None}
    period_end = extract_period_end(sub)
    if period_end:
        project_fields["next_renewal_date"] = period_end

    project_row, user_row = set_mirror_status(sub.get("id"), status, **project_fields)
    if user_row and period_end:
        user_row.current_period_end = period_end
    if project_row:
        return [("SUBSCRIPTION_RESUMED", _project_notification(project_row))]
    return []


def _project_notification(project_row):
    project = project_row.project
    return {
        "entity_type": "project",
        "entity_id": project_row.project_id,
        "metadata": {"project_name": project.name if project else None},
        "target_user_id": (project.client_id or project.user_id) if project else None,
    }


# ──────────────────────────────────────────────
# invoice.*
# ──────────────────────────────────────────────

def _handle_payment_succeeded(event):
    """Record a renewal payment. The subscription_create invoice is
    already covered by checkout.session.completed."""
    invoice = event["data"]["object"]
    stripe_subscription_id = invoice_subscription_id(invoice)

    if not stripe_subscription_id or invoice.get("billing_reason") == "subscription_create":
        return

    user_row = Subscription.query.filter_by(
        stripe_subscription_id=stripe_subscription_id
    ).first()
    if not user_row:
        logger.warning(
            f"invoice.payment_succeeded: no subscription row for {stripe_subscription_id}"
        )
        return

    invoice_id = invoice.get("id")
    if Payment.query.filter_by(stripe_invoice_id=invoice_id).first():
        logger.info(f"Renewal payment for invoice {invoice_id} already recorded")
        return

    service_id = None
    booking_id = None
    project_row = find_project_subscription(stripe_subscription_id)
    if project_row and project_row.project:
        service_id = project_row.project.service_id
        booking_id = project_row.project.booking_id

    db.session.add(Payment(
        user_id=user_row.user_id,
        stripe_invoice_id=invoice_id,
        amount=(invoice.get("amount_paid") or 0) / 100,
        currency=(invoice.get("currency") or "usd").upper(),
        status="paid",
        description="Subscription renewal",
        customer_email=invoice.get("customer_email"),
        stripe_receipt_url=invoice.get("hosted_invoice_url") or invoice.get("invoice_pdf"),
        payment_method="card",
        service_id=service_id,
        booking_id=booking_id,
    ))
    db.session.flush()
    logger.info(f"Recurring payment recorded for invoice {invoice_id}")


def _handle_payment_failed(event):
    invoice = event["data"]["object"]
    stripe_subscription_id = invoice_subscription_id(invoice)
    if not stripe_subscription_id:
        return []

    project_row, _ = set_mirror_status(stripe_subscription_id, "past_due")
    logger.info(
        f"Subscription {stripe_subscription_id} marked past_due "
        f"(attempt {invoice.get('attempt_count')})"
    )

    if not project_row:
        return []

    payload = _project_notification(project_row)
    payload["entity_type"] = "subscription"
    payload["metadata"].update({
        "invoice_id": invoice.get("id"),
        "attempt_count": invoice.get("attempt_count"),
    })
    return [("PAYMENT_FAILED", payload)]


EVENT_HANDLERS = {
    "checkout.session.completed": _handle_checkout_completed,
    "customer.subscription.created": _handle_subscription_created,
    "customer.subscription.updated": _handle_subscription_updated,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "customer.subscription.paused": _handle_subscription_paused,
    "customer.subscription.resumed": _handle_subscription_resumed,
    "invoice.payment_succeeded": _handle_payment_succeeded,
    "invoice.payment_failed": _handle_payment_failed,
}
