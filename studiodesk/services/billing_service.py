"""Billing service — subscription mirror sync helpers.

Responsible for:
- Reading period end / price / customer ids out of Stripe objects
  (handles both older and newer API payload shapes)
- Upserting the project-level (project_subscriptions) and user-level
  (subscriptions) mirrors from Stripe data
- Getting or creating BillingCustomer records

All writes flush(); the caller owns the commit.
"""

import logging
from datetime import datetime, timezone

from studiodesk.extensions import db
from studiodesk.models.billing import (
    BillingCustomer,
    ProjectSubscription,
    Subscription,
)

logger = logging.getLogger(__name__)


def ts_to_datetime(ts):
    """Unix timestamp → aware UTC datetime. Returns None for unusable input."""
    if ts is None or isinstance(ts, bool):
        return None
    try:
        ts = int(ts)
    except (TypeError, ValueError):
        return None
    if ts <= 0:
        return None
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def extract_period_end(sub_data):
    """Extract current_period_end from a Stripe subscription object.

    In newer Stripe API versions, current_period_end has moved from the
    subscription top level to items.data[0].current_period_end.
    This helper checks both locations.

    Returns a timezone-aware datetime or None.
    """
    ts = sub_data.get("current_period_end")

    if not ts:
        items = sub_data.get("items")
        if items and items.get("data") and len(items["data"]) > 0:
            ts = items["data"][0].get("current_period_end")

    return ts_to_datetime(ts)


def extract_price_id(sub_data):
    items = sub_data.get("items")
    if items and items.get("data"):
        price = items["data"][0].get("price") or {}
        return price.get("id") if hasattr(price, "get") else price
    return None


def object_id(value):
    """Stripe fields are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def invoice_subscription_id(invoice):
    """Subscription id of an invoice, old or new payload shape."""
    sub_id = object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return object_id(details.get("subscription"))


def is_cancelling(sub_data):
    # Stripe uses cancel_at_period_end OR cancel_at (a future timestamp)
    return bool(
        sub_data.get("cancel_at_period_end", False)
        or sub_data.get("cancel_at") is not None
    )


def get_or_create_billing_customer(workspace_id, stripe_customer_id):
    """Get existing BillingCustomer or create one."""
    customer = BillingCustomer.query.filter_by(
        workspace_id=workspace_id
    ).first()
    if customer:
        return customer

    customer = BillingCustomer.query.filter_by(
        stripe_customer_id=stripe_customer_id
    ).first()
    if customer:
        return customer

    customer = BillingCustomer(
        workspace_id=workspace_id,
        stripe_customer_id=stripe_customer_id,
    )
    db.session.add(customer)
    db.session.flush()
    return customer


def customer_id_for_workspace(workspace_id):
    if not workspace_id:
        return None
    customer = BillingCustomer.query.filter_by(workspace_id=workspace_id).first()
    return customer.stripe_customer_id if customer else None


def find_project_subscription(stripe_subscription_id):
    if not stripe_subscription_id:
        return None
    return ProjectSubscription.query.filter_by(
        stripe_subscription_id=stripe_subscription_id
    ).first()


def upsert_project_subscription(project_id, sub_data, checkout_session_id=None):
    """Create or update the project mirror from a Stripe subscription.

    One mirror per project: the row is matched on project_id only.
    Returns the ProjectSubscription instance.
    """
    stripe_subscription_id = sub_data.get("id")
    row = ProjectSubscription.query.filter_by(project_id=project_id).first()

    pause = sub_data.get("pause_collection")
    fields = {
        "stripe_subscription_id": stripe_subscription_id,
        "stripe_customer_id": object_id(sub_data.get("customer")),
        "status": sub_data.get("status") or "active",
        "next_renewal_date": extract_period_end(sub_data),
        "cancel_at_period_end": is_cancelling(sub_data),
        "paused_at": datetime.now(timezone.utc) if pause else None,
        "resume_at": ts_to_datetime(pause.get("resumes_at")) if pause else None,
    }

    if row is None:
        row = ProjectSubscription(project_id=project_id, **fields)
        db.session.add(row)
        logger.info(f"Linked subscription {stripe_subscription_id} to project {project_id}")
    else:
        for key, value in fields.items():
            setattr(row, key, value)
        logger.info(
            f"Updated subscription mirror {stripe_subscription_id} "
            f"(project {row.project_id}, status {row.status})"
        )

    if checkout_session_id:
        row.stripe_checkout_session_id = checkout_session_id

    db.session.flush()
    return row


def upsert_user_subscription(user_id, sub_data, stripe_customer_id=None):
    """Create or update the user-level mirror (one row per user)."""
    row = Subscription.query.filter_by(user_id=user_id).first()

    fields = {
        "stripe_subscription_id": sub_data.get("id"),
        "stripe_customer_id": stripe_customer_id or object_id(sub_data.get("customer")),
        "price_id": extract_price_id(sub_data),
        "status": sub_data.get("status") or "active",
        "current_period_end": extract_period_end(sub_data),
    }

    if row is None:
        row = Subscription(user_id=user_id, **fields)
        db.session.add(row)
    else:
        for key, value in fields.items():
            setattr(row, key, value)

    db.session.flush()
    return row


def set_mirror_status(stripe_subscription_id, status, **project_fields):
    """Set status on both mirrors for a subscription id.

    Extra keyword args are applied to the project mirror only.
    Returns (project_row_or_None, user_row_or_None).
    """
    project_row = find_project_subscription(stripe_subscription_id)
    if project_row:
        project_row.status = status
        for key, value in project_fields.items():
            setattr(project_row, key, value)

    user_row = Subscription.query.filter_by(
        stripe_subscription_id=stripe_subscription_id
    ).first()
    if user_row:
        user_row.status = status

    db.session.flush()
    return project_row, user_row
