"""Backfill service — link historical subscription projects to Stripe.

For every subscription-model project whose mirror lacks a Stripe
subscription id: find the customer (workspace record, then email
lookup), list their live subscriptions and pick one with the matching
strategies below. Dry run (the default) reports what would change and
writes nothing.
"""

import logging
from datetime import timezone

import stripe
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from studiodesk.extensions import db
from studiodesk.models.billing import ProjectSubscription
from studiodesk.models.project import Project
from studiodesk.models.user import User
from studiodesk.services.billing_service import upsert_project_subscription
from studiodesk.services.subscription_service import find_customer_id

logger = logging.getLogger(__name__)

BACKFILL_STATUSES = ("active", "trialing", "past_due", "paused")
CREATION_PROXIMITY_SECONDS = 24 * 3600


def _match_service_metadata(project, candidates):
    if not project.service_id:
        return None
    for sub in candidates:
        if (sub.get("metadata") or {}).get("service_id") == project.service_id:
            return sub
    return None


def _match_single_candidate(project, candidates):
    return candidates[0] if len(candidates) == 1 else None


def _match_creation_proximity(project, candidates):
    if project.created_at is None:
        return None
    created = project.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    project_ts = created.timestamp()
    for sub in candidates:
        if abs(project_ts - (sub.get("created") or 0)) <= CREATION_PROXIMITY_SECONDS:
            return sub
    return None


MATCH_STRATEGIES = [
    ("service_metadata", _match_service_metadata),
    ("single_active", _match_single_candidate),
    ("creation_proximity", _match_creation_proximity),
]


def match_subscription(project, candidates):
    """Return (strategy_name, subscription) or (None, None)."""
    for name, strategy in MATCH_STRATEGIES:
        sub = strategy(project, candidates)
        if sub is not None:
            return name, sub
    return None, None


def _live_subscriptions(customer_id):
    result = stripe.Subscription.list(customer=customer_id, status="all", limit=100)
    return [s for s in (result.get("data") or []) if s.get("status") in BACKFILL_STATUSES]


def _linked_elsewhere(project_id, subscription_ids):
    """Subscription ids already mirrored on a different project."""
    rows = (
        ProjectSubscription.query
        .filter(ProjectSubscription.stripe_subscription_id.in_(subscription_ids))
        .filter(ProjectSubscription.project_id != project_id)
        .all()
    )
    return {r.stripe_subscription_id for r in rows}


def _backfill_project(project, dry_run):
    mirror = ProjectSubscription.query.filter_by(project_id=project.id).first()
    if mirror and mirror.stripe_subscription_id:
        return {
            "projectId": project.id,
            "action": "skipped",
            "reason": "already_linked",
            "subscriptionId": mirror.stripe_subscription_id,
        }

    owner = db.session.get(User, project.user_id)
    email = owner.email if owner else None
    if not email:
        return {"projectId": project.id, "action": "error", "reason": "no_user_email"}

    customer_id = find_customer_id(project.workspace_id, email)
    if not customer_id:
        return {"projectId": project.id, "action": "skipped", "reason": "no_stripe_customer"}

    candidates = _live_subscriptions(customer_id)
    if not candidates:
        return {"projectId": project.id, "action": "skipped", "reason": "no_active_subscriptions"}

    taken = _linked_elsewhere(project.id, [s.get("id") for s in candidates])
    if taken:
        logger.info(f"Project {project.id}: ignoring subscriptions linked elsewhere {sorted(taken)}")
        candidates = [s for s in candidates if s.get("id") not in taken]
        if not candidates:
            return {
                "projectId": project.id,
                "action": "skipped",
                "reason": "already_linked_elsewhere",
                "subscriptionIds": sorted(taken),
            }

    strategy, sub = match_subscription(project, candidates)
    if sub is None:
        return {
            "projectId": project.id,
            "action": "error",
            "reason": "no_match",
            "candidates": [s.get("id") for s in candidates],
        }

    logger.info(f"Project {project.id} matched {sub.get('id')} via {strategy}")
    if dry_run:
        return {
            "projectId": project.id,
            "action": "would_link",
            "subscriptionId": sub.get("id"),
            "status": sub.get("status"),
            "strategy": strategy,
        }

    upsert_project_subscription(project.id, sub)
    db.session.commit()
    return {
        "projectId": project.id,
        "action": "linked",
        "subscriptionId": sub.get("id"),
        "status": sub.get("status"),
        "strategy": strategy,
    }


def backfill_subscriptions(dry_run=True, project_id=None):
    """Reconcile subscription projects with Stripe.

    Returns the report dict served by POST /admin/subscriptions/backfill.
    """
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]

    query = Project.query.filter_by(payment_model="subscription")
    if project_id:
        query = query.filter_by(id=project_id)
    projects = query.order_by(Project.created_at.asc()).all()
    logger.info(
        f"Backfill started: {len(projects)} projects (dry_run={dry_run}, "
        f"project={project_id or 'all'})"
    )

    summary = {"processed": 0, "linked": 0, "skipped": 0, "errors": 0}
    details = []

    for project in projects:
        summary["processed"] += 1
        try:
            detail = _backfill_project(project, dry_run)
        except (stripe.error.StripeError, SQLAlchemyError) as e:
            db.session.rollback()
            logger.error(f"Backfill failed for project {project.id}: {e}")
            detail = {"projectId": project.id, "action": "error", "reason": str(e)}

        action = detail["action"]
        if action in ("linked", "would_link"):
            summary["linked"] += 1
        elif action == "skipped":
            summary["skipped"] += 1
        else:
            summary["errors"] += 1
        details.append(detail)

    logger.info(f"Backfill complete: {summary}")
    return {"success": True, "dryRun": dry_run, "summary": summary, "details": details}
