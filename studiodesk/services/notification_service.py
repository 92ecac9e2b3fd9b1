"""Notification service — templated in-app notifications.

emit_event() looks up the template for an event type, renders
title / message / priority / link, and fans out to:
  - the target user (unless they triggered the event themselves)
  - every admin, when the template's role (or target_role) is admin/all,
    skipping the actor and any admin already notified about the same
    (event_type, entity_id) inside the dedup window.

Rows are added and flushed; the caller owns the commit.
"""

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app

from studiodesk.extensions import db
from studiodesk.models.notification import Notification
from studiodesk.models.user import User

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW_SECONDS = 300


class UnknownEventType(ValueError):
    pass


def _project_link(meta, is_admin):
    prefix = "/admin/projects" if is_admin else "/portal/projects"
    return f"{prefix}/{meta.get('entity_id')}"


def _client_project_link(meta, is_admin):
    return f"/portal/projects/{meta.get('entity_id')}"


# event_type -> template. `message` and `link` take the metadata dict
# (entity_id merged in); `link` also takes is_admin.
EVENT_TEMPLATES = {
    # Project events
    "PROJECT_CREATED": {
        "title": "New Project Created",
        "message": lambda m: f'Project "{m.get("project_name") or "Unknown"}" has been created',
        "priority": "normal",
        "role": "all",
        "link": _project_link,
    },
    "PROJECT_STATUS_CHANGED": {
        "title": "Project Status Updated",
        "message": lambda m: f'Project "{m.get("project_name")}" is now {m.get("new_status")}',
        "priority": "normal",
        "role": "client",
        "link": _client_project_link,
    },
    "PROJECT_COMPLETED": {
        "title": "Project Completed!",
        "message": lambda m: f'Your project "{m.get("project_name")}" has been completed',
        "priority": "high",
        "role": "client",
        "link": _client_project_link,
    },
    # Billing events
    "SUBSCRIPTION_ACTIVATED": {
        "title": "Subscription Activated",
        "message": lambda m: f'Subscription for "{m.get("project_name")}" is now active',
        "priority": "normal",
        "role": "client",
        "link": _client_project_link,
    },
    "SUBSCRIPTION_PAUSED": {
        "title": "Subscription Paused",
        "message": lambda m: f'Subscription for "{m.get("project_name")}" has been paused',
        "priority": "normal",
        "role": "client",
        "link": _client_project_link,
    },
    "SUBSCRIPTION_RESUMED": {
        "title": "Subscription Resumed",
        "message": lambda m: f'Subscription for "{m.get("project_name")}" has been resumed',
        "priority": "normal",
        "role": "client",
        "link": _client_project_link,
    },
    "SUBSCRIPTION_CANCELED": {
        "title": "Subscription Canceled",
        "message": lambda m: f'Subscription for "{m.get("project_name")}" has been canceled',
        "priority": "high",
        "role": "all",
        "link": _project_link,
    },
    "PAYMENT_FAILED": {
        "title": "Payment Failed",
        "message": lambda m: (
            f'Payment failed for "{m.get("project_name")}". '
            "Please update your payment method."
        ),
        "priority": "high",
        "role": "all",
        "link": _project_link,
    },
    "PAYMENT_REQUIRES_ATTENTION": {
        "title": "Payment Requires Attention",
        "message": lambda m: f'Payment for "{m.get("project_name")}" requires your attention',
        "priority": "high",
        "role": "client",
        "link": _client_project_link,
    },
    # System events
    "WEBHOOK_FAILURE": {
        "title": "Webhook Failed",
        "message": lambda m: (
            f'Webhook "{m.get("webhook_name") or "Unknown"}" failed: '
            f'{m.get("error") or "Unknown error"}'
        ),
        "priority": "high",
        "role": "admin",
        "link": None,
    },
    "DATA_INCONSISTENCY_DETECTED": {
        "title": "Data Inconsistency",
        "message": lambda m: f'Data mismatch detected: {m.get("description") or "Unknown"}',
        "priority": "high",
        "role": "admin",
        "link": None,
    },
    "MANUAL_INTERVENTION_REQUIRED": {
        "title": "Manual Intervention Required",
        "message": lambda m: m.get("reason") or "Manual action is required",
        "priority": "high",
        "role": "admin",
        "link": None,
    },
}


def _dedup_window():
    try:
        seconds = current_app.config.get(
            "NOTIFICATION_DEDUP_WINDOW_SECONDS", DEFAULT_DEDUP_WINDOW_SECONDS
        )
    except RuntimeError:
        # Outside an app context (e.g. a bare unit test)
        seconds = DEFAULT_DEDUP_WINDOW_SECONDS
    return timedelta(seconds=seconds)


def _recently_notified(user_id, event_type, entity_id, since):
    query = Notification.query.filter(
        Notification.user_id == user_id,
        Notification.event_type == event_type,
        Notification.created_at >= since,
    )
    if entity_id is None:
        query = query.filter(Notification.entity_id.is_(None))
    else:
        query = query.filter(Notification.entity_id == entity_id)
    return db.session.query(query.exists()).scalar()


def emit_event(event_type, entity_type=None, entity_id=None, metadata=None,
               actor_id=None, target_user_id=None, target_role=None):
    """Create notifications for one event.

    Returns the list of Notification rows added to the session.
    Raises UnknownEventType for event types without a template.
    """
    template = EVENT_TEMPLATES.get(event_type)
    if template is None:
        raise UnknownEventType(f"Unknown event type: {event_type}")

    meta = dict(metadata or {})
    meta["entity_id"] = entity_id

    title = template["title"]
    message = template["message"](meta)
    priority = template["priority"]
    link_fn = template["link"]
    client_link = link_fn(meta, False) if link_fn else None
    admin_link = link_fn(meta, True) if link_fn else None
    role = target_role or template["role"]

    created = []

    def _add(user_id, link, recipient_role):
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            event_type=event_type,
            priority=priority,
            link=link,
            role=recipient_role,
            actor_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata_=meta,
            read=False,
        )
        db.session.add(notification)
        created.append(notification)

    if target_user_id and target_user_id != actor_id:
        _add(target_user_id, client_link, "client")

    if role in ("admin", "all"):
        since = datetime.now(timezone.utc) - _dedup_window()
        admins = User.query.filter_by(is_admin=True).all()
        for admin in admins:
            if admin.id == actor_id:
                continue
            if _recently_notified(admin.id, event_type, entity_id, since):
                logger.info(
                    f"Skipping duplicate {event_type} notification for admin {admin.id}"
                )
                continue
            _add(admin.id, admin_link, "admin")

    if created:
        db.session.flush()

    logger.info(f"{event_type}: {len(created)} notifications created")
    return created


def emit_event_safely(event_type, **kwargs):
    """emit_event + commit, for side-effect notifications.

    Call only after the primary work is committed: on any failure the
    session is rolled back and the error logged, never raised.
    """
    try:
        created = emit_event(event_type, **kwargs)
        db.session.commit()
        return created
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to emit {event_type}: {e}", exc_info=True)
        return []
