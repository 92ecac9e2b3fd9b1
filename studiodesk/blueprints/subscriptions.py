"""Subscriptions blueprint — /api/subscriptions/*

Client-facing subscription actions. Every response uses the envelope
{ok: true, ...} / {ok: false, code, message, requestId}.
"""

import logging

from flask import Blueprint, g, jsonify, request
from flask_login import current_user

from studiodesk.services.subscription_service import (
    ERROR_STATUS,
    CancellationError,
    cancel_project_subscription,
)

logger = logging.getLogger(__name__)

subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/api/subscriptions")


def _error(code, message, debug=None):
    body = {
        "ok": False,
        "code": code,
        "message": message,
        "requestId": g.get("request_id"),
    }
    if debug is not None:
        body["debug"] = debug
    return jsonify(body), ERROR_STATUS.get(code, 500)


# ──────────────────────────────────────────────
# POST /api/subscriptions/cancel
# ──────────────────────────────────────────────

@subscriptions_bp.route("/cancel", methods=["POST"])
def cancel_subscription():
    """Cancel the subscription behind one of the caller's projects.

    Body: {project_id, cancel_at_period_end?=true, cancel_reason?, debug?=false}
    """
    # Auth is checked here rather than by decorator so the 401 uses the envelope
    if not current_user.is_authenticated:
        return _error("UNAUTHORIZED", "Authentication required")

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error("VALIDATION_ERROR", "Request body must be a JSON object")

    # An explicit null keeps the default
    cancel_at_period_end = data.get("cancel_at_period_end")
    if cancel_at_period_end is None:
        cancel_at_period_end = True

    try:
        result = cancel_project_subscription(
            current_user,
            data.get("project_id"),
            cancel_at_period_end=cancel_at_period_end,
            cancel_reason=data.get("cancel_reason"),
            debug=data.get("debug") is True,
        )
    except CancellationError as e:
        logger.warning(f"Cancel failed for user {current_user.id}: {e.code} {e.message}")
        return _error(e.code, e.message, e.debug)

    result["requestId"] = g.get("request_id")
    return jsonify(result), 200
