"""Admin blueprint — /admin/*

Operator-only maintenance endpoints.
All routes protected by @admin_required decorator.

Route Map:
  POST /admin/subscriptions/backfill   — Link historical subscription projects
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user

from studiodesk.decorators import admin_required
from studiodesk.services.backfill_service import backfill_subscriptions

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


@admin_bp.route("/subscriptions/backfill", methods=["POST"])
@admin_required
def backfill():
    """Reconcile subscription projects missing a Stripe subscription id.

    Body: {dryRun?=true, projectId?}. Dry run reports matches without writing.
    """
    data = request.get_json(silent=True) or {}
    dry_run = data.get("dryRun", True) is not False
    project_id = data.get("projectId")

    logger.info(
        f"Backfill requested by {current_user.email} "
        f"(dry_run={dry_run}, project={project_id or 'all'})"
    )
    return jsonify(backfill_subscriptions(dry_run=dry_run, project_id=project_id)), 200
