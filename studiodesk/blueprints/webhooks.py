"""Webhooks blueprint — /stripe/webhooks

Receives Stripe webhook events.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from studiodesk.services.stripe_service import (
    WebhookProcessingError,
    handle_webhook_event,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


@webhooks_bp.route("/webhooks", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET
    3. Pass to handle_webhook_event (idempotent via stripe_events table)
    4. Return 200 to acknowledge receipt, 400 so Stripe retries on failure
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header or not current_app.config.get("STRIPE_WEBHOOK_SECRET"):
        logger.error("Webhook received without signature header or configured secret")
        return jsonify({"error": "Webhook misconfigured"}), 400

    # --- Verify signature ---
    try:
        event = verify_webhook_signature(payload, sig_header)
    except Exception as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400

    # --- Process event (idempotent) ---
    try:
        result = handle_webhook_event(event)
    except WebhookProcessingError as e:
        logger.error(f"Webhook processing failed: {e}")
        return jsonify({"error": "Webhook error"}), 400

    if result == "duplicate":
        return jsonify({"received": True, "duplicate": True}), 200
    return jsonify({"received": True}), 200
