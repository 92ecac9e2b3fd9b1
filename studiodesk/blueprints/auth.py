"""Auth blueprint — /auth/*

Exchanges email + password for a bearer token used by every API route.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from studiodesk.extensions import limiter
from studiodesk.services.auth_service import authenticate, issue_token

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


# ──────────────────────────────────────────────
# POST /auth/token
# ──────────────────────────────────────────────

@auth_bp.route("/token", methods=["POST"])
@limiter.limit("10 per minute")
def token():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""

    if not email or not password:
        return jsonify({"error": "Email and password are required"}), 400

    user = authenticate(email, password)
    if user is None:
        logger.warning(f"Failed token request for {email}")
        return jsonify({"error": "Invalid email or password"}), 401

    return jsonify({
        "token": issue_token(user),
        "token_type": "Bearer",
        "expires_in": current_app.config.get("AUTH_TOKEN_MAX_AGE"),
        "user": {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "is_admin": bool(user.is_admin),
        },
    }), 200
