"""Auth service — password checks and signed API tokens.

Tokens are itsdangerous URLSafeTimedSerializer dumps of the user id,
signed with SECRET_KEY. They are sent as `Authorization: Bearer <token>`
and resolved by the login manager's request_loader.
"""

import logging

from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from werkzeug.security import check_password_hash

from studiodesk.extensions import db
from studiodesk.models.user import User

logger = logging.getLogger(__name__)

TOKEN_SALT = "studiodesk-api-token"


def _serializer():
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=TOKEN_SALT)


def issue_token(user):
    return _serializer().dumps({"uid": user.id})


def load_token(token):
    """Return the User for a token, or None if invalid, expired or inactive."""
    max_age = current_app.config.get("AUTH_TOKEN_MAX_AGE")
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        logger.info("Rejected expired API token")
        return None
    except BadSignature:
        return None

    user_id = data.get("uid") if isinstance(data, dict) else None
    if not user_id:
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user


def user_from_auth_header(header):
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return load_token(token.strip())


def authenticate(email, password):
    """Check credentials. Returns the User or None."""
    if not email or not password:
        return None
    user = User.query.filter_by(email=email.lower().strip()).first()
    if user is None or not user.password_hash:
        return None
    if not check_password_hash(user.password_hash, password):
        return None
    if not user.is_active:
        logger.warning(f"Login attempt for deactivated user {user.id}")
        return None
    return user
