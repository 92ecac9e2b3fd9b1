"""
Custom route decorators for access control.

- api_login_required: bearer-token caller required (JSON 401 otherwise).
- admin_required: caller must also have is_admin=True (JSON 403 otherwise).
"""

from functools import wraps

from flask import abort
from flask_login import current_user, login_required


def api_login_required(f):
    """Require an authenticated, active caller."""

    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        if not current_user.is_active:
            abort(403)
        return f(*args, **kwargs)

    return decorated


def admin_required(f):
    """Require login + is_admin flag."""

    @wraps(f)
    @login_required
    def decorated(*args, **kwargs):
        if not current_user.is_admin:
            abort(403)
        return f(*args, **kwargs)

    return decorated
