import logging
from functools import wraps

from flask import redirect, request, session, url_for

from utils.errors import error_response

logger = logging.getLogger(__name__)

ROLE_HOME_ENDPOINTS = {
    "admin": "admin.home",
    "teacher": "teacher.classes",
    "student": "student.dashboard",
}

# Reachable while a password change is pending
PASSWORD_CHANGE_EXEMPT = {"auth.force_password_change", "auth.logout", "static"}


def home_url(role):
    endpoint = ROLE_HOME_ENDPOINTS.get(role)
    return url_for(endpoint) if endpoint else url_for("auth.login")


def login_required(f):
    """Redirect anonymous visitors to /login; refuse sessions of inactive accounts."""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        if "user_id" not in session:
            return redirect(url_for("auth.login"))
        if session.get("status") != "active":
            logger.warning(f"Inactive account {session.get('user_id')} refused on {request.path}")
            return error_response("Account is not active.", 403)
        return f(*args, **kwargs)

    return decorated_function


def role_required(role):
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated_function(*args, **kwargs):
            if session.get("role") != role:
                logger.warning(
                    f"User {session.get('user_id')} ({session.get('role')}) denied {request.path}"
                )
                return error_response("Access denied.", 403)
            return f(*args, **kwargs)

        return decorated_function

    return decorator


def enforce_password_change():
    """before_request hook: keep flagged sessions on the password change page."""
    if not session.get("must_change_password"):
        return None
    if request.endpoint in PASSWORD_CHANGE_EXEMPT:
        return None
    return redirect(url_for("auth.force_password_change"))
