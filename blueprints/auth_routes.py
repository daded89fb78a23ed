import logging

from flask import (
    Blueprint,
    current_app,
    redirect,
    render_template,
    request,
    session,
    url_for,
)

from utils.auth_utils import home_url, login_required
from utils.passwords import (
    hash_password,
    needs_rehash,
    password_policy_error,
    verify_password,
)
from utils.session_store import destroy_session, regenerate_session
from utils.store import get_store

logger = logging.getLogger(__name__)


# Blueprint: auth (no url_prefix to preserve original paths)
auth_bp = Blueprint("auth", __name__)

LOGIN_FAILED = "Login failed."
LOGIN_MISSING_FIELDS = "Please enter email and password."
LOGIN_RATE_LIMITED = "Too many login attempts. Please try again later."


def _limiter():
    return current_app.extensions["login_limiter"]


def _render_login(error, status, email=""):
    return render_template("login.html", error=error, email=email), status


# Route: GET "/"
# Used by: direct navigation; sends each role to its start page
# Purpose: Entry point after login.
@auth_bp.route("/", endpoint="index")
def index():
    if "user_id" not in session:
        return redirect(url_for("auth.login"))
    return redirect(home_url(session.get("role")))


# Route: GET/POST "/login"
# Used by: login.html (form posts here); protected routes redirect here when anonymous
# Purpose: Authenticate any role; throttled per client address and e-mail.
@auth_bp.route("/login", methods=["GET", "POST"], endpoint="login")
def login():
    if request.method == "GET":
        if "user_id" in session and not session.get("must_change_password"):
            return redirect(home_url(session.get("role")))
        return render_template("login.html", error=None, email="")

    email = request.form.get("email", "").strip().lower()
    password = request.form.get("password", "")
    limiter = _limiter()
    key = limiter.build_key(request.remote_addr, email)

    if limiter.is_limited(key):
        logger.warning(f"Login rate limited for {key}")
        return _render_login(LOGIN_RATE_LIMITED, 429, email)

    if not email or not password:
        limiter.record_failure(key)
        return _render_login(LOGIN_MISSING_FIELDS, 400, email)

    store = get_store()
    user = store.get_user_by_email(email)
    password_ok = verify_password(password, user["password_hash"] if user else None)

    if not user or not password_ok or user["status"] != "active":
        attempts = limiter.record_failure(key)
        reason = "unknown user" if not user else (
            "bad password" if not password_ok else f"status {user['status']}"
        )
        logger.warning(f"Login failed for {email} ({reason}, attempt {attempts})")
        return _render_login(LOGIN_FAILED, 401, email)

    limiter.reset(key)
    if needs_rehash(user["password_hash"]):
        store.set_password(
            user["id"], hash_password(password), bool(user["must_change_password"])
        )
        logger.info(f"Rehashed password for user {user['id']}")

    regenerate_session()
    session["user_id"] = user["id"]
    session["email"] = user["email"]
    session["role"] = user["role"]
    session["status"] = user["status"]
    session["must_change_password"] = bool(user["must_change_password"])
    session.permanent = True
    store.record_login(user["id"])

    logger.info(f"User {user['id']} ({user['role']}) logged in")
    if session["must_change_password"]:
        return redirect(url_for("auth.force_password_change"))
    return redirect(home_url(user["role"]))


# Route: POST "/logout"
# Used by: logout form in base.html
# Purpose: Destroy the server-side session.
@auth_bp.route("/logout", methods=["POST"], endpoint="logout")
def logout():
    user_id = session.get("user_id")
    destroy_session()
    if user_id:
        logger.info(f"User {user_id} logged out")
    return redirect(url_for("auth.login"))


# Route: GET/POST "/force-password-change"
# Used by: force_password_change.html; every route redirects here while the flag is set
# Purpose: Replace an initial or reset password before anything else.
@auth_bp.route(
    "/force-password-change", methods=["GET", "POST"], endpoint="force_password_change"
)
@login_required
def force_password_change():
    if not session.get("must_change_password"):
        return redirect(home_url(session.get("role")))
    if request.method == "GET":
        return render_template("force_password_change.html", error=None)

    password = request.form.get("password", "")
    confirm = request.form.get("confirm", "")
    if password != confirm:
        return render_template(
            "force_password_change.html", error="Passwords do not match."
        ), 400
    policy_error = password_policy_error(
        password, current_app.config["MIN_PASSWORD_LENGTH"]
    )
    if policy_error:
        return render_template("force_password_change.html", error=policy_error), 400

    get_store().set_password(session["user_id"], hash_password(password), False)
    session["must_change_password"] = False
    logger.info(f"User {session['user_id']} changed their password")
    return redirect(home_url(session.get("role")))
