import logging
import os

from flask import Flask, g, request, session
from flask_mail import Mail
from flask_socketio import SocketIO
from flask_wtf.csrf import CSRFProtect, generate_csrf

from config import DEV_SECRET_KEY, Config
from utils.auth_utils import enforce_password_change
from utils.device import detect_device
from utils.errors import error_response, register_error_handlers
from utils.live import initialize_live, register_socketio_handlers
from utils.rate_limit import LoginRateLimiter
from utils.seed import seed_admin, seed_demo
from utils.session_store import (
    MemorySessionStore,
    MySQLSessionStore,
    ServerSideSessionInterface,
)

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

csrf = CSRFProtect()
socketio = SocketIO()
mail = Mail()

# Endpoints allowed to receive multipart/form-data bodies
MULTIPART_ENDPOINTS = {"teacher.add_grade"}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}

initialize_live(socketio, logger)
register_socketio_handlers(socketio)


def reject_unexpected_multipart():
    if request.method in ("GET", "HEAD", "OPTIONS"):
        return None
    if request.mimetype != "multipart/form-data":
        return None
    if request.endpoint in MULTIPART_ENDPOINTS:
        return None
    logger.warning(f"Rejected multipart body on {request.method} {request.path}")
    return error_response("Multipart form submissions are not allowed here.", 415)


def set_security_headers(response):
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    return response


def build_store(app):
    backend = app.config["DATA_BACKEND"]
    if backend == "memory":
        from utils.memory_store import MemoryGradeStore

        return MemoryGradeStore()
    if backend == "mysql":
        from utils.db_conn import DatabaseConnection
        from utils.sql_store import MySQLGradeStore

        DatabaseConnection(app)
        return MySQLGradeStore()
    raise ValueError(f"Invalid DATA_BACKEND value: {backend}. Must be 'mysql' or 'memory'")


def build_session_store(app):
    backend = app.config.get("SESSION_BACKEND") or app.config["DATA_BACKEND"]
    if backend == "memory":
        return MemorySessionStore()
    if backend == "mysql":
        return MySQLSessionStore()
    raise ValueError(f"Invalid SESSION_BACKEND value: {backend}")


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    is_production = app.config["ENVIRONMENT"] in ("production", "online")
    if "SESSION_COOKIE_SECURE" not in (overrides or {}):
        app.config["SESSION_COOKIE_SECURE"] = is_production
    if is_production and app.config["SECRET_KEY"] == DEV_SECRET_KEY:
        raise RuntimeError("SESSION_SECRET must be set in production")
    if app.config.get("MAX_CONTENT_LENGTH") is None:
        app.config["MAX_CONTENT_LENGTH"] = (
            app.config["GRADE_FILE_MAX_MB"] + 1
        ) * 1024 * 1024
    app.config["GRADE_ATTACHMENT_DIR"] = os.path.abspath(
        app.config["GRADE_ATTACHMENT_DIR"]
    )

    app.extensions["store"] = build_store(app)
    app.extensions["login_limiter"] = LoginRateLimiter(
        window_seconds=app.config["LOGIN_RATE_LIMIT_WINDOW"],
        max_attempts=app.config["LOGIN_RATE_LIMIT_MAX"],
    )
    app.session_interface = ServerSideSessionInterface(build_session_store(app))

    # Ensure csrf_token() helper is available in all templates
    app.jinja_env.globals.update(csrf_token=generate_csrf)

    @app.context_processor
    def inject_user():
        return {
            "current_email": session.get("email"),
            "current_role": session.get("role"),
            "device_type": getattr(g, "device_type", "desktop"),
        }

    # Order matters: multipart is refused before CSRFProtect reads the body
    app.before_request(detect_device)
    app.before_request(reject_unexpected_multipart)
    csrf.init_app(app)
    app.before_request(enforce_password_change)
    app.after_request(set_security_headers)

    register_error_handlers(app)

    from blueprints.auth_routes import auth_bp
    from blueprints.admin_routes import admin_bp
    from blueprints.teacher_routes import teacher_bp, add_grade
    from blueprints.student_routes import student_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(teacher_bp)
    app.register_blueprint(student_bp)

    # The upload route checks the token itself once the multipart body is parsed
    csrf.exempt(add_grade)

    mail.init_app(app)
    socketio.init_app(app, manage_session=False)

    if app.config["SEED_ADMIN"] or app.config["SEED_DEMO"]:
        with app.app_context():
            store = app.extensions["store"]
            if app.config["SEED_ADMIN"]:
                seed_admin(store, app.config["ADMIN_EMAIL"], app.config["ADMIN_PASS"])
            if app.config["SEED_DEMO"]:
                seed_demo(store, app.config["DEFAULT_SCHOOL_YEAR"])

    logger.info(
        f"Gradebook app created (environment={app.config['ENVIRONMENT']}, "
        f"backend={app.config['DATA_BACKEND']})"
    )
    return app


app = create_app()


if __name__ == "__main__":
    logger.info("Application startup initiated")
    socketio.run(
        app,
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "5000")),
        debug=app.config["ENVIRONMENT"] == "local",
    )
