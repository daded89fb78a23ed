import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()

DEV_SECRET_KEY = "dev-secret-key-change-in-production"


def _flag(name, default="false"):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _int(name, default):
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


class Config:
    ENVIRONMENT = os.getenv("ENVIRONMENT", "local").lower()
    IS_PRODUCTION = ENVIRONMENT in ("production", "online")
    SECRET_KEY = os.getenv("SESSION_SECRET") or os.getenv("SECRET_KEY") or DEV_SECRET_KEY

    DATA_BACKEND = os.getenv("DATA_BACKEND", "mysql").lower()
    SESSION_BACKEND = os.getenv("SESSION_BACKEND", DATA_BACKEND).lower()

    # Session cookie
    SESSION_COOKIE_NAME = "sid"
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = IS_PRODUCTION
    PERMANENT_SESSION_LIFETIME = timedelta(hours=1)
    SESSION_REFRESH_EACH_REQUEST = True

    # CSRF (Flask-WTF)
    WTF_CSRF_FIELD_NAME = "_csrf"
    WTF_CSRF_HEADERS = ["X-CSRF-Token", "csrf-token", "X-CSRFToken"]
    WTF_CSRF_TIME_LIMIT = None

    # Login throttling and password policy
    LOGIN_RATE_LIMIT_WINDOW = _int("LOGIN_RATE_LIMIT_WINDOW", 15 * 60)
    LOGIN_RATE_LIMIT_MAX = _int("LOGIN_RATE_LIMIT_MAX", 5)
    MIN_PASSWORD_LENGTH = _int("MIN_PASSWORD_LENGTH", 10)
    INITIAL_PASSWORD = os.getenv("INITIAL_PASSWORD") or None

    # Grade attachments
    GRADE_ATTACHMENT_DIR = os.getenv("GRADE_ATTACHMENT_DIR", "uploads/grades")
    GRADE_FILE_MAX_MB = _int("GRADE_FILE_MAX_MB", 10)

    EXPORT_DATE_FORMAT = os.getenv("EXPORT_DATE_FORMAT", "%d.%m.%Y")
    DEFAULT_SCHOOL_YEAR = os.getenv("DEFAULT_SCHOOL_YEAR", "2024/25")

    # Seeding
    SEED_ADMIN = _flag("SEED_ADMIN")
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
    ADMIN_PASS = os.getenv("ADMIN_PASS")
    SEED_DEMO = _flag("SEED_DEMO")

    # Mail (can be overridden by environment variables)
    NOTIFY_BY_EMAIL = _flag("NOTIFY_BY_EMAIL")
    MAIL_SERVER = os.getenv("MAIL_SERVER", "smtp.gmail.com")
    MAIL_PORT = _int("MAIL_PORT", 587)
    MAIL_USE_TLS = _flag("MAIL_USE_TLS", "true")
    MAIL_USE_SSL = _flag("MAIL_USE_SSL")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", MAIL_USERNAME)
