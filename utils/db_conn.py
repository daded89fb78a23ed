import os
import logging
import threading
import time
from typing import Optional

import pymysql
from flask import Flask
from dotenv import load_dotenv

from models import db

# Configure logging for database operations
logger = logging.getLogger(__name__)


def get_db_settings() -> dict:
    """Connection settings for the configured ENVIRONMENT (local or online/production)."""
    load_dotenv()
    environment = os.getenv("ENVIRONMENT", "local").lower()

    if environment == "local":
        prefix = "LOCAL_DB_"
    elif environment in ("production", "online"):
        prefix = "ONLINE_DB_"
    else:
        raise ValueError(
            f"Invalid ENVIRONMENT value: {environment}. Must be 'local' or 'production'/'online'"
        )

    return {
        "environment": environment,
        "host": os.getenv(f"{prefix}HOST", "localhost"),
        "port": int(os.getenv(f"{prefix}PORT", "3306")),
        "user": os.getenv(f"{prefix}USER", "root"),
        "password": os.getenv(f"{prefix}PASSWORD", ""),
        "database": os.getenv(f"{prefix}NAME", "gradebook"),
    }


class DatabaseConnection:
    """Binds Flask-SQLAlchemy (schema management) to the configured MySQL database."""

    def __init__(self, app: Optional[Flask] = None):
        self.app = app
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask):
        self.app = app
        settings = get_db_settings()
        logger.info(f"Database environment: {settings['environment']}")

        db_uri = (
            f"mysql+pymysql://{settings['user']}:{settings['password']}"
            f"@{settings['host']}:{settings['port']}/{settings['database']}"
        )
        app.config.setdefault("SQLALCHEMY_DATABASE_URI", db_uri)
        app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

        # Connection pool settings to handle connection timeouts
        app.config.setdefault(
            "SQLALCHEMY_ENGINE_OPTIONS",
            {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_recycle": 3600,
                "pool_pre_ping": True,
                "pool_timeout": 30,
            },
        )
        masked = db_uri.replace(settings["password"], "***") if settings["password"] else db_uri
        logger.info(f"Database URI configured: {masked}")

        if "sqlalchemy" not in app.extensions:
            db.init_app(app)
            logger.info("Database initialized with Flask app")

    def test_connection(self) -> bool:
        """Test database connection with retry mechanism."""
        if self.app is None:
            logger.error("Database connection not initialized with Flask app")
            return False

        max_retries = 3
        retry_delay = 1

        for attempt in range(max_retries):
            try:
                logger.info(
                    f"Testing database connection... (attempt {attempt + 1}/{max_retries})"
                )
                with self.app.app_context():
                    with db.engine.connect() as connection:
                        connection.execute(db.text("SELECT 1"))
                logger.info("Database connection successful")
                return True
            except Exception as e:
                logger.warning(
                    f"Database connection failed (attempt {attempt + 1}): {str(e)}"
                )
                if attempt < max_retries - 1:
                    time.sleep(retry_delay)
                    retry_delay *= 2
        logger.error(f"Database connection failed after {max_retries} attempts")
        return False

    def create_tables(self) -> bool:
        if self.app is None:
            logger.error("Database connection not initialized with Flask app")
            return False
        try:
            logger.info("Creating database tables...")
            with self.app.app_context():
                db.create_all()
            logger.info("Database tables created successfully")
            return True
        except Exception as e:
            logger.error(f"Database table creation failed: {str(e)}")
            return False

    def init_database(self) -> bool:
        """Initialize database connection and create tables if they don't exist."""
        logger.info("Starting database initialization...")
        return self.test_connection() and self.create_tables()


# Use a thread-local container so each thread/request gets its own PyMySQL connection
_local = threading.local()


def _get_thread_conn():
    return getattr(_local, "_connection", None)


def _set_thread_conn(conn):
    setattr(_local, "_connection", conn)


def get_db_connection():
    """Get the PyMySQL connection for the current thread, reconnecting if it was lost.

    Sharing one connection across concurrent requests leads to "Packet sequence" errors,
    so each thread keeps its own.
    """
    conn = _get_thread_conn()
    if conn is None or not _is_connection_alive(conn):
        if conn is not None:
            close_db_connection()

        settings = get_db_settings()
        try:
            conn = pymysql.connect(
                host=settings["host"],
                port=settings["port"],
                user=settings["user"],
                password=settings["password"],
                database=settings["database"],
                cursorclass=pymysql.cursors.DictCursor,
                autocommit=False,
                connect_timeout=30,
                charset="utf8mb4",
            )
        except pymysql.err.MySQLError as e:
            logger.error(f"PyMySQL database connection failed: {str(e)}")
            raise
        _set_thread_conn(conn)
        logger.info(
            f"PyMySQL connection established for {settings['environment']} (thread-local)"
        )
    return conn


def _is_connection_alive(conn):
    try:
        conn.ping(reconnect=False)
        return True
    except pymysql.err.Error:
        return False


def close_db_connection():
    """Close and remove the thread-local PyMySQL connection, if present."""
    conn = _get_thread_conn()
    _set_thread_conn(None)
    if conn is None:
        return
    try:
        conn.close()
    except pymysql.err.Error as e:
        logger.warning(f"Error closing thread-local DB connection: {e}")
