import logging

import pymysql
from flask import jsonify, render_template, request
from flask_wtf.csrf import CSRFError
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

logger = logging.getLogger(__name__)

# PyMySQL error codes
DUPLICATE_ENTRY = 1062
CONNECTION_ERROR_CODES = {2003, 2006, 2013, 2055}


class GradebookError(Exception):
    """Base class for errors that carry a user-facing message and HTTP status."""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message=None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class ValidationError(GradebookError):
    status_code = 400
    message = "Invalid input."


class ForbiddenError(GradebookError):
    status_code = 403
    message = "Access denied."


class NotFoundError(GradebookError):
    status_code = 404
    message = "Not found."


class ConflictError(GradebookError):
    status_code = 409
    message = "Entry already exists."


class StoreUnavailableError(GradebookError):
    status_code = 503
    message = "Database temporarily unavailable. Please try again."


def is_duplicate_entry(exc) -> bool:
    if isinstance(exc, ConflictError):
        return True
    if isinstance(exc, pymysql.err.IntegrityError):
        return bool(exc.args) and exc.args[0] == DUPLICATE_ENTRY
    return False


def is_connection_error(exc) -> bool:
    if isinstance(exc, StoreUnavailableError):
        return True
    if isinstance(exc, (pymysql.err.OperationalError, pymysql.err.InterfaceError)):
        # InterfaceError(0, "") is raised on a closed connection
        if not exc.args:
            return True
        return exc.args[0] in CONNECTION_ERROR_CODES or exc.args[0] == 0
    return isinstance(exc, (ConnectionError, TimeoutError))


def wants_json() -> bool:
    if request.path.startswith("/student/") and request.path != "/student/":
        return True
    best = request.accept_mimetypes.best_match(["application/json", "text/html"])
    return best == "application/json" and not request.accept_mimetypes["text/html"]


def error_response(message: str, status: int, back_url=None):
    """Render an error as JSON or as the error page, depending on the client."""
    if wants_json():
        return jsonify({"error": message}), status
    return (
        render_template(
            "error.html", message=message, status=status, back_url=back_url
        ),
        status,
    )


def register_error_handlers(app):
    @app.errorhandler(GradebookError)
    def _handle_gradebook_error(e):
        if e.status_code >= 500:
            logger.error(f"{type(e).__name__} on {request.method} {request.path}")
        return error_response(e.message, e.status_code)

    @app.errorhandler(CSRFError)
    def _handle_csrf_error(e):
        logger.warning(f"CSRF validation failed on {request.path}: {e.description}")
        return error_response("Invalid CSRF token.", 403)

    @app.errorhandler(RequestEntityTooLarge)
    def _handle_too_large(e):
        return error_response("Upload too large.", 413)

    @app.errorhandler(404)
    def _handle_not_found(e):
        return error_response("Not found.", 404)

    @app.errorhandler(405)
    def _handle_method_not_allowed(e):
        return error_response("Method not allowed.", 405)

    @app.errorhandler(Exception)
    def _handle_unexpected(e):
        if isinstance(e, HTTPException):
            return error_response(e.description or e.name, e.code or 500)
        if is_connection_error(e):
            logger.error(f"Store unavailable on {request.path}: {str(e)}")
            return error_response(StoreUnavailableError.message, 503)
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return error_response("Internal server error", 500)
