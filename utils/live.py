import logging

from flask import session
from flask_socketio import SocketIO, emit, join_room

from utils.store import get_store

_socketio: SocketIO | None = None
_logger = logging.getLogger(__name__)


def initialize_live(socketio: SocketIO, logger: logging.Logger | None = None):
    """Provide socketio and optional logger to this module."""
    global _socketio, _logger
    _socketio = socketio
    if logger is not None:
        _logger = logger


def student_room(student_id) -> str:
    return f"student-{student_id}"


def register_socketio_handlers(socketio: SocketIO):
    """Register Socket.IO event handlers. Call after socketio.init_app(app)."""

    @socketio.on("connect")
    def _on_connect(auth=None):
        if "user_id" not in session or session.get("status") != "active":
            return False
        emit("connected", {"message": "connected"})

    @socketio.on("subscribe_notifications")
    def _on_subscribe_notifications(data=None):
        if session.get("role") != "student":
            emit("error", {"message": "only students receive grade notifications"})
            return
        enrollments = get_store().list_enrollments_by_email(session.get("email"))
        for enrollment in enrollments:
            join_room(student_room(enrollment["id"]))
        emit("subscribed", {"enrollments": [e["id"] for e in enrollments]})


def emit_grade_notification(student_id, payload: dict):
    """Push a notification to the student's room; failures never reach the caller."""
    if _socketio is None:
        return
    try:
        _socketio.emit("grade_notification", payload, room=student_room(student_id))
    except Exception as e:
        _logger.error(f"Failed to emit notification for student {student_id}: {str(e)}")
