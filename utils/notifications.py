import logging
from datetime import datetime

from flask import current_app
from flask_mail import Message

from utils.live import emit_grade_notification

logger = logging.getLogger(__name__)

GRADE_RECORDED = "New grade recorded."
SPECIAL_ASSESSMENT_RECORDED = "New special assessment recorded."


def _send_mail(recipient, message):
    mail = current_app.extensions.get("mail")
    if mail is None:
        return
    msg = Message(
        subject="Gradebook: " + message,
        recipients=[recipient],
        body=f"{message}\n\nSign in to the gradebook to see the details.",
    )
    try:
        mail.send(msg)
        logger.info(f"Notification mail sent to {recipient}")
    except Exception as e:
        logger.error(f"Failed to send notification mail to {recipient}: {str(e)}")


def notify_student(store, student, message, kind="grade"):
    """Record a notification for an enrollment, push it live and optionally mail it."""
    notification = store.create_notification(student["id"], message, kind)
    created_at = notification.get("created_at") if notification else None
    emit_grade_notification(
        student["id"],
        {
            "id": notification.get("id") if notification else None,
            "message": message,
            "type": kind,
            "created_at": created_at.isoformat()
            if isinstance(created_at, datetime)
            else created_at,
        },
    )
    if current_app.config.get("NOTIFY_BY_EMAIL") and student.get("email"):
        _send_mail(student["email"], message)
    return notification
