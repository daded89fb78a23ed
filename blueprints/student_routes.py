import logging
import os
from datetime import date, datetime, time

from flask import (
    Blueprint,
    Response,
    current_app,
    jsonify,
    render_template,
    request,
    send_file,
    session,
)

from utils.auth_utils import role_required
from utils.errors import NotFoundError, ValidationError
from utils.exports import build_grade_report_lines, build_grades_csv, build_pdf
from utils.grade_aggregation import (
    compute_averages,
    compute_class_averages,
    normalize_grade_row,
    normalize_special_row,
    to_number,
)
from utils.store import get_store
from utils.uploads import resolve_attachment_path, safe_download_name

logger = logging.getLogger(__name__)


student_bp = Blueprint("student", __name__)


def _jsonable(row):
    out = {}
    for key, value in row.items():
        if isinstance(value, (datetime, date)):
            out[key] = value.isoformat()
        else:
            out[key] = value
    return out


def _enrollments():
    return get_store().list_enrollments_by_email(session.get("email"))


def _student_ids(enrollments):
    return [e["id"] for e in enrollments]


def _collect_grades(enrollments):
    """Normalized rows for every grade and special assessment of the signed-in student."""
    store = get_store()
    ids = _student_ids(enrollments)
    rows = [normalize_grade_row(g) for g in store.list_grades_for_students(ids)]
    rows += [
        normalize_special_row(s)
        for s in store.list_special_assessments_for_students(ids)
    ]
    return _sort_rows(rows, "date")


def _sort_rows(rows, sort):
    if sort == "value":
        return sorted(
            rows,
            key=lambda r: (r["value"] is None, r["value"] if r["value"] is not None else 0),
        )
    return sorted(
        rows, key=lambda r: r["graded_at"] or datetime.min, reverse=True
    )


def _parse_day(value, end_of_day=False):
    if not value:
        return None
    try:
        day = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"Invalid date: {value}. Use YYYY-MM-DD.")
    return datetime.combine(day, time.max if end_of_day else time.min)


def _filter_rows(rows, subject=None, start=None, end=None):
    if subject:
        rows = [r for r in rows if r["subject"] == subject]
    if start:
        rows = [r for r in rows if r["graded_at"] and r["graded_at"] >= start]
    if end:
        rows = [r for r in rows if r["graded_at"] and r["graded_at"] <= end]
    return rows


def _tasks(enrollments):
    store = get_store()
    class_ids = [e["class_id"] for e in enrollments]
    by_class = {e["class_id"]: e for e in enrollments}
    grades = store.list_grades_for_students(_student_ids(enrollments))
    graded = {(g["class_id"], g["template_id"]): g for g in grades}
    tasks = []
    for template in store.list_templates(class_ids):
        grade = graded.get((template["class_id"], template["id"]))
        enrollment = by_class[template["class_id"]]
        tasks.append(
            {
                "template_id": template["id"],
                "name": template["name"],
                "category": template["category"],
                "weight": to_number(template["weight"]),
                "date": template["date"],
                "description": template["description"],
                "class_id": template["class_id"],
                "class_name": enrollment["class_name"],
                "subject": enrollment["class_subject"],
                "status": "graded" if grade else "open",
                "grade": to_number(grade["grade"]) if grade else None,
            }
        )
    return tasks


def _returns(enrollments):
    return [
        {
            "grade_id": g["id"],
            "template_name": g["template_name"],
            "subject": g["class_subject"],
            "class_name": g["class_name"],
            "grade": to_number(g["grade"]),
            "created_at": g["created_at"],
            "attachment_name": g["attachment_original_name"],
            "has_attachment": bool(g["attachment_path"]),
            "external_link": g["external_link"],
        }
        for g in get_store().list_grades_for_students(_student_ids(enrollments))
        if g["attachment_path"] or g["external_link"]
    ]


def _class_averages(enrollments):
    """Unweighted peer averages per class, grouped by template / assessment name."""
    store = get_store()
    result = []
    for enrollment in enrollments:
        class_id = enrollment["class_id"]
        rows = [
            {"subject": g["template_name"], "value": g["grade"]}
            for g in store.list_grades_for_class(class_id)
        ]
        rows += [
            {"subject": s["name"], "value": s["grade"]}
            for s in store.list_special_assessments_for_class(class_id)
        ]
        result.append(
            {
                "class_id": class_id,
                "class_name": enrollment["class_name"],
                "subject": enrollment["class_subject"],
                "averages": compute_class_averages(rows),
            }
        )
    return result


def _notifications(enrollments):
    return get_store().list_notifications(_student_ids(enrollments))


# Route: GET "/student"
# Used by: login redirect for students
# Purpose: Dashboard with grades, averages, tasks, returns and notifications.
@student_bp.route("/student", endpoint="dashboard")
@role_required("student")
def dashboard():
    enrollments = _enrollments()
    grades = _collect_grades(enrollments)
    data = {
        "grades": [_jsonable(r) for r in grades],
        "averages": compute_averages(grades),
        "tasks": [_jsonable(t) for t in _tasks(enrollments)],
        "returns": [_jsonable(r) for r in _returns(enrollments)],
        "classAverages": _class_averages(enrollments),
        "notifications": [_jsonable(n) for n in _notifications(enrollments)],
    }
    return render_template(
        "student/dashboard.html", enrollments=enrollments, data=data
    )


# API: GET "/student/profile"
# Used by: student dashboard script
# Purpose: E-mail, display name and enrolled classes.
@student_bp.route("/student/profile", endpoint="profile")
@role_required("student")
def profile():
    enrollments = _enrollments()
    return jsonify(
        {
            "email": session.get("email"),
            "name": enrollments[0]["name"] if enrollments else None,
            "classes": [
                {
                    "id": e["class_id"],
                    "name": e["class_name"],
                    "subject": e["class_subject"],
                    "school_year": e["school_year"],
                }
                for e in enrollments
            ],
        }
    )


# API: GET "/student/grades"
# Used by: student dashboard filters
# Purpose: Grades filtered by subject and date range, sorted by value or date.
@student_bp.route("/student/grades", endpoint="grades")
@role_required("student")
def grades():
    subject = request.args.get("subject", "").strip() or None
    start = _parse_day(request.args.get("startDate", "").strip())
    end = _parse_day(request.args.get("endDate", "").strip(), end_of_day=True)
    sort = request.args.get("sort", "date")
    rows = _filter_rows(_collect_grades(_enrollments()), subject, start, end)
    rows = _sort_rows(rows, sort)
    return jsonify(
        {"grades": [_jsonable(r) for r in rows], "averages": compute_averages(rows)}
    )


# API: GET "/student/tasks"
# Used by: student dashboard
# Purpose: Templates of the student's classes with graded/open status.
@student_bp.route("/student/tasks", endpoint="tasks")
@role_required("student")
def tasks():
    return jsonify({"tasks": [_jsonable(t) for t in _tasks(_enrollments())]})


# API: GET "/student/returns"
# Used by: student dashboard
# Purpose: Graded work that came back with a file or link.
@student_bp.route("/student/returns", endpoint="returns")
@role_required("student")
def returns():
    return jsonify({"returns": [_jsonable(r) for r in _returns(_enrollments())]})


# Route: GET "/student/returns/<gid>/attachment"
# Used by: download links on the student dashboard
# Purpose: Stream a returned attachment that belongs to the student.
@student_bp.route(
    "/student/returns/<int:grade_id>/attachment", endpoint="return_attachment"
)
@role_required("student")
def return_attachment(grade_id):
    enrollments = _enrollments()
    grade = get_store().get_grade(grade_id)
    if grade is None or grade["student_id"] not in _student_ids(enrollments):
        raise NotFoundError("Attachment not found.")
    if not grade["attachment_path"]:
        raise NotFoundError("Attachment not found.")
    path = resolve_attachment_path(
        current_app.config["GRADE_ATTACHMENT_DIR"], grade["attachment_path"]
    )
    if path is None:
        logger.warning(f"Attachment path of grade {grade_id} escapes the storage root")
        raise ValidationError("Invalid attachment path.")
    if not os.path.isfile(path):
        raise NotFoundError("Attachment file is missing.")
    return send_file(
        path,
        mimetype=grade["attachment_mime"] or "application/octet-stream",
        as_attachment=True,
        download_name=safe_download_name(grade["attachment_original_name"]),
    )


# API: GET "/student/class-averages"
# Used by: student dashboard peer comparison
# Purpose: Unweighted class averages per assessment.
@student_bp.route("/student/class-averages", endpoint="class_averages")
@role_required("student")
def class_averages():
    return jsonify({"classAverages": _class_averages(_enrollments())})


# API: GET "/student/notifications"
# Used by: student dashboard
# Purpose: Grade notifications, newest first.
@student_bp.route("/student/notifications", endpoint="notifications")
@role_required("student")
def notifications():
    rows = _notifications(_enrollments())
    return jsonify(
        {
            "notifications": [_jsonable(n) for n in rows],
            "unread": sum(1 for n in rows if n["read_at"] is None),
        }
    )


# API: POST "/student/notifications/<id>/read"
# Used by: student dashboard (sends X-CSRF-Token header)
# Purpose: Mark a notification read; the first read time is kept.
@student_bp.route(
    "/student/notifications/<int:notification_id>/read",
    methods=["POST"],
    endpoint="mark_notification_read",
)
@role_required("student")
def mark_notification_read(notification_id):
    ids = _student_ids(_enrollments())
    if not get_store().mark_notification_read(notification_id, ids):
        raise NotFoundError("Notification not found.")
    return jsonify({"success": True})


# Route: GET "/student/grades.csv"
# Used by: export link on the student dashboard
# Purpose: Spreadsheet-safe CSV export of all grades.
@student_bp.route("/student/grades.csv", endpoint="grades_csv")
@role_required("student")
def grades_csv():
    rows = _collect_grades(_enrollments())
    body = build_grades_csv(rows, current_app.config["EXPORT_DATE_FORMAT"])
    logger.info(f"Student {session['user_id']} exported {len(rows)} grades as CSV")
    return Response(
        body,
        content_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": "attachment; filename=grades.csv"},
    )


# Route: GET "/student/grades.pdf"
# Used by: export link on the student dashboard
# Purpose: Single-page text PDF of all grades.
@student_bp.route("/student/grades.pdf", endpoint="grades_pdf")
@role_required("student")
def grades_pdf():
    enrollments = _enrollments()
    rows = _collect_grades(enrollments)
    lines = build_grade_report_lines(
        enrollments[0]["name"] if enrollments else session.get("email"),
        [e["class_name"] for e in enrollments],
        sorted({e["class_subject"] for e in enrollments if e["class_subject"]}),
        rows,
        current_app.config["EXPORT_DATE_FORMAT"],
    )
    logger.info(f"Student {session['user_id']} exported {len(rows)} grades as PDF")
    return Response(
        build_pdf(lines),
        content_type="application/pdf",
        headers={"Content-Disposition": "attachment; filename=grades.pdf"},
    )
