import logging
import re
from datetime import datetime

from flask import (
    Blueprint,
    current_app,
    flash,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from flask_wtf.csrf import validate_csrf
from wtforms.validators import ValidationError as CSRFValidationError

from utils.auth_utils import role_required
from utils.errors import (
    ConflictError,
    ForbiddenError,
    GradebookError,
    NotFoundError,
    ValidationError,
)
from utils.grade_aggregation import (
    compute_overall_class_averages,
    compute_special_statistics,
    compute_template_statistics,
    normalize_grade_row,
    normalize_special_row,
    to_number,
    weighted_average,
)
from utils.notifications import (
    GRADE_RECORDED,
    SPECIAL_ASSESSMENT_RECORDED,
    notify_student,
)
from utils.store import (
    CUSTOM_ASSESSMENT_TYPE,
    SPECIAL_ASSESSMENT_TYPES,
    TEMPLATE_CATEGORIES,
    get_store,
)
from utils.student_names import name_from_email
from utils.uploads import (
    is_allowed_upload,
    matches_signature,
    remove_attachments,
    remove_file,
    save_upload,
)

logger = logging.getLogger(__name__)


teacher_bp = Blueprint("teacher", __name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
LINK_RE = re.compile(r"^https?://\S+$", re.IGNORECASE)
MAX_LINK_LENGTH = 2048


def _teacher_id():
    return session["user_id"]


def _get_class_or_404(class_id):
    """The class, only if the signed-in teacher owns it."""
    cls = get_store().get_class(class_id, teacher_id=_teacher_id())
    if cls is None:
        raise NotFoundError("Class not found.")
    return cls


def _get_student_or_404(student_id, class_id):
    student = get_store().get_student(student_id, class_id=class_id)
    if student is None:
        raise NotFoundError("Student not found.")
    return student


def _parse_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_grade(value):
    grade = to_number(value)
    if grade is None or grade < 1 or grade > 5:
        raise ValidationError("Grade must be a number between 1 and 5.")
    return grade


def _parse_weight(value):
    weight = to_number(value)
    if weight is None or weight < 0 or weight > 100:
        raise ValidationError("Weight must be a number between 0 and 100.")
    return weight


def _attachment_root():
    return current_app.config["GRADE_ATTACHMENT_DIR"]


def _remove_attachment(stored_name):
    remove_attachments(_attachment_root(), [stored_name])


def _student_rows(grades, specials):
    return [normalize_grade_row(g) for g in grades] + [
        normalize_special_row(s) for s in specials
    ]


# Route: GET "/teacher/classes"
# Used by: login redirect for teachers; nav link in base.html
# Purpose: Classes owned by the signed-in teacher.
@teacher_bp.route("/teacher/classes", endpoint="classes")
@role_required("teacher")
def classes():
    rows = get_store().list_classes(teacher_id=_teacher_id())
    return render_template("teacher/classes.html", classes=rows)


# Route: GET/POST "/teacher/create-class"
# Used by: teacher/classes.html
# Purpose: Create a class owned by the signed-in teacher.
@teacher_bp.route(
    "/teacher/create-class", methods=["GET", "POST"], endpoint="create_class"
)
@role_required("teacher")
def create_class():
    if request.method == "GET":
        return render_template("teacher/create_class.html", error=None, form={})
    name = request.form.get("name", "").strip()
    subject = request.form.get("subject", "").strip()
    if not name or not subject:
        return (
            render_template(
                "teacher/create_class.html",
                error="Name and subject are required.",
                form=request.form,
            ),
            400,
        )
    class_id = get_store().create_class(name, subject, _teacher_id())
    logger.info(f"Teacher {_teacher_id()} created class {class_id}")
    flash("Class created.", "success")
    return redirect(url_for("teacher.classes"))


# Route: POST "/teacher/delete-class/<cid>"
# Used by: teacher/classes.html
# Purpose: Delete an owned class with everything in it.
@teacher_bp.route(
    "/teacher/delete-class/<int:class_id>", methods=["POST"], endpoint="delete_class"
)
@role_required("teacher")
def delete_class(class_id):
    _get_class_or_404(class_id)
    store = get_store()
    attachments = [g["attachment_path"] for g in store.list_grades_for_class(class_id)]
    store.delete_class(class_id)
    for stored_name in attachments:
        if stored_name:
            _remove_attachment(stored_name)
    logger.info(f"Teacher {_teacher_id()} deleted class {class_id}")
    flash("Class deleted.", "success")
    return redirect(url_for("teacher.classes"))


# Route: GET "/teacher/students/<cid>"
# Used by: teacher/classes.html
# Purpose: Students enrolled in an owned class.
@teacher_bp.route("/teacher/students/<int:class_id>", endpoint="students")
@role_required("teacher")
def students(class_id):
    cls = _get_class_or_404(class_id)
    rows = get_store().list_students(class_id)
    return render_template("teacher/students.html", cls=cls, students=rows)


# Route: GET/POST "/teacher/add-student/<cid>"
# Used by: teacher/students.html
# Purpose: Enroll an existing, active student account.
@teacher_bp.route(
    "/teacher/add-student/<int:class_id>", methods=["GET", "POST"], endpoint="add_student"
)
@role_required("teacher")
def add_student(class_id):
    cls = _get_class_or_404(class_id)
    if request.method == "GET":
        return render_template("teacher/add_student.html", cls=cls, error=None, email="")

    store = get_store()
    email = request.form.get("email", "").strip().lower()

    def fail(message):
        return (
            render_template("teacher/add_student.html", cls=cls, error=message, email=email),
            400,
        )

    if not email or not EMAIL_RE.match(email):
        return fail("Please enter a valid email address.")
    user = store.get_user_by_email(email)
    if user is None or user["role"] != "student" or user["status"] != "active":
        return fail("No active student account with this email exists.")
    try:
        student_id = store.create_student(
            name_from_email(email), email, class_id, current_app.config["DEFAULT_SCHOOL_YEAR"]
        )
    except ConflictError:
        return fail("Student is already in this class.")

    logger.info(f"Teacher {_teacher_id()} enrolled student {student_id} in class {class_id}")
    flash("Student added.", "success")
    return redirect(url_for("teacher.students", class_id=class_id))


# Route: POST "/teacher/delete-student/<cid>/<sid>"
# Used by: teacher/students.html
# Purpose: Remove an enrollment with its grades and notifications.
@teacher_bp.route(
    "/teacher/delete-student/<int:class_id>/<int:student_id>",
    methods=["POST"],
    endpoint="delete_student",
)
@role_required("teacher")
def delete_student(class_id, student_id):
    _get_class_or_404(class_id)
    _get_student_or_404(student_id, class_id)
    store = get_store()
    attachments = [
        g["attachment_path"]
        for g in store.list_grades_for_students([student_id])
        if g["attachment_path"]
    ]
    store.delete_student(student_id)
    for stored_name in attachments:
        _remove_attachment(stored_name)
    logger.info(f"Teacher {_teacher_id()} removed student {student_id} from class {class_id}")
    flash("Student removed.", "success")
    return redirect(url_for("teacher.students", class_id=class_id))


# Route: GET "/teacher/grades/<cid>"
# Used by: teacher/classes.html
# Purpose: Per-student weighted averages for a class.
@teacher_bp.route("/teacher/grades/<int:class_id>", endpoint="grades")
@role_required("teacher")
def grades(class_id):
    cls = _get_class_or_404(class_id)
    store = get_store()
    class_grades = store.list_grades_for_class(class_id)
    class_specials = store.list_special_assessments_for_class(class_id)
    overview = []
    for student in store.list_students(class_id):
        rows = _student_rows(
            [g for g in class_grades if g["student_id"] == student["id"]],
            [s for s in class_specials if s["student_id"] == student["id"]],
        )
        overview.append(
            {
                "student": student,
                "count": len(rows),
                "average": weighted_average(rows),
            }
        )
    return render_template("teacher/grades.html", cls=cls, overview=overview)


# Route: GET "/teacher/student-grades/<cid>/<sid>"
# Used by: teacher/grades.html
# Purpose: One student's grades and special assessments with the weighted average.
@teacher_bp.route(
    "/teacher/student-grades/<int:class_id>/<int:student_id>", endpoint="student_grades"
)
@role_required("teacher")
def student_grades(class_id, student_id):
    cls = _get_class_or_404(class_id)
    student = _get_student_or_404(student_id, class_id)
    store = get_store()
    grade_rows = [
        g for g in store.list_grades_for_students([student_id]) if g["class_id"] == class_id
    ]
    special_rows = [
        s
        for s in store.list_special_assessments_for_students([student_id])
        if s["class_id"] == class_id
    ]
    return render_template(
        "teacher/student_grades.html",
        cls=cls,
        student=student,
        grades=grade_rows,
        specials=special_rows,
        average=weighted_average(_student_rows(grade_rows, special_rows)),
    )


def _render_add_grade(cls, student, error=None, status=200):
    store = get_store()
    graded = {
        g["template_id"]
        for g in store.list_grades_for_students([student["id"]])
        if g["class_id"] == cls["id"]
    }
    return (
        render_template(
            "teacher/add_grade.html",
            cls=cls,
            student=student,
            templates=store.list_templates([cls["id"]]),
            graded_template_ids=graded,
            error=error,
            form=request.form,
            max_mb=current_app.config["GRADE_FILE_MAX_MB"],
        ),
        status,
    )


def _submitted_csrf_token():
    token = request.form.get(current_app.config["WTF_CSRF_FIELD_NAME"])
    if token:
        return token
    for header in current_app.config["WTF_CSRF_HEADERS"]:
        token = request.headers.get(header)
        if token:
            return token
    return None


# Route: GET/POST "/teacher/add-grade/<cid>/<sid>"
# Used by: teacher/add_grade.html (multipart form with optional attachment)
# Purpose: Record a template grade with an optional file or link.
@teacher_bp.route(
    "/teacher/add-grade/<int:class_id>/<int:student_id>",
    methods=["GET", "POST"],
    endpoint="add_grade",
)
@role_required("teacher")
def add_grade(class_id, student_id):
    cls = _get_class_or_404(class_id)
    student = _get_student_or_404(student_id, class_id)
    if request.method == "GET":
        return _render_add_grade(cls, student)

    upload = request.files.get("attachment")
    if upload is not None and not upload.filename:
        upload = None
    type_allowed = upload is None or is_allowed_upload(upload)
    saved = save_upload(upload, _attachment_root()) if upload and type_allowed else None
    saved_path = saved["full_path"] if saved else None

    # Exempt from CSRFProtect; checked here once the body is parsed
    try:
        validate_csrf(_submitted_csrf_token())
    except CSRFValidationError as e:
        remove_file(saved_path)
        logger.warning(f"CSRF check failed on grade upload: {e}")
        raise ForbiddenError("Invalid CSRF token.")

    store = get_store()
    grade_id = None
    try:
        if not type_allowed:
            raise ValidationError("Only PDF, JPG and PNG files are allowed.")
        if saved:
            max_bytes = current_app.config["GRADE_FILE_MAX_MB"] * 1024 * 1024
            if saved["size"] > max_bytes:
                raise ValidationError(
                    f"File is too large (max {current_app.config['GRADE_FILE_MAX_MB']} MB)."
                )
            if not matches_signature(saved_path, saved["mime"]):
                raise ValidationError("File content does not match its type.")

        grade = _parse_grade(request.form.get("grade"))
        template = store.get_template(
            _parse_int(request.form.get("template_id")), class_id=class_id
        )
        if template is None:
            raise ValidationError("Please choose a template of this class.")

        link = request.form.get("external_link", "").strip() or None
        if link and (len(link) > MAX_LINK_LENGTH or not LINK_RE.match(link)):
            raise ValidationError("The link must be an http(s) URL of at most 2048 characters.")
        if link and saved:
            raise ValidationError("Provide either a file or a link, not both.")

        note = request.form.get("note", "").strip() or None
        try:
            grade_id = store.create_grade(
                student_id,
                class_id,
                template["id"],
                grade,
                note=note,
                attachment=saved,
                external_link=link,
            )
        except ConflictError:
            raise ConflictError("This student already has a grade for this template.")
    except GradebookError as e:
        if grade_id is None:
            remove_file(saved_path)
        return _render_add_grade(cls, student, e.message, e.status_code)
    except Exception:
        if grade_id is None:
            remove_file(saved_path)
        raise

    logger.info(
        f"Teacher {_teacher_id()} recorded grade {grade_id} for student {student_id}"
    )
    notify_student(store, student, GRADE_RECORDED, "grade")
    flash("Grade saved.", "success")
    return redirect(
        url_for("teacher.student_grades", class_id=class_id, student_id=student_id)
    )


# Route: POST "/teacher/delete-grade/<cid>/<gid>"
# Used by: teacher/student_grades.html
# Purpose: Delete a grade and its stored attachment.
@teacher_bp.route(
    "/teacher/delete-grade/<int:class_id>/<int:grade_id>",
    methods=["POST"],
    endpoint="delete_grade",
)
@role_required("teacher")
def delete_grade(class_id, grade_id):
    _get_class_or_404(class_id)
    store = get_store()
    grade = store.get_grade(grade_id, class_id=class_id)
    if grade is None:
        raise NotFoundError("Grade not found.")
    store.delete_grade(grade_id)
    if grade["attachment_path"]:
        _remove_attachment(grade["attachment_path"])
    logger.info(f"Teacher {_teacher_id()} deleted grade {grade_id}")
    flash("Grade deleted.", "success")
    return redirect(
        url_for(
            "teacher.student_grades", class_id=class_id, student_id=grade["student_id"]
        )
    )


# Route: POST "/teacher/delete-grade-attachment/<cid>/<gid>"
# Used by: teacher/student_grades.html
# Purpose: Drop only the attachment of a grade.
@teacher_bp.route(
    "/teacher/delete-grade-attachment/<int:class_id>/<int:grade_id>",
    methods=["POST"],
    endpoint="delete_grade_attachment",
)
@role_required("teacher")
def delete_grade_attachment(class_id, grade_id):
    _get_class_or_404(class_id)
    store = get_store()
    grade = store.get_grade(grade_id, class_id=class_id)
    if grade is None:
        raise NotFoundError("Grade not found.")
    if grade["attachment_path"]:
        store.clear_grade_attachment(grade_id)
        _remove_attachment(grade["attachment_path"])
        logger.info(f"Teacher {_teacher_id()} removed the attachment of grade {grade_id}")
        flash("Attachment removed.", "success")
    return redirect(
        url_for(
            "teacher.student_grades", class_id=class_id, student_id=grade["student_id"]
        )
    )


# Route: GET "/teacher/grade-templates/<cid>"
# Used by: teacher/classes.html
# Purpose: Assessment templates of a class.
@teacher_bp.route("/teacher/grade-templates/<int:class_id>", endpoint="grade_templates")
@role_required("teacher")
def grade_templates(class_id):
    cls = _get_class_or_404(class_id)
    templates = get_store().list_templates([class_id])
    return render_template("teacher/grade_templates.html", cls=cls, templates=templates)


# Route: GET/POST "/teacher/create-template/<cid>"
# Used by: teacher/grade_templates.html
# Purpose: Define a weighted assessment for a class.
@teacher_bp.route(
    "/teacher/create-template/<int:class_id>",
    methods=["GET", "POST"],
    endpoint="create_template",
)
@role_required("teacher")
def create_template(class_id):
    cls = _get_class_or_404(class_id)

    def render(error=None, status=200):
        return (
            render_template(
                "teacher/create_template.html",
                cls=cls,
                categories=TEMPLATE_CATEGORIES,
                error=error,
                form=request.form,
            ),
            status,
        )

    if request.method == "GET":
        return render()

    name = request.form.get("name", "").strip()
    category = request.form.get("category", "").strip()
    description = request.form.get("description", "").strip() or None
    raw_date = request.form.get("date", "").strip()
    try:
        if not name:
            raise ValidationError("Name is required.")
        if category not in TEMPLATE_CATEGORIES:
            raise ValidationError("Please choose a valid category.")
        weight = _parse_weight(request.form.get("weight"))
        try:
            template_date = (
                datetime.strptime(raw_date, "%Y-%m-%d").date() if raw_date else None
            )
        except ValueError:
            raise ValidationError("Date must be in the format YYYY-MM-DD.")
    except ValidationError as e:
        return render(e.message, 400)

    template_id = get_store().create_template(
        class_id, name, category, weight, template_date, description
    )
    logger.info(f"Teacher {_teacher_id()} created template {template_id} in class {class_id}")
    flash("Template created.", "success")
    return redirect(url_for("teacher.grade_templates", class_id=class_id))


# Route: POST "/teacher/delete-template/<cid>/<tid>"
# Used by: teacher/grade_templates.html
# Purpose: Delete a template and the grades recorded against it.
@teacher_bp.route(
    "/teacher/delete-template/<int:class_id>/<int:template_id>",
    methods=["POST"],
    endpoint="delete_template",
)
@role_required("teacher")
def delete_template(class_id, template_id):
    _get_class_or_404(class_id)
    store = get_store()
    if store.get_template(template_id, class_id=class_id) is None:
        raise NotFoundError("Template not found.")
    attachments = [
        g["attachment_path"]
        for g in store.list_grades_for_class(class_id)
        if g["template_id"] == template_id and g["attachment_path"]
    ]
    store.delete_template(template_id)
    for stored_name in attachments:
        _remove_attachment(stored_name)
    logger.info(f"Teacher {_teacher_id()} deleted template {template_id}")
    flash("Template deleted.", "success")
    return redirect(url_for("teacher.grade_templates", class_id=class_id))


# Route: GET/POST "/teacher/special-assessments/<cid>"
# Used by: teacher/classes.html
# Purpose: List and record one-off assessments outside the templates.
@teacher_bp.route(
    "/teacher/special-assessments/<int:class_id>",
    methods=["GET", "POST"],
    endpoint="special_assessments",
)
@role_required("teacher")
def special_assessments(class_id):
    cls = _get_class_or_404(class_id)
    store = get_store()

    def render(error=None, status=200):
        return (
            render_template(
                "teacher/special_assessments.html",
                cls=cls,
                students=store.list_students(class_id),
                assessments=store.list_special_assessments_for_class(class_id),
                types=SPECIAL_ASSESSMENT_TYPES,
                error=error,
                form=request.form,
            ),
            status,
        )

    if request.method == "GET":
        return render()

    type_ = request.form.get("type", "").strip()
    name = request.form.get("name", "").strip()
    description = request.form.get("description", "").strip() or None
    try:
        student = store.get_student(
            _parse_int(request.form.get("student_id")), class_id=class_id
        )
        if student is None:
            raise ValidationError("Please choose a student of this class.")
        if type_ not in SPECIAL_ASSESSMENT_TYPES:
            raise ValidationError("Please choose a valid assessment type.")
        if type_ == CUSTOM_ASSESSMENT_TYPE and not name:
            raise ValidationError("A name is required for custom assessments.")
        weight = _parse_weight(request.form.get("weight"))
        grade = _parse_grade(request.form.get("grade"))
    except ValidationError as e:
        return render(e.message, 400)

    assessment_id = store.create_special_assessment(
        student["id"], class_id, type_, name or type_, description, weight, grade
    )
    logger.info(
        f"Teacher {_teacher_id()} recorded special assessment {assessment_id} "
        f"for student {student['id']}"
    )
    notify_student(store, student, SPECIAL_ASSESSMENT_RECORDED, "special")
    flash("Special assessment saved.", "success")
    return redirect(url_for("teacher.special_assessments", class_id=class_id))


# Route: POST "/teacher/delete-special-assessment/<cid>/<aid>"
# Used by: teacher/special_assessments.html
# Purpose: Delete a special assessment.
@teacher_bp.route(
    "/teacher/delete-special-assessment/<int:class_id>/<int:assessment_id>",
    methods=["POST"],
    endpoint="delete_special_assessment",
)
@role_required("teacher")
def delete_special_assessment(class_id, assessment_id):
    _get_class_or_404(class_id)
    if not get_store().delete_special_assessment(assessment_id, class_id):
        raise NotFoundError("Special assessment not found.")
    logger.info(f"Teacher {_teacher_id()} deleted special assessment {assessment_id}")
    flash("Special assessment deleted.", "success")
    return redirect(url_for("teacher.special_assessments", class_id=class_id))


# Route: GET "/teacher/class-statistics/<cid>"
# Used by: teacher/classes.html
# Purpose: Per-template and per-assessment statistics with class-wide averages.
@teacher_bp.route("/teacher/class-statistics/<int:class_id>", endpoint="class_statistics")
@role_required("teacher")
def class_statistics(class_id):
    cls = _get_class_or_404(class_id)
    store = get_store()
    class_grades = store.list_grades_for_class(class_id)
    specials = store.list_special_assessments_for_class(class_id)
    grade_entries = [
        {
            "template_id": g["template_id"],
            "template_name": g["template_name"],
            "value": g["grade"],
            "student_name": g["student_name"],
        }
        for g in class_grades
    ]
    return render_template(
        "teacher/class_statistics.html",
        cls=cls,
        template_stats=compute_template_statistics(
            store.list_templates([class_id]), grade_entries
        ),
        special_stats=compute_special_statistics(specials),
        overall=compute_overall_class_averages(_student_rows(class_grades, specials)),
        student_count=len(store.list_students(class_id)),
    )
