import logging
import re

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

from utils.auth_utils import role_required
from utils.errors import ConflictError, NotFoundError
from utils.passwords import hash_password, password_policy_error
from utils.store import ROLES, STATUSES, get_store
from utils.student_names import name_from_email
from utils.uploads import remove_attachments

logger = logging.getLogger(__name__)


admin_bp = Blueprint("admin", __name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
BULK_ROLES = ("teacher", "student")


def _parse_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _checked(name) -> bool:
    return request.form.get(name, "").lower() in ("1", "on", "true", "yes")


def _get_user_or_404(user_id):
    user = get_store().get_user(user_id)
    if user is None:
        raise NotFoundError("User not found.")
    return user


def _get_class_or_404(class_id):
    cls = get_store().get_class(class_id)
    if cls is None:
        raise NotFoundError("Class not found.")
    return cls


def _resolve_password(role, password, use_initial):
    """Return (password, must_change_password, error)."""
    if use_initial:
        if role == "teacher":
            return None, False, "The initial password cannot be used for teachers."
        initial = current_app.config.get("INITIAL_PASSWORD")
        if not initial:
            return None, False, "No initial password is configured."
        return initial, True, None
    error = password_policy_error(password, current_app.config["MIN_PASSWORD_LENGTH"])
    if error:
        return None, False, error
    return password, False, None


# Route: GET "/admin"
# Used by: login redirect for admins; nav link in base.html
# Purpose: Overview counts.
@admin_bp.route("/admin", endpoint="home")
@role_required("admin")
def home():
    summary = get_store().count_summary()
    return render_template("admin/home.html", summary=summary)


# Route: GET "/admin/users"
# Used by: admin/home.html, admin/users.html filter form
# Purpose: List users filtered by id, e-mail fragment and role.
@admin_bp.route("/admin/users", methods=["GET"], endpoint="users")
@role_required("admin")
def users():
    filters = {
        "id": request.args.get("id", "").strip(),
        "email": request.args.get("email", "").strip(),
        "role": request.args.get("role", "").strip(),
    }
    user_id = _parse_int(filters["id"]) if filters["id"] else None
    if filters["id"] and user_id is None:
        rows = []
    else:
        rows = get_store().list_users(
            user_id=user_id,
            email=filters["email"] or None,
            role=filters["role"] if filters["role"] in ROLES else None,
        )
    return render_template("admin/users.html", users=rows, filters=filters, roles=ROLES)


# Route: GET "/admin/users/new"
# Used by: admin/users.html
# Purpose: Single and bulk user creation forms.
@admin_bp.route("/admin/users/new", endpoint="new_user")
@role_required("admin")
def new_user():
    return render_template(
        "admin/create_user.html",
        error=None,
        form={},
        roles=ROLES,
        bulk_roles=BULK_ROLES,
        initial_available=bool(current_app.config.get("INITIAL_PASSWORD")),
    )


def _render_create_user(error, status):
    return (
        render_template(
            "admin/create_user.html",
            error=error,
            form=request.form,
            roles=ROLES,
            bulk_roles=BULK_ROLES,
            initial_available=bool(current_app.config.get("INITIAL_PASSWORD")),
        ),
        status,
    )


# Route: POST "/admin/users"
# Used by: admin/create_user.html
# Purpose: Create one user with an explicit or the shared initial password.
@admin_bp.route("/admin/users", methods=["POST"], endpoint="create_user")
@role_required("admin")
def create_user():
    email = request.form.get("email", "").strip().lower()
    role = request.form.get("role", "").strip()
    password = request.form.get("password", "")

    if not email or not EMAIL_RE.match(email):
        return _render_create_user("Please enter a valid email address.", 400)
    if role not in ROLES:
        return _render_create_user("Please choose a valid role.", 400)

    password, must_change, error = _resolve_password(
        role, password, _checked("use_initial")
    )
    if error:
        return _render_create_user(error, 400)

    try:
        user_id = get_store().create_user(
            email, hash_password(password), role, must_change_password=must_change
        )
    except ConflictError:
        return _render_create_user("A user with this email already exists.", 409)

    logger.info(f"Admin {session['user_id']} created {role} {user_id} ({email})")
    flash("User created.", "success")
    return redirect(url_for("admin.user_detail", user_id=user_id))


# Route: POST "/admin/users/bulk"
# Used by: admin/create_user.html (bulk section)
# Purpose: Create teachers or students from newline-separated e-mails.
@admin_bp.route("/admin/users/bulk", methods=["POST"], endpoint="bulk_create_users")
@role_required("admin")
def bulk_create_users():
    role = request.form.get("role", "").strip()
    if role not in BULK_ROLES:
        return _render_create_user("Bulk creation is limited to teachers and students.", 400)

    password, must_change, error = _resolve_password(
        role, request.form.get("password", ""), _checked("use_initial")
    )
    if error:
        return _render_create_user(error, 400)

    emails = [
        line.strip().lower()
        for line in request.form.get("emails", "").splitlines()
        if line.strip()
    ]
    if not emails:
        return _render_create_user("Please enter at least one email address.", 400)

    store = get_store()
    password_hash = hash_password(password)
    created, skipped = [], []
    for email in dict.fromkeys(emails):
        if not EMAIL_RE.match(email):
            skipped.append(email)
            continue
        try:
            store.create_user(email, password_hash, role, must_change_password=must_change)
            created.append(email)
        except ConflictError:
            skipped.append(email)

    logger.info(
        f"Admin {session['user_id']} bulk-created {len(created)} {role}s, skipped {len(skipped)}"
    )
    flash(f"{len(created)} users created, {len(skipped)} skipped.", "success")
    if skipped:
        flash("Skipped: " + ", ".join(skipped), "error")
    return redirect(url_for("admin.users", role=role))


# Route: GET "/admin/users/<id>"
# Used by: admin/users.html rows
# Purpose: User detail with owned classes (teachers) or enrollments (students).
@admin_bp.route("/admin/users/<int:user_id>", methods=["GET"], endpoint="user_detail")
@role_required("admin")
def user_detail(user_id):
    store = get_store()
    user = _get_user_or_404(user_id)
    classes = store.list_classes(teacher_id=user_id) if user["role"] == "teacher" else []
    enrollments = (
        store.list_enrollments_by_email(user["email"]) if user["role"] == "student" else []
    )
    return render_template(
        "admin/user_details.html",
        user=user,
        classes=classes,
        enrollments=enrollments,
        initial_available=bool(current_app.config.get("INITIAL_PASSWORD")),
    )


# Route: GET "/admin/users/<id>/edit"
# Used by: admin/user_details.html
# Purpose: Edit form for e-mail, role and status.
@admin_bp.route("/admin/users/<int:user_id>/edit", endpoint="edit_user")
@role_required("admin")
def edit_user(user_id):
    user = _get_user_or_404(user_id)
    return render_template(
        "admin/edit_user.html", user=user, error=None, roles=ROLES, statuses=STATUSES
    )


# Route: POST "/admin/users/<id>"
# Used by: admin/edit_user.html
# Purpose: Save e-mail, role and status.
@admin_bp.route("/admin/users/<int:user_id>", methods=["POST"], endpoint="update_user")
@role_required("admin")
def update_user(user_id):
    user = _get_user_or_404(user_id)
    email = request.form.get("email", "").strip().lower()
    role = request.form.get("role", "").strip()
    status = request.form.get("status", "").strip()

    def fail(message, code):
        form_user = dict(user, email=email, role=role, status=status)
        return (
            render_template(
                "admin/edit_user.html",
                user=form_user,
                error=message,
                roles=ROLES,
                statuses=STATUSES,
            ),
            code,
        )

    if not email or not EMAIL_RE.match(email):
        return fail("Please enter a valid email address.", 400)
    if role not in ROLES:
        return fail("Please choose a valid role.", 400)
    if status not in STATUSES:
        return fail("Please choose a valid status.", 400)
    if user_id == session["user_id"] and (status != "active" or role != "admin"):
        return fail("You cannot lock, delete or demote your own account.", 400)

    try:
        get_store().update_user(user_id, email, role, status)
    except ConflictError:
        return fail("A user with this email already exists.", 409)

    logger.info(f"Admin {session['user_id']} updated user {user_id}: {role}/{status}")
    flash("User updated.", "success")
    return redirect(url_for("admin.user_detail", user_id=user_id))


# Route: POST "/admin/users/<id>/reset-password"
# Used by: admin/user_details.html
# Purpose: Set a new password or the shared initial password.
@admin_bp.route(
    "/admin/users/<int:user_id>/reset-password",
    methods=["POST"],
    endpoint="reset_password",
)
@role_required("admin")
def reset_password(user_id):
    user = _get_user_or_404(user_id)
    password, must_change, error = _resolve_password(
        user["role"], request.form.get("password", ""), _checked("use_initial")
    )
    if error:
        flash(error, "error")
        return redirect(url_for("admin.user_detail", user_id=user_id))
    get_store().set_password(user_id, hash_password(password), must_change)
    logger.info(f"Admin {session['user_id']} reset the password of user {user_id}")
    flash("Password reset.", "success")
    return redirect(url_for("admin.user_detail", user_id=user_id))


# Route: POST "/admin/users/<id>/delete"
# Used by: admin/user_details.html
# Purpose: Soft delete (status "deleted"); the row is kept.
@admin_bp.route(
    "/admin/users/<int:user_id>/delete", methods=["POST"], endpoint="delete_user"
)
@role_required("admin")
def delete_user(user_id):
    _get_user_or_404(user_id)
    if user_id == session["user_id"]:
        flash("You cannot delete your own account.", "error")
        return redirect(url_for("admin.user_detail", user_id=user_id))
    get_store().set_user_status(user_id, "deleted")
    logger.info(f"Admin {session['user_id']} deleted user {user_id}")
    flash("User deleted.", "success")
    return redirect(url_for("admin.users"))


# Route: GET "/admin/classes"
# Used by: admin/home.html, search form in admin/classes.html
# Purpose: All classes, searchable by name or subject.
@admin_bp.route("/admin/classes", methods=["GET"], endpoint="classes")
@role_required("admin")
def classes():
    query = request.args.get("q", "").strip()
    rows = get_store().list_classes(query=query or None)
    return render_template("admin/classes.html", classes=rows, q=query)


def _render_class_form(template, cls, error, status=200):
    return (
        render_template(
            template,
            cls=cls,
            error=error,
            teachers=get_store().list_active_teachers(),
        ),
        status,
    )


def _class_form_values():
    name = request.form.get("name", "").strip()
    subject = request.form.get("subject", "").strip()
    teacher_id = _parse_int(request.form.get("teacher_id"))
    error = None
    if not name or not subject:
        error = "Name and subject are required."
    elif teacher_id not in {t["id"] for t in get_store().list_active_teachers()}:
        error = "Please choose an active teacher."
    return {"name": name, "subject": subject, "teacher_id": teacher_id}, error


# Route: GET "/admin/classes/new"
# Used by: admin/classes.html
# Purpose: Class creation form with the active teachers to choose from.
@admin_bp.route("/admin/classes/new", endpoint="new_class")
@role_required("admin")
def new_class():
    return _render_class_form("admin/create_class.html", {}, None)


# Route: POST "/admin/classes"
# Used by: admin/create_class.html
# Purpose: Create a class owned by an active teacher.
@admin_bp.route("/admin/classes", methods=["POST"], endpoint="create_class")
@role_required("admin")
def create_class():
    values, error = _class_form_values()
    if error:
        return _render_class_form("admin/create_class.html", values, error, 400)
    class_id = get_store().create_class(
        values["name"], values["subject"], values["teacher_id"]
    )
    logger.info(f"Admin {session['user_id']} created class {class_id}")
    flash("Class created.", "success")
    return redirect(url_for("admin.classes"))


# Route: GET "/admin/classes/<id>/edit"
# Used by: admin/classes.html
# Purpose: Class edit form.
@admin_bp.route("/admin/classes/<int:class_id>/edit", endpoint="edit_class")
@role_required("admin")
def edit_class(class_id):
    cls = _get_class_or_404(class_id)
    return _render_class_form("admin/edit_class.html", cls, None)


# Route: POST "/admin/classes/<id>"
# Used by: admin/edit_class.html
# Purpose: Save name, subject and owning teacher.
@admin_bp.route("/admin/classes/<int:class_id>", methods=["POST"], endpoint="update_class")
@role_required("admin")
def update_class(class_id):
    cls = _get_class_or_404(class_id)
    values, error = _class_form_values()
    if error:
        return _render_class_form("admin/edit_class.html", dict(cls, **values), error, 400)
    get_store().update_class(
        class_id, values["name"], values["subject"], values["teacher_id"]
    )
    logger.info(f"Admin {session['user_id']} updated class {class_id}")
    flash("Class updated.", "success")
    return redirect(url_for("admin.classes"))


# Route: POST "/admin/classes/<id>/delete"
# Used by: admin/classes.html
# Purpose: Delete a class with its students, templates and grades.
@admin_bp.route(
    "/admin/classes/<int:class_id>/delete", methods=["POST"], endpoint="delete_class"
)
@role_required("admin")
def delete_class(class_id):
    _get_class_or_404(class_id)
    store = get_store()
    attachments = [g["attachment_path"] for g in store.list_grades_for_class(class_id)]
    store.delete_class(class_id)
    remove_attachments(current_app.config["GRADE_ATTACHMENT_DIR"], attachments)
    logger.info(f"Admin {session['user_id']} deleted class {class_id}")
    flash("Class deleted.", "success")
    return redirect(url_for("admin.classes"))


# Route: GET "/admin/classes/<id>/students"
# Used by: admin/classes.html
# Purpose: Enrolled students filtered by name and e-mail.
@admin_bp.route(
    "/admin/classes/<int:class_id>/students", endpoint="class_students"
)
@role_required("admin")
def class_students(class_id):
    cls = _get_class_or_404(class_id)
    name = request.args.get("name", "").strip()
    email = request.args.get("email", "").strip()
    students = get_store().list_students(class_id, name=name or None, email=email or None)
    return render_template(
        "admin/class_students.html",
        cls=cls,
        students=students,
        filters={"name": name, "email": email},
    )


# Route: POST "/admin/classes/<id>/students/<sid>/delete"
# Used by: admin/class_students.html
# Purpose: Remove an enrollment with its grades.
@admin_bp.route(
    "/admin/classes/<int:class_id>/students/<int:student_id>/delete",
    methods=["POST"],
    endpoint="delete_class_student",
)
@role_required("admin")
def delete_class_student(class_id, student_id):
    _get_class_or_404(class_id)
    store = get_store()
    if store.get_student(student_id, class_id=class_id) is None:
        raise NotFoundError("Student not found.")
    attachments = [
        g["attachment_path"] for g in store.list_grades_for_students([student_id])
    ]
    store.delete_student(student_id)
    remove_attachments(current_app.config["GRADE_ATTACHMENT_DIR"], attachments)
    logger.info(f"Admin {session['user_id']} removed student {student_id} from class {class_id}")
    flash("Student removed.", "success")
    return redirect(url_for("admin.class_students", class_id=class_id))


def _enroll(store, class_id, email):
    """Enroll an existing student user. Returns an error message or None."""
    if not EMAIL_RE.match(email):
        return "invalid email"
    user = store.get_user_by_email(email)
    if user is None or user["role"] != "student" or user["status"] == "deleted":
        return "no student account"
    try:
        store.create_student(
            name_from_email(email),
            email,
            class_id,
            current_app.config["DEFAULT_SCHOOL_YEAR"],
        )
    except ConflictError:
        return "already enrolled"
    return None


# Route: GET/POST "/admin/classes/<id>/students/add"
# Used by: admin/class_students.html
# Purpose: Enroll one existing student account.
@admin_bp.route(
    "/admin/classes/<int:class_id>/students/add",
    methods=["GET", "POST"],
    endpoint="add_class_student",
)
@role_required("admin")
def add_class_student(class_id):
    cls = _get_class_or_404(class_id)
    if request.method == "GET":
        return render_template("admin/add_student.html", cls=cls, error=None)

    email = request.form.get("email", "").strip().lower()
    error = _enroll(get_store(), class_id, email)
    if error == "already enrolled":
        message = "Student is already in this class."
    elif error:
        message = "No student account with this email exists."
    else:
        logger.info(f"Admin {session['user_id']} enrolled {email} in class {class_id}")
        flash("Student added.", "success")
        return redirect(url_for("admin.class_students", class_id=class_id))
    return render_template("admin/add_student.html", cls=cls, error=message), 400


# Route: POST "/admin/classes/<id>/students/add-bulk"
# Used by: admin/add_student.html (bulk section)
# Purpose: Enroll many existing student accounts from newline-separated e-mails.
@admin_bp.route(
    "/admin/classes/<int:class_id>/students/add-bulk",
    methods=["POST"],
    endpoint="add_class_students_bulk",
)
@role_required("admin")
def add_class_students_bulk(class_id):
    _get_class_or_404(class_id)
    store = get_store()
    emails = [
        line.strip().lower()
        for line in request.form.get("emails", "").splitlines()
        if line.strip()
    ]
    added, skipped = 0, []
    for email in dict.fromkeys(emails):
        error = _enroll(store, class_id, email)
        if error:
            skipped.append(f"{email} ({error})")
        else:
            added += 1
    logger.info(
        f"Admin {session['user_id']} bulk-enrolled {added} students in class {class_id}"
    )
    flash(f"{added} students added, {len(skipped)} skipped.", "success")
    if skipped:
        flash("Skipped: " + ", ".join(skipped), "error")
    return redirect(url_for("admin.class_students", class_id=class_id))
