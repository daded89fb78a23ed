"""Data access interface shared by the MySQL store and the in-memory store.

Rows are plain dicts (the shape PyMySQL's ``DictCursor`` returns). Joined grade rows
carry the grade columns plus ``template_name``, ``template_category``,
``template_weight``, ``template_date``, ``class_name``, ``class_subject``,
``teacher_email``, ``student_name`` and ``student_email``.
"""

from abc import ABC, abstractmethod

from flask import current_app

ROLES = ("admin", "teacher", "student")
STATUSES = ("active", "locked", "deleted")
TEMPLATE_CATEGORIES = (
    "Exam",
    "Test",
    "Review",
    "Participation",
    "Project",
    "Homework",
)
SPECIAL_ASSESSMENT_TYPES = ("Presentation", "Elective exam", "Custom")
CUSTOM_ASSESSMENT_TYPE = "Custom"


def get_store():
    return current_app.extensions["store"]


class GradeStore(ABC):
    # Users
    @abstractmethod
    def get_user(self, user_id): ...

    @abstractmethod
    def get_user_by_email(self, email): ...

    @abstractmethod
    def list_users(self, user_id=None, email=None, role=None): ...

    @abstractmethod
    def list_active_teachers(self): ...

    @abstractmethod
    def create_user(
        self, email, password_hash, role, status="active", must_change_password=False
    ):
        """Insert a user and return its id. Raises ConflictError on a taken e-mail."""

    @abstractmethod
    def update_user(self, user_id, email, role, status): ...

    @abstractmethod
    def set_password(self, user_id, password_hash, must_change_password): ...

    @abstractmethod
    def set_user_status(self, user_id, status): ...

    @abstractmethod
    def record_login(self, user_id): ...

    @abstractmethod
    def count_summary(self):
        """Counts for the admin home page."""

    # Classes
    @abstractmethod
    def list_classes(self, teacher_id=None, query=None): ...

    @abstractmethod
    def get_class(self, class_id, teacher_id=None):
        """A class, optionally only if owned by ``teacher_id``."""

    @abstractmethod
    def create_class(self, name, subject, teacher_id): ...

    @abstractmethod
    def update_class(self, class_id, name, subject, teacher_id): ...

    @abstractmethod
    def delete_class(self, class_id):
        """Delete a class with its students, templates, grades and special assessments."""

    # Students (class enrollments)
    @abstractmethod
    def list_students(self, class_id, name=None, email=None): ...

    @abstractmethod
    def get_student(self, student_id, class_id=None): ...

    @abstractmethod
    def create_student(self, name, email, class_id, school_year):
        """Enroll a student. Raises ConflictError if (email, class) exists."""

    @abstractmethod
    def delete_student(self, student_id):
        """Delete an enrollment with its grades, special assessments and notifications."""

    @abstractmethod
    def list_enrollments_by_email(self, email): ...

    # Templates
    @abstractmethod
    def list_templates(self, class_ids): ...

    @abstractmethod
    def get_template(self, template_id, class_id=None): ...

    @abstractmethod
    def create_template(self, class_id, name, category, weight, date, description): ...

    @abstractmethod
    def delete_template(self, template_id): ...

    # Grades
    @abstractmethod
    def create_grade(
        self,
        student_id,
        class_id,
        template_id,
        grade,
        note=None,
        attachment=None,
        external_link=None,
    ):
        """Insert a grade. Raises ConflictError if the student already has one for the template."""

    @abstractmethod
    def get_grade(self, grade_id, class_id=None): ...

    @abstractmethod
    def list_grades_for_class(self, class_id): ...

    @abstractmethod
    def list_grades_for_students(self, student_ids): ...

    @abstractmethod
    def delete_grade(self, grade_id): ...

    @abstractmethod
    def clear_grade_attachment(self, grade_id): ...

    # Special assessments
    @abstractmethod
    def create_special_assessment(
        self, student_id, class_id, type_, name, description, weight, grade
    ): ...

    @abstractmethod
    def list_special_assessments_for_class(self, class_id): ...

    @abstractmethod
    def list_special_assessments_for_students(self, student_ids): ...

    @abstractmethod
    def delete_special_assessment(self, assessment_id, class_id): ...

    # Notifications
    @abstractmethod
    def create_notification(self, student_id, message, type_="grade"): ...

    @abstractmethod
    def list_notifications(self, student_ids): ...

    @abstractmethod
    def mark_notification_read(self, notification_id, student_ids):
        """Set read_at once. Returns False if no such notification for these students."""
