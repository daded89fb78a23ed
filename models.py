from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


class User(db.Model):
    __tablename__ = "users"
    __table_args__ = (
        db.CheckConstraint("role IN ('admin', 'teacher', 'student')", name="ck_users_role"),
        db.CheckConstraint(
            "status IN ('active', 'locked', 'deleted')", name="ck_users_status"
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="active")
    must_change_password = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())
    last_login = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f"<User {self.email}>"


class SchoolClass(db.Model):
    __tablename__ = "classes"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    subject = db.Column(db.String(100), nullable=False)
    teacher_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())

    def __repr__(self):
        return f"<SchoolClass {self.name} ({self.subject})>"


class Student(db.Model):
    """Class membership of a person, matched to their User by e-mail."""

    __tablename__ = "students"
    __table_args__ = (
        db.UniqueConstraint("email", "class_id", name="uq_students_email_class"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    class_id = db.Column(
        db.Integer, db.ForeignKey("classes.id", ondelete="CASCADE"), nullable=False
    )
    school_year = db.Column(db.String(20), nullable=True)
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())


class GradeTemplate(db.Model):
    __tablename__ = "grade_templates"
    __table_args__ = (
        db.CheckConstraint("weight >= 0 AND weight <= 100", name="ck_templates_weight"),
    )

    id = db.Column(db.Integer, primary_key=True)
    class_id = db.Column(
        db.Integer, db.ForeignKey("classes.id", ondelete="CASCADE"), nullable=False
    )
    name = db.Column(db.String(150), nullable=False)
    category = db.Column(db.String(50), nullable=False)
    weight = db.Column(db.Numeric(5, 2), nullable=False)
    date = db.Column(db.Date, nullable=True)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())


class Grade(db.Model):
    __tablename__ = "grades"
    __table_args__ = (
        db.UniqueConstraint("student_id", "template_id", name="uq_grades_student_template"),
        db.CheckConstraint("grade >= 1 AND grade <= 5", name="ck_grades_range"),
        db.CheckConstraint(
            "attachment_path IS NULL OR external_link IS NULL",
            name="ck_grades_attachment_or_link",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(
        db.Integer, db.ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    class_id = db.Column(
        db.Integer, db.ForeignKey("classes.id", ondelete="CASCADE"), nullable=False
    )
    template_id = db.Column(
        db.Integer, db.ForeignKey("grade_templates.id", ondelete="CASCADE"), nullable=True
    )
    grade = db.Column(db.Numeric(3, 2), nullable=False)
    note = db.Column(db.Text, nullable=True)
    attachment_path = db.Column(db.String(255), nullable=True)
    attachment_original_name = db.Column(db.String(255), nullable=True)
    attachment_mime = db.Column(db.String(100), nullable=True)
    attachment_size = db.Column(db.Integer, nullable=True)
    external_link = db.Column(db.String(2048), nullable=True)
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())


class SpecialAssessment(db.Model):
    __tablename__ = "special_assessments"
    __table_args__ = (
        db.CheckConstraint("grade >= 1 AND grade <= 5", name="ck_special_grade_range"),
        db.CheckConstraint("weight >= 0 AND weight <= 100", name="ck_special_weight"),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(
        db.Integer, db.ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    class_id = db.Column(
        db.Integer, db.ForeignKey("classes.id", ondelete="CASCADE"), nullable=False
    )
    type = db.Column(db.String(50), nullable=False)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, nullable=True)
    weight = db.Column(db.Numeric(5, 2), nullable=False)
    grade = db.Column(db.Numeric(3, 2), nullable=False)
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())


class GradeNotification(db.Model):
    __tablename__ = "grade_notifications"

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(
        db.Integer, db.ForeignKey("students.id", ondelete="CASCADE"), nullable=False
    )
    message = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(30), nullable=False, default="grade")
    created_at = db.Column(db.DateTime, default=db.func.current_timestamp())
    read_at = db.Column(db.DateTime, nullable=True)


class SessionRecord(db.Model):
    """Server-side session storage for the ``sid`` cookie."""

    __tablename__ = "sessions"

    sid = db.Column(db.String(64), primary_key=True)
    data = db.Column(db.Text, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
