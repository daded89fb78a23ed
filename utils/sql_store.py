import logging

import pymysql

from utils.db_conn import close_db_connection, get_db_connection
from utils.errors import (
    ConflictError,
    StoreUnavailableError,
    is_connection_error,
    is_duplicate_entry,
)
from utils.store import GradeStore

logger = logging.getLogger(__name__)

_GRADE_SELECT = """
    SELECT g.*, gt.name AS template_name, gt.category AS template_category,
           gt.weight AS template_weight, gt.date AS template_date,
           c.name AS class_name, c.subject AS class_subject,
           u.email AS teacher_email, s.name AS student_name, s.email AS student_email
    FROM grades g
    JOIN students s ON s.id = g.student_id
    JOIN classes c ON c.id = g.class_id
    LEFT JOIN grade_templates gt ON gt.id = g.template_id
    LEFT JOIN users u ON u.id = c.teacher_id
"""

_SPECIAL_SELECT = """
    SELECT sa.*, c.name AS class_name, c.subject AS class_subject,
           u.email AS teacher_email, s.name AS student_name
    FROM special_assessments sa
    JOIN students s ON s.id = sa.student_id
    JOIN classes c ON c.id = sa.class_id
    LEFT JOIN users u ON u.id = c.teacher_id
"""

_CLASS_SELECT = """
    SELECT c.*, u.email AS teacher_email,
           (SELECT COUNT(*) FROM students s WHERE s.class_id = c.id) AS student_count
    FROM classes c
    LEFT JOIN users u ON u.id = c.teacher_id
"""


def _in_clause(values):
    return ", ".join(["%s"] * len(values))


class MySQLGradeStore(GradeStore):
    """GradeStore over PyMySQL; one parameterized statement per call, committed at once.

    Foreign-key cascades are declared on the tables (see models.py).
    """

    def __init__(self, connection_factory=get_db_connection):
        self._connection_factory = connection_factory

    def _translate(self, exc):
        if is_duplicate_entry(exc):
            return ConflictError()
        if is_connection_error(exc):
            close_db_connection()
            return StoreUnavailableError()
        return None

    def _fetchall(self, sql, params=()):
        try:
            with self._connection_factory().cursor() as cursor:
                cursor.execute(sql, params)
                return list(cursor.fetchall())
        except pymysql.err.MySQLError as e:
            logger.error(f"Query failed: {str(e)}")
            translated = self._translate(e)
            if translated is not None:
                raise translated from e
            raise

    def _fetchone(self, sql, params=()):
        rows = self._fetchall(sql, params)
        return rows[0] if rows else None

    def _execute(self, sql, params=()):
        """Run one write statement, commit, and return (lastrowid, rowcount)."""
        conn = None
        try:
            conn = self._connection_factory()
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
                lastrowid, rowcount = cursor.lastrowid, cursor.rowcount
            conn.commit()
            return lastrowid, rowcount
        except pymysql.err.MySQLError as e:
            if conn is not None and not is_connection_error(e):
                conn.rollback()
            translated = self._translate(e)
            if translated is not None:
                logger.warning(f"Write rejected: {str(e)}")
                raise translated from e
            logger.error(f"Write failed: {str(e)}")
            raise

    # Users

    def get_user(self, user_id):
        return self._fetchone("SELECT * FROM users WHERE id = %s", (user_id,))

    def get_user_by_email(self, email):
        return self._fetchone("SELECT * FROM users WHERE email = %s", (email,))

    def list_users(self, user_id=None, email=None, role=None):
        clauses, params = [], []
        if user_id is not None:
            clauses.append("id = %s")
            params.append(user_id)
        if email:
            clauses.append("email LIKE %s")
            params.append(f"%{email}%")
        if role:
            clauses.append("role = %s")
            params.append(role)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._fetchall(f"SELECT * FROM users {where} ORDER BY id", tuple(params))

    def list_active_teachers(self):
        return self._fetchall(
            "SELECT * FROM users WHERE role = 'teacher' AND status = 'active' ORDER BY email"
        )

    def create_user(
        self, email, password_hash, role, status="active", must_change_password=False
    ):
        lastrowid, _ = self._execute(
            """INSERT INTO users (email, password_hash, role, status, must_change_password)
            VALUES (%s, %s, %s, %s, %s)""",
            (email, password_hash, role, status, 1 if must_change_password else 0),
        )
        return lastrowid

    def update_user(self, user_id, email, role, status):
        _, rowcount = self._execute(
            "UPDATE users SET email = %s, role = %s, status = %s WHERE id = %s",
            (email, role, status, user_id),
        )
        return rowcount > 0

    def set_password(self, user_id, password_hash, must_change_password):
        _, rowcount = self._execute(
            "UPDATE users SET password_hash = %s, must_change_password = %s WHERE id = %s",
            (password_hash, 1 if must_change_password else 0, user_id),
        )
        return rowcount > 0

    def set_user_status(self, user_id, status):
        _, rowcount = self._execute(
            "UPDATE users SET status = %s WHERE id = %s", (status, user_id)
        )
        return rowcount > 0

    def record_login(self, user_id):
        self._execute("UPDATE users SET last_login = NOW() WHERE id = %s", (user_id,))
        return True

    def count_summary(self):
        row = self._fetchone(
            """
            SELECT
              (SELECT COUNT(*) FROM users WHERE status <> 'deleted') AS users,
              (SELECT COUNT(*) FROM users WHERE status <> 'deleted' AND role = 'admin') AS admins,
              (SELECT COUNT(*) FROM users WHERE status <> 'deleted' AND role = 'teacher') AS teachers,
              (SELECT COUNT(*) FROM users WHERE status <> 'deleted' AND role = 'student') AS students,
              (SELECT COUNT(*) FROM classes) AS classes,
              (SELECT COUNT(*) FROM students) AS enrollments,
              (SELECT COUNT(*) FROM grades) AS grades
            """
        )
        return {key: int(value or 0) for key, value in (row or {}).items()}

    # Classes

    def list_classes(self, teacher_id=None, query=None):
        clauses, params = [], []
        if teacher_id is not None:
            clauses.append("c.teacher_id = %s")
            params.append(teacher_id)
        if query:
            clauses.append("(c.name LIKE %s OR c.subject LIKE %s)")
            params.extend([f"%{query}%", f"%{query}%"])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._fetchall(
            f"{_CLASS_SELECT} {where} ORDER BY c.name, c.id", tuple(params)
        )

    def get_class(self, class_id, teacher_id=None):
        if teacher_id is None:
            return self._fetchone(f"{_CLASS_SELECT} WHERE c.id = %s", (class_id,))
        return self._fetchone(
            f"{_CLASS_SELECT} WHERE c.id = %s AND c.teacher_id = %s",
            (class_id, teacher_id),
        )

    def create_class(self, name, subject, teacher_id):
        lastrowid, _ = self._execute(
            "INSERT INTO classes (name, subject, teacher_id) VALUES (%s, %s, %s)",
            (name, subject, teacher_id),
        )
        return lastrowid

    def update_class(self, class_id, name, subject, teacher_id):
        _, rowcount = self._execute(
            "UPDATE classes SET name = %s, subject = %s, teacher_id = %s WHERE id = %s",
            (name, subject, teacher_id, class_id),
        )
        return rowcount > 0

    def delete_class(self, class_id):
        _, rowcount = self._execute("DELETE FROM classes WHERE id = %s", (class_id,))
        return rowcount > 0

    # Students

    def list_students(self, class_id, name=None, email=None):
        sql = "SELECT * FROM students WHERE class_id = %s"
        params = [class_id]
        if name:
            sql += " AND name LIKE %s"
            params.append(f"%{name}%")
        if email:
            sql += " AND email LIKE %s"
            params.append(f"%{email}%")
        return self._fetchall(sql + " ORDER BY name, id", tuple(params))

    def get_student(self, student_id, class_id=None):
        if class_id is None:
            return self._fetchone("SELECT * FROM students WHERE id = %s", (student_id,))
        return self._fetchone(
            "SELECT * FROM students WHERE id = %s AND class_id = %s",
            (student_id, class_id),
        )

    def create_student(self, name, email, class_id, school_year):
        lastrowid, _ = self._execute(
            "INSERT INTO students (name, email, class_id, school_year) VALUES (%s, %s, %s, %s)",
            (name, email, class_id, school_year),
        )
        return lastrowid

    def delete_student(self, student_id):
        _, rowcount = self._execute("DELETE FROM students WHERE id = %s", (student_id,))
        return rowcount > 0

    def list_enrollments_by_email(self, email):
        return self._fetchall(
            """
            SELECT s.*, c.name AS class_name, c.subject AS class_subject,
                   u.email AS teacher_email
            FROM students s
            JOIN classes c ON c.id = s.class_id
            LEFT JOIN users u ON u.id = c.teacher_id
            WHERE s.email = %s
            ORDER BY c.name
            """,
            (email,),
        )

    # Templates

    def list_templates(self, class_ids):
        class_ids = list(class_ids)
        if not class_ids:
            return []
        return self._fetchall(
            f"""SELECT * FROM grade_templates WHERE class_id IN ({_in_clause(class_ids)})
            ORDER BY date IS NULL, date, id""",
            tuple(class_ids),
        )

    def get_template(self, template_id, class_id=None):
        if class_id is None:
            return self._fetchone(
                "SELECT * FROM grade_templates WHERE id = %s", (template_id,)
            )
        return self._fetchone(
            "SELECT * FROM grade_templates WHERE id = %s AND class_id = %s",
            (template_id, class_id),
        )

    def create_template(self, class_id, name, category, weight, date, description):
        lastrowid, _ = self._execute(
            """INSERT INTO grade_templates (class_id, name, category, weight, date, description)
            VALUES (%s, %s, %s, %s, %s, %s)""",
            (class_id, name, category, weight, date, description),
        )
        return lastrowid

    def delete_template(self, template_id):
        _, rowcount = self._execute(
            "DELETE FROM grade_templates WHERE id = %s", (template_id,)
        )
        return rowcount > 0

    # Grades

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
        attachment = attachment or {}
        lastrowid, _ = self._execute(
            """INSERT INTO grades
            (student_id, class_id, template_id, grade, note, attachment_path,
             attachment_original_name, attachment_mime, attachment_size, external_link)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            (
                student_id,
                class_id,
                template_id,
                grade,
                note,
                attachment.get("stored_name"),
                attachment.get("original_name"),
                attachment.get("mime"),
                attachment.get("size"),
                external_link,
            ),
        )
        return lastrowid

    def get_grade(self, grade_id, class_id=None):
        if class_id is None:
            return self._fetchone(f"{_GRADE_SELECT} WHERE g.id = %s", (grade_id,))
        return self._fetchone(
            f"{_GRADE_SELECT} WHERE g.id = %s AND g.class_id = %s", (grade_id, class_id)
        )

    def list_grades_for_class(self, class_id):
        return self._fetchall(
            f"{_GRADE_SELECT} WHERE g.class_id = %s ORDER BY s.name, g.created_at",
            (class_id,),
        )

    def list_grades_for_students(self, student_ids):
        student_ids = list(student_ids)
        if not student_ids:
            return []
        return self._fetchall(
            f"""{_GRADE_SELECT} WHERE g.student_id IN ({_in_clause(student_ids)})
            ORDER BY g.created_at DESC""",
            tuple(student_ids),
        )

    def delete_grade(self, grade_id):
        _, rowcount = self._execute("DELETE FROM grades WHERE id = %s", (grade_id,))
        return rowcount > 0

    def clear_grade_attachment(self, grade_id):
        _, rowcount = self._execute(
            """UPDATE grades SET attachment_path = NULL, attachment_original_name = NULL,
            attachment_mime = NULL, attachment_size = NULL WHERE id = %s""",
            (grade_id,),
        )
        return rowcount > 0

    # Special assessments

    def create_special_assessment(
        self, student_id, class_id, type_, name, description, weight, grade
    ):
        lastrowid, _ = self._execute(
            """INSERT INTO special_assessments
            (student_id, class_id, type, name, description, weight, grade)
            VALUES (%s, %s, %s, %s, %s, %s, %s)""",
            (student_id, class_id, type_, name, description, weight, grade),
        )
        return lastrowid

    def list_special_assessments_for_class(self, class_id):
        return self._fetchall(
            f"{_SPECIAL_SELECT} WHERE sa.class_id = %s ORDER BY s.name, sa.created_at",
            (class_id,),
        )

    def list_special_assessments_for_students(self, student_ids):
        student_ids = list(student_ids)
        if not student_ids:
            return []
        return self._fetchall(
            f"""{_SPECIAL_SELECT} WHERE sa.student_id IN ({_in_clause(student_ids)})
            ORDER BY sa.created_at DESC""",
            tuple(student_ids),
        )

    def delete_special_assessment(self, assessment_id, class_id):
        _, rowcount = self._execute(
            "DELETE FROM special_assessments WHERE id = %s AND class_id = %s",
            (assessment_id, class_id),
        )
        return rowcount > 0

    # Notifications

    def create_notification(self, student_id, message, type_="grade"):
        lastrowid, _ = self._execute(
            "INSERT INTO grade_notifications (student_id, message, type) VALUES (%s, %s, %s)",
            (student_id, message, type_),
        )
        return self._fetchone(
            "SELECT * FROM grade_notifications WHERE id = %s", (lastrowid,)
        )

    def list_notifications(self, student_ids):
        student_ids = list(student_ids)
        if not student_ids:
            return []
        return self._fetchall(
            f"""SELECT * FROM grade_notifications
            WHERE student_id IN ({_in_clause(student_ids)})
            ORDER BY created_at DESC, id DESC""",
            tuple(student_ids),
        )

    def mark_notification_read(self, notification_id, student_ids):
        student_ids = list(student_ids)
        if not student_ids:
            return False
        row = self._fetchone(
            f"""SELECT id FROM grade_notifications
            WHERE id = %s AND student_id IN ({_in_clause(student_ids)})""",
            (notification_id, *student_ids),
        )
        if row is None:
            return False
        self._execute(
            "UPDATE grade_notifications SET read_at = NOW() WHERE id = %s AND read_at IS NULL",
            (notification_id,),
        )
        return True
