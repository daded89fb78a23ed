import threading
from datetime import datetime

from utils.errors import ConflictError
from utils.store import GradeStore

TABLES = (
    "users",
    "classes",
    "students",
    "grade_templates",
    "grades",
    "special_assessments",
    "grade_notifications",
)

# parent table -> [(child table, foreign key column)], walked on delete
CASCADE_RULES = {
    "classes": [
        ("students", "class_id"),
        ("grade_templates", "class_id"),
        ("grades", "class_id"),
        ("special_assessments", "class_id"),
    ],
    "students": [
        ("grades", "student_id"),
        ("special_assessments", "student_id"),
        ("grade_notifications", "student_id"),
    ],
    "grade_templates": [("grades", "template_id")],
}

UNIQUE_KEYS = {
    "users": [("email",)],
    "students": [("email", "class_id")],
    "grades": [("student_id", "template_id")],
}


def _contains(haystack, needle) -> bool:
    return (needle or "").lower() in (haystack or "").lower()


class MemoryGradeStore(GradeStore):
    """In-process store used by the test suite and ``DATA_BACKEND=memory``."""

    def __init__(self, clock=datetime.now):
        self._clock = clock
        self._lock = threading.RLock()
        self._tables = {name: {} for name in TABLES}
        self._next_ids = {name: 1 for name in TABLES}

    # Generic table helpers

    def _insert(self, table, row):
        with self._lock:
            self._check_unique(table, row)
            row_id = self._next_ids[table]
            self._next_ids[table] += 1
            stored = dict(row, id=row_id)
            self._tables[table][row_id] = stored
            return row_id

    def _update(self, table, row_id, changes):
        with self._lock:
            current = self._tables[table].get(row_id)
            if current is None:
                return False
            updated = dict(current, **changes)
            self._check_unique(table, updated, exclude_id=row_id)
            self._tables[table][row_id] = updated
            return True

    def _check_unique(self, table, row, exclude_id=None):
        for columns in UNIQUE_KEYS.get(table, []):
            key = tuple(row.get(c) for c in columns)
            for other_id, other in self._tables[table].items():
                if other_id == exclude_id:
                    continue
                if tuple(other.get(c) for c in columns) == key:
                    raise ConflictError(
                        f"Duplicate {table} entry for {', '.join(columns)}"
                    )

    def _delete(self, table, row_id):
        with self._lock:
            if self._tables[table].pop(row_id, None) is None:
                return False
            for child_table, column in CASCADE_RULES.get(table, []):
                child_ids = [
                    cid
                    for cid, child in self._tables[child_table].items()
                    if child.get(column) == row_id
                ]
                for cid in child_ids:
                    self._delete(child_table, cid)
            return True

    def _get(self, table, row_id):
        row = self._tables[table].get(row_id)
        return dict(row) if row else None

    def _rows(self, table):
        return [dict(r) for r in sorted(self._tables[table].values(), key=lambda r: r["id"])]

    # Users

    def get_user(self, user_id):
        return self._get("users", user_id)

    def get_user_by_email(self, email):
        for user in self._rows("users"):
            if user["email"] == email:
                return user
        return None

    def list_users(self, user_id=None, email=None, role=None):
        users = self._rows("users")
        if user_id is not None:
            users = [u for u in users if u["id"] == user_id]
        if email:
            users = [u for u in users if _contains(u["email"], email)]
        if role:
            users = [u for u in users if u["role"] == role]
        return users

    def list_active_teachers(self):
        return [
            u
            for u in self._rows("users")
            if u["role"] == "teacher" and u["status"] == "active"
        ]

    def create_user(
        self, email, password_hash, role, status="active", must_change_password=False
    ):
        return self._insert(
            "users",
            {
                "email": email,
                "password_hash": password_hash,
                "role": role,
                "status": status,
                "must_change_password": bool(must_change_password),
                "created_at": self._clock(),
                "last_login": None,
            },
        )

    def update_user(self, user_id, email, role, status):
        return self._update(
            "users", user_id, {"email": email, "role": role, "status": status}
        )

    def set_password(self, user_id, password_hash, must_change_password):
        return self._update(
            "users",
            user_id,
            {
                "password_hash": password_hash,
                "must_change_password": bool(must_change_password),
            },
        )

    def set_user_status(self, user_id, status):
        return self._update("users", user_id, {"status": status})

    def record_login(self, user_id):
        return self._update("users", user_id, {"last_login": self._clock()})

    def count_summary(self):
        users = [u for u in self._rows("users") if u["status"] != "deleted"]
        return {
            "users": len(users),
            "admins": sum(1 for u in users if u["role"] == "admin"),
            "teachers": sum(1 for u in users if u["role"] == "teacher"),
            "students": sum(1 for u in users if u["role"] == "student"),
            "classes": len(self._tables["classes"]),
            "enrollments": len(self._tables["students"]),
            "grades": len(self._tables["grades"]),
        }

    # Classes

    def _class_view(self, cls):
        teacher = self._tables["users"].get(cls["teacher_id"])
        cls["teacher_email"] = teacher["email"] if teacher else None
        cls["student_count"] = sum(
            1 for s in self._tables["students"].values() if s["class_id"] == cls["id"]
        )
        return cls

    def list_classes(self, teacher_id=None, query=None):
        classes = self._rows("classes")
        if teacher_id is not None:
            classes = [c for c in classes if c["teacher_id"] == teacher_id]
        if query:
            classes = [
                c
                for c in classes
                if _contains(c["name"], query) or _contains(c["subject"], query)
            ]
        return [self._class_view(c) for c in classes]

    def get_class(self, class_id, teacher_id=None):
        cls = self._get("classes", class_id)
        if cls is None:
            return None
        if teacher_id is not None and cls["teacher_id"] != teacher_id:
            return None
        return self._class_view(cls)

    def create_class(self, name, subject, teacher_id):
        return self._insert(
            "classes",
            {
                "name": name,
                "subject": subject,
                "teacher_id": teacher_id,
                "created_at": self._clock(),
            },
        )

    def update_class(self, class_id, name, subject, teacher_id):
        return self._update(
            "classes",
            class_id,
            {"name": name, "subject": subject, "teacher_id": teacher_id},
        )

    def delete_class(self, class_id):
        return self._delete("classes", class_id)

    # Students

    def list_students(self, class_id, name=None, email=None):
        students = [s for s in self._rows("students") if s["class_id"] == class_id]
        if name:
            students = [s for s in students if _contains(s["name"], name)]
        if email:
            students = [s for s in students if _contains(s["email"], email)]
        return sorted(students, key=lambda s: ((s["name"] or "").lower(), s["id"]))

    def get_student(self, student_id, class_id=None):
        student = self._get("students", student_id)
        if student is None:
            return None
        if class_id is not None and student["class_id"] != class_id:
            return None
        return student

    def create_student(self, name, email, class_id, school_year):
        return self._insert(
            "students",
            {
                "name": name,
                "email": email,
                "class_id": class_id,
                "school_year": school_year,
                "created_at": self._clock(),
            },
        )

    def delete_student(self, student_id):
        return self._delete("students", student_id)

    def list_enrollments_by_email(self, email):
        enrollments = []
        for student in self._rows("students"):
            if student["email"] != email:
                continue
            cls = self._tables["classes"].get(student["class_id"]) or {}
            teacher = self._tables["users"].get(cls.get("teacher_id")) or {}
            student.update(
                {
                    "class_name": cls.get("name"),
                    "class_subject": cls.get("subject"),
                    "teacher_email": teacher.get("email"),
                }
            )
            enrollments.append(student)
        return enrollments

    # Templates

    def list_templates(self, class_ids):
        class_ids = set(class_ids)
        templates = [t for t in self._rows("grade_templates") if t["class_id"] in class_ids]
        return sorted(
            templates,
            key=lambda t: (t["date"] is None, t["date"] or datetime.min.date(), t["id"]),
        )

    def get_template(self, template_id, class_id=None):
        template = self._get("grade_templates", template_id)
        if template is None:
            return None
        if class_id is not None and template["class_id"] != class_id:
            return None
        return template

    def create_template(self, class_id, name, category, weight, date, description):
        return self._insert(
            "grade_templates",
            {
                "class_id": class_id,
                "name": name,
                "category": category,
                "weight": weight,
                "date": date,
                "description": description,
                "created_at": self._clock(),
            },
        )

    def delete_template(self, template_id):
        return self._delete("grade_templates", template_id)

    # Grades

    def _grade_view(self, grade):
        template = self._tables["grade_templates"].get(grade.get("template_id")) or {}
        cls = self._tables["classes"].get(grade["class_id"]) or {}
        teacher = self._tables["users"].get(cls.get("teacher_id")) or {}
        student = self._tables["students"].get(grade["student_id"]) or {}
        grade.update(
            {
                "template_name": template.get("name", grade.get("template_name")),
                "template_category": template.get("category"),
                "template_weight": template.get("weight"),
                "template_date": template.get("date"),
                "class_name": cls.get("name"),
                "class_subject": cls.get("subject"),
                "teacher_email": teacher.get("email"),
                "student_name": student.get("name"),
                "student_email": student.get("email"),
            }
        )
        return grade

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
        return self._insert(
            "grades",
            {
                "student_id": student_id,
                "class_id": class_id,
                "template_id": template_id,
                "grade": grade,
                "note": note,
                "attachment_path": attachment.get("stored_name"),
                "attachment_original_name": attachment.get("original_name"),
                "attachment_mime": attachment.get("mime"),
                "attachment_size": attachment.get("size"),
                "external_link": external_link,
                "created_at": self._clock(),
            },
        )

    def get_grade(self, grade_id, class_id=None):
        grade = self._get("grades", grade_id)
        if grade is None:
            return None
        if class_id is not None and grade["class_id"] != class_id:
            return None
        return self._grade_view(grade)

    def list_grades_for_class(self, class_id):
        return [
            self._grade_view(g) for g in self._rows("grades") if g["class_id"] == class_id
        ]

    def list_grades_for_students(self, student_ids):
        student_ids = set(student_ids)
        grades = [
            self._grade_view(g)
            for g in self._rows("grades")
            if g["student_id"] in student_ids
        ]
        return sorted(grades, key=lambda g: g["created_at"], reverse=True)

    def delete_grade(self, grade_id):
        return self._delete("grades", grade_id)

    def clear_grade_attachment(self, grade_id):
        return self._update(
            "grades",
            grade_id,
            {
                "attachment_path": None,
                "attachment_original_name": None,
                "attachment_mime": None,
                "attachment_size": None,
            },
        )

    # Special assessments

    def _special_view(self, item):
        cls = self._tables["classes"].get(item["class_id"]) or {}
        teacher = self._tables["users"].get(cls.get("teacher_id")) or {}
        student = self._tables["students"].get(item["student_id"]) or {}
        item.update(
            {
                "class_name": cls.get("name"),
                "class_subject": cls.get("subject"),
                "teacher_email": teacher.get("email"),
                "student_name": student.get("name"),
            }
        )
        return item

    def create_special_assessment(
        self, student_id, class_id, type_, name, description, weight, grade
    ):
        return self._insert(
            "special_assessments",
            {
                "student_id": student_id,
                "class_id": class_id,
                "type": type_,
                "name": name,
                "description": description,
                "weight": weight,
                "grade": grade,
                "created_at": self._clock(),
            },
        )

    def list_special_assessments_for_class(self, class_id):
        return [
            self._special_view(a)
            for a in self._rows("special_assessments")
            if a["class_id"] == class_id
        ]

    def list_special_assessments_for_students(self, student_ids):
        student_ids = set(student_ids)
        return [
            self._special_view(a)
            for a in self._rows("special_assessments")
            if a["student_id"] in student_ids
        ]

    def delete_special_assessment(self, assessment_id, class_id):
        with self._lock:
            item = self._tables["special_assessments"].get(assessment_id)
            if item is None or item["class_id"] != class_id:
                return False
            return self._delete("special_assessments", assessment_id)

    # Notifications

    def create_notification(self, student_id, message, type_="grade"):
        row_id = self._insert(
            "grade_notifications",
            {
                "student_id": student_id,
                "message": message,
                "type": type_,
                "created_at": self._clock(),
                "read_at": None,
            },
        )
        return self._get("grade_notifications", row_id)

    def list_notifications(self, student_ids):
        student_ids = set(student_ids)
        rows = [
            n for n in self._rows("grade_notifications") if n["student_id"] in student_ids
        ]
        return sorted(rows, key=lambda n: (n["created_at"], n["id"]), reverse=True)

    def mark_notification_read(self, notification_id, student_ids):
        with self._lock:
            row = self._tables["grade_notifications"].get(notification_id)
            if row is None or row["student_id"] not in set(student_ids):
                return False
            if row["read_at"] is None:
                row["read_at"] = self._clock()
            return True
