import logging
from datetime import date

from utils.passwords import hash_password
from utils.student_names import name_from_email

logger = logging.getLogger(__name__)

DEMO_TEACHER_EMAIL = "teacher@example.com"
DEMO_STUDENT_EMAIL = "max.muster@example.com"
DEMO_PASSWORD = "Demo-Password-2024"
DEMO_TEMPLATES = (
    # name, category, weight, grade
    ("SA 1", "Exam", 40, 2),
    ("Test 1", "Test", 30, 1.5),
    ("Participation", "Participation", 30, 3),
)


def seed_admin(store, email, password):
    """Create an admin who must change the password on first login. Idempotent."""
    if not email or not password:
        logger.warning("SEED_ADMIN set but ADMIN_EMAIL/ADMIN_PASS missing; skipping")
        return None
    email = email.strip().lower()
    existing = store.get_user_by_email(email)
    if existing:
        return existing["id"]
    user_id = store.create_user(
        email, hash_password(password), "admin", must_change_password=True
    )
    logger.info(f"Seeded admin {email}")
    return user_id


def seed_demo(store, school_year="2024/25"):
    """Demo teacher, student, class, templates, grades and one notification."""
    if store.get_user_by_email(DEMO_TEACHER_EMAIL):
        return False

    teacher_id = store.create_user(
        DEMO_TEACHER_EMAIL, hash_password(DEMO_PASSWORD), "teacher"
    )
    store.create_user(DEMO_STUDENT_EMAIL, hash_password(DEMO_PASSWORD), "student")
    class_id = store.create_class("3AHWII", "Informatics", teacher_id)
    student_id = store.create_student(
        name_from_email(DEMO_STUDENT_EMAIL), DEMO_STUDENT_EMAIL, class_id, school_year
    )
    for offset, (name, category, weight, grade) in enumerate(DEMO_TEMPLATES):
        template_id = store.create_template(
            class_id, name, category, weight, date(2024, 10, 1 + offset * 7), None
        )
        store.create_grade(student_id, class_id, template_id, grade)
    store.create_notification(student_id, "Welcome to the gradebook.", "info")
    logger.info("Seeded demo data")
    return True
