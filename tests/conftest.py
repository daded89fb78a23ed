import os
import re
import sys

import pytest

# Ensure project root is on sys.path so tests can import app.py
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app import create_app
from utils.passwords import hash_password

PASSWORD = "Password123"


def extract_csrf(html: str) -> str:
    pattern = r'<input[^>]*name=["\']_csrf["\'][^>]*value=["\']([^"\']+)["\']'
    m = re.search(pattern, html, flags=re.IGNORECASE)
    assert m, "CSRF token not found in form"
    return m.group(1)


@pytest.fixture
def upload_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def app(upload_dir):
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "DATA_BACKEND": "memory",
            "SESSION_BACKEND": "memory",
            "GRADE_ATTACHMENT_DIR": str(upload_dir),
            "INITIAL_PASSWORD": "Initial-Pass-1",
            "MIN_PASSWORD_LENGTH": 10,
            "SEED_ADMIN": False,
            "SEED_DEMO": False,
            "NOTIFY_BY_EMAIL": False,
            "MAIL_DEFAULT_SENDER": "gradebook@example.com",
        }
    )
    return app


@pytest.fixture
def store(app):
    return app.extensions["store"]


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(store, email, role, password=PASSWORD, status="active", must_change=False):
    return store.create_user(
        email, hash_password(password), role, status=status, must_change_password=must_change
    )


def csrf_from(client, path="/login"):
    return extract_csrf(client.get(path).get_data(as_text=True))


def login(client, email, password=PASSWORD):
    token = csrf_from(client)
    return client.post(
        "/login",
        data={"_csrf": token, "email": email, "password": password},
        follow_redirects=False,
    )


@pytest.fixture
def school(store):
    """A teacher with one class, one enrolled student and two templates."""
    teacher_id = make_user(store, "teacher@example.com", "teacher")
    other_teacher_id = make_user(store, "other.teacher@example.com", "teacher")
    make_user(store, "max.muster@example.com", "student")
    admin_id = make_user(store, "admin@example.com", "admin")
    class_id = store.create_class("3AHWII", "Informatics", teacher_id)
    student_id = store.create_student(
        "Max Muster", "max.muster@example.com", class_id, "2024/25"
    )
    exam_id = store.create_template(class_id, "SA 1", "Exam", 40, None, None)
    test_id = store.create_template(class_id, "Test 1", "Test", 60, None, None)
    return {
        "admin_id": admin_id,
        "teacher_id": teacher_id,
        "other_teacher_id": other_teacher_id,
        "class_id": class_id,
        "student_id": student_id,
        "exam_id": exam_id,
        "test_id": test_id,
    }
