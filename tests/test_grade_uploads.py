import io
import os

import pytest

from conftest import csrf_from, login

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
PDF_BYTES = b"%PDF-1.4\n%test\n"


@pytest.fixture
def teacher_client(client, school):
    login(client, "teacher@example.com")
    return client


def _post(client, school, filename, payload, mime, **fields):
    data = {
        "_csrf": csrf_from(client, "/teacher/classes"),
        "template_id": str(school["exam_id"]),
        "grade": "2",
        "attachment": (io.BytesIO(payload), filename, mime),
    }
    data.update(fields)
    return client.post(
        f"/teacher/add-grade/{school['class_id']}/{school['student_id']}",
        data=data,
        content_type="multipart/form-data",
    )


def test_valid_png_is_stored(teacher_client, store, school, upload_dir):
    response = _post(teacher_client, school, "scan.png", PNG_BYTES, "image/png")
    assert response.status_code == 302
    (grade,) = store.list_grades_for_students([school["student_id"]])
    assert grade["attachment_original_name"] == "scan.png"
    assert grade["attachment_mime"] == "image/png"
    assert grade["attachment_size"] == len(PNG_BYTES)
    assert os.listdir(upload_dir) == [grade["attachment_path"]]


def test_disallowed_type_is_never_stored(teacher_client, store, school, upload_dir):
    response = _post(
        teacher_client, school, "report.exe", b"MZ\x90\x00", "application/octet-stream"
    )
    assert response.status_code == 400
    assert "Only PDF, JPG and PNG files are allowed." in response.get_data(as_text=True)
    assert os.listdir(upload_dir) == []
    assert store.list_grades_for_students([school["student_id"]]) == []


def test_bad_csrf_removes_stored_file(teacher_client, store, school, upload_dir):
    response = _post(
        teacher_client, school, "scan.png", PNG_BYTES, "image/png", _csrf="forged"
    )
    assert response.status_code == 403
    assert os.listdir(upload_dir) == []
    assert store.list_grades_for_students([school["student_id"]]) == []


def test_signature_mismatch_removes_stored_file(teacher_client, school, upload_dir):
    response = _post(teacher_client, school, "scan.png", PDF_BYTES, "image/png")
    assert response.status_code == 400
    assert "File content does not match its type." in response.get_data(as_text=True)
    assert os.listdir(upload_dir) == []


def test_file_and_link_together_are_rejected(teacher_client, school, upload_dir):
    response = _post(
        teacher_client,
        school,
        "work.pdf",
        PDF_BYTES,
        "application/pdf",
        external_link="https://example.com/work",
    )
    assert response.status_code == 400
    assert "Provide either a file or a link, not both." in response.get_data(as_text=True)
    assert os.listdir(upload_dir) == []


def test_invalid_grade_removes_stored_file(teacher_client, school, upload_dir):
    response = _post(teacher_client, school, "work.pdf", PDF_BYTES, "application/pdf", grade="7")
    assert response.status_code == 400
    assert os.listdir(upload_dir) == []


def test_too_large_file_is_removed(app, teacher_client, school, upload_dir):
    app.config["GRADE_FILE_MAX_MB"] = 0
    response = _post(teacher_client, school, "work.pdf", PDF_BYTES, "application/pdf")
    assert response.status_code == 400
    assert "File is too large" in response.get_data(as_text=True)
    assert os.listdir(upload_dir) == []


def test_duplicate_grade_keeps_only_first_file(teacher_client, store, school, upload_dir):
    assert _post(teacher_client, school, "a.png", PNG_BYTES, "image/png").status_code == 302
    response = _post(teacher_client, school, "b.png", PNG_BYTES, "image/png")
    assert response.status_code == 409
    (grade,) = store.list_grades_for_students([school["student_id"]])
    assert os.listdir(upload_dir) == [grade["attachment_path"]]


def test_store_failure_removes_stored_file(
    teacher_client, store, school, upload_dir, monkeypatch
):
    def fail(*args, **kwargs):
        raise RuntimeError("insert failed")

    monkeypatch.setattr(store, "create_grade", fail)
    response = _post(teacher_client, school, "scan.png", PNG_BYTES, "image/png")
    assert response.status_code == 500
    assert os.listdir(upload_dir) == []
    assert store.list_grades_for_students([school["student_id"]]) == []


def test_delete_attachment_and_grade_remove_files(teacher_client, store, school, upload_dir):
    assert _post(teacher_client, school, "a.png", PNG_BYTES, "image/png").status_code == 302
    (grade,) = store.list_grades_for_students([school["student_id"]])
    response = teacher_client.post(
        f"/teacher/delete-grade-attachment/{school['class_id']}/{grade['id']}",
        data={"_csrf": csrf_from(teacher_client, "/teacher/classes")},
    )
    assert response.status_code == 302
    assert os.listdir(upload_dir) == []
    assert store.get_grade(grade["id"])["attachment_path"] is None

    response = _post(
        teacher_client,
        school,
        "b.pdf",
        PDF_BYTES,
        "application/pdf",
        template_id=str(school["test_id"]),
    )
    assert response.status_code == 302
    graded = {g["template_id"]: g for g in store.list_grades_for_students([school["student_id"]])}
    second = graded[school["test_id"]]
    response = teacher_client.post(
        f"/teacher/delete-grade/{school['class_id']}/{second['id']}",
        data={"_csrf": csrf_from(teacher_client, "/teacher/classes")},
    )
    assert response.status_code == 302
    assert os.listdir(upload_dir) == []
    assert store.get_grade(second["id"]) is None
