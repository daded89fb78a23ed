import pytest

from conftest import csrf_from, login, make_user


@pytest.fixture
def teacher_client(client, school):
    login(client, "teacher@example.com")
    return client


def _token(client):
    return csrf_from(client, "/teacher/classes")


def _add_grade(client, school, **fields):
    data = {
        "_csrf": _token(client),
        "template_id": str(school["exam_id"]),
        "grade": "2",
    }
    data.update(fields)
    return client.post(
        f"/teacher/add-grade/{school['class_id']}/{school['student_id']}", data=data
    )


def test_lists_only_own_classes(teacher_client, store, school):
    store.create_class("9Z", "History", school["other_teacher_id"])
    body = teacher_client.get("/teacher/classes").get_data(as_text=True)
    assert "3AHWII" in body
    assert "9Z" not in body


def test_foreign_class_is_not_found(teacher_client, store, school):
    foreign = store.create_class("9Z", "History", school["other_teacher_id"])
    for path in (
        f"/teacher/students/{foreign}",
        f"/teacher/grades/{foreign}",
        f"/teacher/grade-templates/{foreign}",
        f"/teacher/class-statistics/{foreign}",
    ):
        response = teacher_client.get(path)
        assert response.status_code == 404
        assert "Class not found." in response.get_data(as_text=True)


def test_create_and_delete_class(teacher_client, store, school):
    response = teacher_client.post(
        "/teacher/create-class",
        data={"_csrf": _token(teacher_client), "name": "5C", "subject": "Biology"},
    )
    assert response.status_code == 302
    (created,) = store.list_classes(query="Biology")
    assert created["teacher_id"] == school["teacher_id"]

    response = teacher_client.post(
        "/teacher/create-class",
        data={"_csrf": _token(teacher_client), "name": "", "subject": ""},
    )
    assert response.status_code == 400

    response = teacher_client.post(
        f"/teacher/delete-class/{created['id']}", data={"_csrf": _token(teacher_client)}
    )
    assert response.status_code == 302
    assert store.get_class(created["id"]) is None


def test_enroll_student(teacher_client, store, school):
    make_user(store, "lisa.maier@example.com", "student")
    make_user(store, "gone@example.com", "student", status="deleted")
    class_id = school["class_id"]
    response = teacher_client.post(
        f"/teacher/add-student/{class_id}",
        data={"_csrf": _token(teacher_client), "email": "Lisa.Maier@example.com"},
    )
    assert response.status_code == 302
    assert "Lisa Maier" in [s["name"] for s in store.list_students(class_id)]

    for email in ("gone@example.com", "teacher@example.com", "nobody@example.com"):
        response = teacher_client.post(
            f"/teacher/add-student/{class_id}",
            data={"_csrf": _token(teacher_client), "email": email},
        )
        assert response.status_code == 400

    response = teacher_client.post(
        f"/teacher/add-student/{class_id}",
        data={"_csrf": _token(teacher_client), "email": "max.muster@example.com"},
    )
    assert response.status_code == 400
    assert "Student is already in this class." in response.get_data(as_text=True)


def test_add_grade_records_grade_and_notifies(teacher_client, store, school):
    response = _add_grade(teacher_client, school, grade="1.5", note="Well done")
    assert response.status_code == 302
    assert response.headers["Location"].endswith(
        f"/teacher/student-grades/{school['class_id']}/{school['student_id']}"
    )
    (grade,) = store.list_grades_for_students([school["student_id"]])
    assert grade["grade"] == 1.5
    assert grade["note"] == "Well done"
    (notification,) = store.list_notifications([school["student_id"]])
    assert notification["message"] == "New grade recorded."
    assert notification["read_at"] is None


def test_add_grade_rejects_duplicates(teacher_client, school):
    assert _add_grade(teacher_client, school).status_code == 302
    response = _add_grade(teacher_client, school, grade="3")
    assert response.status_code == 409
    assert "This student already has a grade for this template." in response.get_data(
        as_text=True
    )


@pytest.mark.parametrize("value", ["0", "5.5", "abc", ""])
def test_add_grade_rejects_out_of_range(teacher_client, school, value):
    response = _add_grade(teacher_client, school, grade=value)
    assert response.status_code == 400
    assert "Grade must be a number between 1 and 5." in response.get_data(as_text=True)


def test_add_grade_rejects_foreign_template(teacher_client, store, school):
    other_class = store.create_class("1X", "Art", school["teacher_id"])
    foreign_template = store.create_template(other_class, "Drawing", "Project", 50, None, None)
    response = _add_grade(teacher_client, school, template_id=str(foreign_template))
    assert response.status_code == 400
    assert "Please choose a template of this class." in response.get_data(as_text=True)


def test_add_grade_requires_csrf(teacher_client, school):
    response = _add_grade(teacher_client, school, _csrf="bogus")
    assert response.status_code == 403


def test_add_grade_with_link(teacher_client, store, school):
    response = _add_grade(
        teacher_client, school, external_link="https://example.com/feedback"
    )
    assert response.status_code == 302
    (grade,) = store.list_grades_for_students([school["student_id"]])
    assert grade["external_link"] == "https://example.com/feedback"

    response = _add_grade(
        teacher_client,
        school,
        template_id=str(school["test_id"]),
        external_link="javascript:alert(1)",
    )
    assert response.status_code == 400


def test_templates(teacher_client, store, school):
    class_id = school["class_id"]
    response = teacher_client.post(
        f"/teacher/create-template/{class_id}",
        data={
            "_csrf": _token(teacher_client),
            "name": "Homework 1",
            "category": "Homework",
            "weight": "120",
        },
    )
    assert response.status_code == 400
    assert "Weight must be a number between 0 and 100." in response.get_data(as_text=True)

    response = teacher_client.post(
        f"/teacher/create-template/{class_id}",
        data={
            "_csrf": _token(teacher_client),
            "name": "Homework 1",
            "category": "Essay",
            "weight": "10",
        },
    )
    assert response.status_code == 400

    response = teacher_client.post(
        f"/teacher/create-template/{class_id}",
        data={
            "_csrf": _token(teacher_client),
            "name": "Homework 1",
            "category": "Homework",
            "weight": "10",
            "date": "2024-10-01",
        },
    )
    assert response.status_code == 302
    names = [t["name"] for t in store.list_templates([class_id])]
    assert names[0] == "Homework 1"


def test_delete_template_removes_its_grades(teacher_client, store, school):
    assert _add_grade(teacher_client, school).status_code == 302
    response = teacher_client.post(
        f"/teacher/delete-template/{school['class_id']}/{school['exam_id']}",
        data={"_csrf": _token(teacher_client)},
    )
    assert response.status_code == 302
    assert store.list_grades_for_students([school["student_id"]]) == []


def test_special_assessments(teacher_client, store, school):
    class_id = school["class_id"]
    base = {
        "_csrf": _token(teacher_client),
        "student_id": str(school["student_id"]),
        "weight": "20",
        "grade": "1",
    }
    response = teacher_client.post(
        f"/teacher/special-assessments/{class_id}", data=dict(base, type="Custom")
    )
    assert response.status_code == 400
    assert "A name is required for custom assessments." in response.get_data(as_text=True)

    response = teacher_client.post(
        f"/teacher/special-assessments/{class_id}", data=dict(base, type="Presentation")
    )
    assert response.status_code == 302
    (item,) = store.list_special_assessments_for_class(class_id)
    assert item["name"] == "Presentation"
    messages = [n["message"] for n in store.list_notifications([school["student_id"]])]
    assert messages == ["New special assessment recorded."]

    response = teacher_client.post(
        f"/teacher/delete-special-assessment/{class_id}/{item['id']}",
        data={"_csrf": _token(teacher_client)},
    )
    assert response.status_code == 302
    assert store.list_special_assessments_for_class(class_id) == []


def test_grades_overview_and_statistics(teacher_client, store, school):
    class_id, student_id = school["class_id"], school["student_id"]
    store.create_grade(student_id, class_id, school["exam_id"], 1.5)
    store.create_grade(student_id, class_id, school["test_id"], 3)

    body = teacher_client.get(f"/teacher/grades/{class_id}").get_data(as_text=True)
    assert "2.40" in body

    body = teacher_client.get(
        f"/teacher/student-grades/{class_id}/{student_id}"
    ).get_data(as_text=True)
    assert "2.40" in body

    response = teacher_client.get(f"/teacher/class-statistics/{class_id}")
    assert response.status_code == 200
    assert "SA 1" in response.get_data(as_text=True)


def test_delete_student_removes_grades(teacher_client, store, school):
    assert _add_grade(teacher_client, school).status_code == 302
    response = teacher_client.post(
        f"/teacher/delete-student/{school['class_id']}/{school['student_id']}",
        data={"_csrf": _token(teacher_client)},
    )
    assert response.status_code == 302
    assert store.get_student(school["student_id"]) is None
    assert store.list_grades_for_students([school["student_id"]]) == []
