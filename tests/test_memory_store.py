from datetime import datetime, timedelta

import pytest

from utils.errors import ConflictError
from utils.memory_store import MemoryGradeStore


class StepClock:
    def __init__(self):
        self.now = datetime(2024, 9, 1, 8, 0)

    def __call__(self):
        self.now += timedelta(minutes=1)
        return self.now


@pytest.fixture
def mem():
    return MemoryGradeStore(clock=StepClock())


def _class_with_grade(mem):
    teacher_id = mem.create_user("t@example.com", "hash", "teacher")
    class_id = mem.create_class("1A", "Math", teacher_id)
    student_id = mem.create_student("Anna", "anna@example.com", class_id, "2024/25")
    template_id = mem.create_template(class_id, "SA 1", "Exam", 40, None, None)
    grade_id = mem.create_grade(student_id, class_id, template_id, 2)
    mem.create_special_assessment(student_id, class_id, "Presentation", "Talk", None, 10, 1)
    mem.create_notification(student_id, "New grade recorded.")
    return teacher_id, class_id, student_id, template_id, grade_id


def test_unique_email_and_grade_per_template(mem):
    mem.create_user("a@example.com", "hash", "student")
    with pytest.raises(ConflictError):
        mem.create_user("a@example.com", "hash", "teacher")

    _, class_id, student_id, template_id, _ = _class_with_grade(mem)
    with pytest.raises(ConflictError):
        mem.create_grade(student_id, class_id, template_id, 3)
    with pytest.raises(ConflictError):
        mem.create_student("Anna", "anna@example.com", class_id, "2024/25")


def test_delete_class_cascades(mem):
    _, class_id, student_id, template_id, grade_id = _class_with_grade(mem)
    assert mem.delete_class(class_id)
    assert mem.get_student(student_id) is None
    assert mem.get_template(template_id) is None
    assert mem.get_grade(grade_id) is None
    assert mem.list_special_assessments_for_students([student_id]) == []
    assert mem.list_notifications([student_id]) == []


def test_delete_template_removes_its_grades_only(mem):
    _, class_id, student_id, template_id, grade_id = _class_with_grade(mem)
    mem.delete_template(template_id)
    assert mem.get_grade(grade_id) is None
    assert mem.get_student(student_id) is not None
    assert len(mem.list_special_assessments_for_class(class_id)) == 1


def test_grade_view_joins_template_class_and_student(mem):
    teacher_id, class_id, student_id, template_id, grade_id = _class_with_grade(mem)
    grade = mem.get_grade(grade_id, class_id=class_id)
    assert grade["template_name"] == "SA 1"
    assert grade["template_weight"] == 40
    assert grade["class_subject"] == "Math"
    assert grade["teacher_email"] == "t@example.com"
    assert grade["student_name"] == "Anna"
    assert mem.get_grade(grade_id, class_id=class_id + 1) is None


def test_class_ownership_filter(mem):
    teacher_id, class_id, *_ = _class_with_grade(mem)
    other_id = mem.create_user("o@example.com", "hash", "teacher")
    assert mem.get_class(class_id, teacher_id=teacher_id)["student_count"] == 1
    assert mem.get_class(class_id, teacher_id=other_id) is None
    assert [c["id"] for c in mem.list_classes(query="mat")] == [class_id]
    assert mem.list_classes(teacher_id=other_id) == []


def test_notification_read_once(mem):
    _, _, student_id, _, _ = _class_with_grade(mem)
    (notification,) = mem.list_notifications([student_id])
    assert notification["read_at"] is None
    assert mem.mark_notification_read(notification["id"], [student_id])
    first = mem.list_notifications([student_id])[0]["read_at"]
    assert first is not None
    assert mem.mark_notification_read(notification["id"], [student_id])
    assert mem.list_notifications([student_id])[0]["read_at"] == first
    assert not mem.mark_notification_read(notification["id"], [student_id + 1])


def test_enrollments_by_email(mem):
    teacher_id, class_id, *_ = _class_with_grade(mem)
    second = mem.create_class("2B", "Physics", teacher_id)
    mem.create_student("Anna", "anna@example.com", second, "2024/25")
    enrollments = mem.list_enrollments_by_email("anna@example.com")
    assert sorted(e["class_subject"] for e in enrollments) == ["Math", "Physics"]
    assert mem.list_enrollments_by_email("nobody@example.com") == []
