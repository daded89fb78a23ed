from decimal import Decimal

from utils.grade_aggregation import (
    compute_averages,
    compute_class_averages,
    compute_overall_class_averages,
    compute_special_statistics,
    compute_template_statistics,
    normalize_grade_row,
    normalize_special_row,
    round2,
    weighted_average,
)


def test_weighted_math_average():
    rows = [
        {"value": 1.5, "weight": 40, "subject": "Math"},
        {"value": 3, "weight": 60, "subject": "Math"},
    ]
    result = compute_averages(rows)
    assert result["subjects"] == [{"subject": "Math", "average": 2.4, "count": 2}]
    assert result["overall"] == 2.4


def test_averages_per_subject_and_overall():
    rows = [
        {"value": 1, "weight": 50, "subject": "Math"},
        {"value": 2, "weight": 50, "subject": "Math"},
        {"value": 4, "weight": 100, "subject": "English"},
    ]
    result = compute_averages(rows)
    by_subject = {s["subject"]: s["average"] for s in result["subjects"]}
    assert by_subject == {"Math": 1.5, "English": 4.0}
    assert result["overall"] == 2.75


def test_empty_and_zero_weight_give_none():
    assert compute_averages([])["overall"] is None
    result = compute_averages([{"value": 2, "weight": 0, "subject": "Art"}])
    assert result["overall"] is None
    assert result["subjects"][0]["average"] is None


def test_malformed_rows_are_skipped():
    rows = [
        {"value": "abc", "weight": 10, "subject": "Math"},
        {"value": 2, "weight": None, "subject": "Math"},
        {"value": None, "weight": 10, "subject": "Math"},
        {"value": float("nan"), "weight": 10, "subject": "Math"},
        {"value": True, "weight": 10, "subject": "Math"},
        {"value": "3", "weight": "10", "subject": "Math"},
        {"value": Decimal("1.00"), "weight": Decimal("10.00"), "subject": "Math"},
    ]
    result = compute_averages(rows)
    assert result["overall"] == 2.0
    assert result["subjects"][0]["count"] == 2


def test_round_half_away_from_zero():
    assert round2(2.675) == 2.68
    assert round2(2.665) == 2.67
    assert round2(8 / 3) == 2.67
    assert round2(None) is None


def test_weighted_average_with_custom_keys():
    rows = [{"grade": 1, "w": 1}, {"grade": 4, "w": 2}]
    assert weighted_average(rows, value_key="grade", weight_key="w") == 3.0
    assert weighted_average([]) is None


def test_class_averages_ignore_weights():
    rows = [
        {"subject": "SA 1", "value": 1, "weight": 90},
        {"subject": "SA 1", "value": 4, "weight": 10},
        {"subject": "Test 1", "value": None},
    ]
    result = compute_class_averages(rows)
    assert result == [
        {"subject": "SA 1", "average": 2.5, "count": 2},
        {"subject": "Test 1", "average": None, "count": 0},
    ]


def test_template_statistics_best_is_lowest():
    templates = [{"id": 1, "name": "SA 1", "category": "Exam", "weight": 40}]
    grades = [
        {"template_id": 1, "template_name": "SA 1", "value": 2, "student_name": "Anna"},
        {"template_id": 1, "template_name": "SA 1", "value": 2, "student_name": "Ben"},
        {"template_id": 1, "template_name": "SA 1", "value": 4, "student_name": "Carl"},
    ]
    (stats,) = compute_template_statistics(templates, grades)
    assert stats["count"] == 3
    assert stats["average"] == 2.67
    assert stats["best"] == 2
    assert stats["worst"] == 4
    assert stats["best_students"] == ["Anna", "Ben"]
    assert stats["worst_students"] == ["Carl"]


def test_template_statistics_legacy_rows_match_by_name():
    templates = [
        {"id": 1, "name": "SA 1", "category": "Exam", "weight": 40},
        {"id": 2, "name": "SA 2", "category": "Exam", "weight": 40},
    ]
    grades = [
        {"template_id": None, "template_name": "SA 2", "value": 3, "student_name": "Anna"},
        {"template_id": 2, "template_name": "SA 1", "value": 1, "student_name": "Ben"},
    ]
    first, second = compute_template_statistics(templates, grades)
    assert first["count"] == 0
    assert first["average"] is None
    assert first["best_students"] == []
    assert second["count"] == 2
    assert second["best_students"] == ["Ben"]
    assert second["worst_students"] == ["Anna"]


def test_special_statistics_grouped_by_name():
    items = [
        {"name": "Presentation", "grade": 1, "student_name": "Anna"},
        {"name": "Presentation", "grade": 3, "student_name": "Ben"},
        {"name": "Poster", "grade": 2, "student_name": "Anna"},
    ]
    stats = {s["name"]: s for s in compute_special_statistics(items)}
    assert stats["Presentation"]["average"] == 2.0
    assert stats["Poster"]["count"] == 1


def test_overall_class_averages():
    rows = [{"value": 1, "weight": 30}, {"value": 4, "weight": 10}]
    result = compute_overall_class_averages(rows)
    assert result == {"unweighted": 2.5, "weighted": 1.75}


def test_normalize_rows():
    grade = normalize_grade_row(
        {
            "id": 7,
            "grade": Decimal("2.00"),
            "note": None,
            "template_name": "SA 1",
            "template_weight": Decimal("40.00"),
            "template_date": None,
            "created_at": None,
            "class_subject": "Math",
            "teacher_email": "t@example.com",
        }
    )
    assert grade["subject"] == "Math"
    assert grade["value"] == 2.0
    assert grade["weight"] == 40.0
    assert grade["comment"] == "SA 1"

    special = normalize_special_row(
        {"name": "Talk", "description": "Climate", "grade": 1, "weight": 10, "class_subject": None}
    )
    assert special["subject"] == "Talk"
    assert special["comment"] == "Talk: Climate"
