import math
from collections import OrderedDict
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

import numpy as np


def to_number(value):
    """Coerce a stored grade/weight to float; None for anything not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def round2(value):
    """Round half away from zero on the decimal representation, e.g. 2.675 -> 2.68."""
    if value is None:
        return None
    quantized = Decimal(repr(float(value))).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP
    )
    return float(quantized)


def weighted_average(rows, value_key="value", weight_key="weight"):
    total_weight = 0.0
    total = 0.0
    for row in rows:
        value = to_number(row.get(value_key))
        weight = to_number(row.get(weight_key))
        if value is None or weight is None:
            continue
        total += value * weight
        total_weight += weight
    if total_weight == 0:
        return None
    return round2(total / total_weight)


def compute_averages(rows):
    """Weighted averages per subject and overall.

    Input rows are ``{"value", "weight", "subject"}``. Rows with a missing or
    non-numeric value or weight are skipped. A subject whose rows carry no weight
    reports ``None``.

    Returns ``{"subjects": [{"subject", "average", "count"}], "overall": float|None}``.
    """
    subjects = OrderedDict()
    overall_total = 0.0
    overall_weight = 0.0
    for row in rows:
        subject = row.get("subject") or ""
        bucket = subjects.setdefault(subject, {"total": 0.0, "weight": 0.0, "count": 0})
        value = to_number(row.get("value"))
        weight = to_number(row.get("weight"))
        if value is None or weight is None:
            continue
        bucket["total"] += value * weight
        bucket["weight"] += weight
        bucket["count"] += 1
        overall_total += value * weight
        overall_weight += weight

    summary = []
    for subject, bucket in subjects.items():
        average = None
        if bucket["weight"] != 0:
            average = round2(bucket["total"] / bucket["weight"])
        summary.append(
            {"subject": subject, "average": average, "count": bucket["count"]}
        )
    overall = round2(overall_total / overall_weight) if overall_weight != 0 else None
    return {"subjects": summary, "overall": overall}


def compute_class_averages(rows):
    """Unweighted mean of raw grade values per subject (peer comparison)."""
    values_by_subject = OrderedDict()
    for row in rows:
        subject = row.get("subject") or ""
        values = values_by_subject.setdefault(subject, [])
        value = to_number(row.get("value"))
        if value is not None:
            values.append(value)
    return [
        {
            "subject": subject,
            "average": round2(float(np.mean(values))) if values else None,
            "count": len(values),
        }
        for subject, values in values_by_subject.items()
    ]


def _summarize(entries):
    """Count, mean, best (lowest), worst (highest), spread and tied student names."""
    values = [e["value"] for e in entries]
    if not values:
        return {
            "count": 0,
            "average": None,
            "best": None,
            "worst": None,
            "std_dev": None,
            "best_students": [],
            "worst_students": [],
        }
    arr = np.asarray(values, dtype=float)
    best = float(arr.min())
    worst = float(arr.max())
    return {
        "count": len(values),
        "average": round2(float(arr.mean())),
        "best": best,
        "worst": worst,
        "std_dev": round2(float(arr.std())),
        "best_students": sorted(
            {e["student_name"] for e in entries if e["value"] == best}
        ),
        "worst_students": sorted(
            {e["student_name"] for e in entries if e["value"] == worst}
        ),
    }


def _grade_matches_template(grade, template) -> bool:
    # Legacy rows without a template id are matched by name
    if grade.get("template_id") is not None:
        return grade["template_id"] == template["id"]
    return (grade.get("template_name") or "") == (template.get("name") or "")


def compute_template_statistics(templates, grades):
    """Per-template statistics for one class.

    ``grades`` rows carry ``template_id`` (may be None), ``template_name``,
    ``value`` and ``student_name``.
    """
    stats = []
    for template in templates:
        entries = []
        for grade in grades:
            if not _grade_matches_template(grade, template):
                continue
            value = to_number(grade.get("value"))
            if value is None:
                continue
            entries.append(
                {"value": value, "student_name": grade.get("student_name") or ""}
            )
        row = {
            "template_id": template["id"],
            "name": template.get("name"),
            "category": template.get("category"),
            "weight": to_number(template.get("weight")),
        }
        row.update(_summarize(entries))
        stats.append(row)
    return stats


def compute_special_statistics(assessments):
    """Statistics for special assessments grouped by their name."""
    grouped = OrderedDict()
    for item in assessments:
        value = to_number(item.get("grade"))
        entries = grouped.setdefault(item.get("name") or "", [])
        if value is None:
            continue
        entries.append({"value": value, "student_name": item.get("student_name") or ""})
    stats = []
    for name, entries in grouped.items():
        row = {"name": name}
        row.update(_summarize(entries))
        stats.append(row)
    return stats


def compute_overall_class_averages(rows):
    """Overall unweighted and weighted averages across every graded item of a class."""
    values = [v for v in (to_number(r.get("value")) for r in rows) if v is not None]
    unweighted = round2(float(np.mean(values))) if values else None
    return {"unweighted": unweighted, "weighted": weighted_average(rows)}


def _as_datetime(value):
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return None


def normalize_grade_row(row):
    """Shape a joined grade row into the common export/average row."""
    subject = row.get("class_subject") or row.get("template_name") or ""
    return {
        "id": row.get("id"),
        "kind": "grade",
        "subject": subject,
        "graded_at": _as_datetime(row.get("template_date"))
        or _as_datetime(row.get("created_at")),
        "value": to_number(row.get("grade")),
        "weight": to_number(row.get("template_weight")),
        "teacher": row.get("teacher_email") or "",
        "comment": row.get("note") or row.get("template_name") or "",
        "class_id": row.get("class_id"),
        "class_name": row.get("class_name"),
        "template_id": row.get("template_id"),
        "template_name": row.get("template_name"),
        "category": row.get("template_category"),
        "has_attachment": bool(row.get("attachment_path")),
        "attachment_name": row.get("attachment_original_name"),
        "external_link": row.get("external_link"),
    }


def normalize_special_row(row):
    name = row.get("name") or row.get("type") or ""
    description = row.get("description")
    return {
        "id": row.get("id"),
        "kind": "special",
        "subject": row.get("class_subject") or name,
        "graded_at": _as_datetime(row.get("created_at")),
        "value": to_number(row.get("grade")),
        "weight": to_number(row.get("weight")),
        "teacher": row.get("teacher_email") or "",
        "comment": f"{name}: {description}" if description else name,
        "class_id": row.get("class_id"),
        "class_name": row.get("class_name"),
        "template_id": None,
        "template_name": name,
        "category": row.get("type"),
        "has_attachment": False,
        "attachment_name": None,
        "external_link": None,
    }
