"""CSV and PDF renderers for a student's grade list.

Both consume normalized grade rows (see ``utils.grade_aggregation.normalize_grade_row``):
``{"subject", "graded_at", "value", "weight", "teacher", "comment"}``.
"""

import csv
import io
import re

from utils.grade_aggregation import round2, to_number

CSV_HEADER = ["Subject", "Date", "Grade", "Weight", "Teacher", "Comment"]
PDF_TABLE_HEADER = "Subject | Date | Grade | Weight | Comment"

# Spreadsheet apps evaluate cells starting with these as formulas
FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")

_NON_PRINTABLE = re.compile(r"[^\x20-\x7E]")


def defuse_formula(value) -> str:
    text = "" if value is None else str(value)
    if text.startswith(FORMULA_PREFIXES):
        return "'" + text
    return text


def format_date(value, date_format="%d.%m.%Y") -> str:
    if value is None:
        return ""
    return value.strftime(date_format)


def format_grade(value) -> str:
    number = to_number(value)
    if number is None:
        return ""
    return f"{round2(number):.2f}"


def format_weight(value) -> str:
    number = to_number(value)
    if number is None:
        return ""
    if number.is_integer():
        return str(int(number))
    return str(number)


def build_grades_csv(grades, date_format="%d.%m.%Y") -> str:
    """Formula guard on every field, then RFC 4180 quoting by the csv writer."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")
    writer.writerow(CSV_HEADER)
    for grade in grades:
        writer.writerow(
            [
                defuse_formula(grade.get("subject")),
                defuse_formula(format_date(grade.get("graded_at"), date_format)),
                defuse_formula(format_grade(grade.get("value"))),
                defuse_formula(format_weight(grade.get("weight"))),
                defuse_formula(grade.get("teacher") or ""),
                defuse_formula(grade.get("comment") or ""),
            ]
        )
    return buffer.getvalue()


def sanitize_pdf_text(value) -> str:
    text = "" if value is None else str(value)
    text = _NON_PRINTABLE.sub("?", text)
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def build_grade_report_lines(
    student_name, class_names, subjects, grades, date_format="%d.%m.%Y"
):
    lines = [
        "Grade report",
        f"Student: {student_name or ''}",
        f"Class: {', '.join(class_names)}",
        f"Subject: {', '.join(subjects)}",
        "",
        PDF_TABLE_HEADER,
    ]
    for grade in grades:
        lines.append(
            " | ".join(
                [
                    grade.get("subject") or "",
                    format_date(grade.get("graded_at"), date_format),
                    format_grade(grade.get("value")),
                    format_weight(grade.get("weight")),
                    grade.get("comment") or "",
                ]
            )
        )
    return lines


def build_pdf(lines) -> bytes:
    """Render text lines onto a single Letter page as a minimal PDF 1.4 document.

    Lines past the bottom of the page are not carried over to a second page.
    """
    text_ops = [f"({sanitize_pdf_text(line)}) Tj T*" for line in lines]
    content = "\n".join(["BT", "/F1 12 Tf", "14 TL", "72 760 Td", *text_ops, "ET"])
    content_bytes = content.encode("ascii")

    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
        b"/Contents 4 0 R /Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length "
        + str(len(content_bytes)).encode("ascii")
        + b" >>\nstream\n"
        + content_bytes
        + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{number} 0 obj\n".encode("ascii") + body + b"\nendobj\n"

    xref_offset = len(out)
    out += f"xref\n0 {len(objects) + 1}\n".encode("ascii")
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += f"{offset:010d} 00000 n \n".encode("ascii")
    out += (
        f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\n"
        f"startxref\n{xref_offset}\n%%EOF\n"
    ).encode("ascii")
    return bytes(out)
