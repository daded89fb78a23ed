import csv
import io
import re
from datetime import datetime

from utils.exports import (
    CSV_HEADER,
    PDF_TABLE_HEADER,
    build_grade_report_lines,
    build_grades_csv,
    build_pdf,
    defuse_formula,
    sanitize_pdf_text,
)


def _row(**overrides):
    row = {
        "subject": "Math",
        "graded_at": datetime(2024, 3, 5, 10, 30),
        "value": 2,
        "weight": 40,
        "teacher": "teacher@example.com",
        "comment": "SA 1",
    }
    row.update(overrides)
    return row


def test_csv_header_and_row():
    body = build_grades_csv([_row()])
    lines = body.split("\r\n")
    assert lines[0] == ",".join(CSV_HEADER)
    assert lines[1] == "Math,05.03.2024,2.00,40,teacher@example.com,SA 1"
    assert body.endswith("\r\n")


def test_csv_defuses_formulas_and_quotes():
    body = build_grades_csv(
        [_row(subject="=SUM(A1:A9)", comment='-2, "quoted"', teacher="@evil")]
    )
    (_, parsed) = list(csv.reader(io.StringIO(body)))
    assert parsed[0] == "'=SUM(A1:A9)"
    assert parsed[4] == "'@evil"
    assert parsed[5] == "'-2, \"quoted\""
    assert '"\'-2, ""quoted"""' in body


def test_csv_empty_values():
    body = build_grades_csv([_row(graded_at=None, weight=None, teacher=None, comment=None)])
    assert body.split("\r\n")[1] == "Math,,2.00,,,"


def test_defuse_formula_leaves_plain_text():
    assert defuse_formula("Math") == "Math"
    assert defuse_formula(None) == ""
    assert defuse_formula("\tx") == "'\tx"
    assert defuse_formula("+1") == "'+1"
    assert defuse_formula("\rcmd") == "'\rcmd"
    assert defuse_formula("1+1") == "1+1"


def test_csv_defuses_plus_and_carriage_return():
    body = build_grades_csv([_row(subject="+HYPERLINK(x)", comment="\rcalc")])
    (_, parsed) = list(csv.reader(io.StringIO(body, newline="")))
    assert parsed[0] == "'+HYPERLINK(x)"
    assert parsed[5] == "'\rcalc"


def test_report_lines_layout():
    lines = build_grade_report_lines(
        "Max Muster", ["3AHWII"], ["Informatics"], [_row()], "%Y-%m-%d"
    )
    assert lines[:6] == [
        "Grade report",
        "Student: Max Muster",
        "Class: 3AHWII",
        "Subject: Informatics",
        "",
        PDF_TABLE_HEADER,
    ]
    assert lines[6] == "Math | 2024-03-05 | 2.00 | 40 | SA 1"


def test_sanitize_pdf_text():
    assert sanitize_pdf_text("a(b)c\\") == "a\\(b\\)c\\\\"
    assert sanitize_pdf_text("Müller\n") == "M?ller?"


def _assert_valid_xref(pdf: bytes):
    assert pdf.startswith(b"%PDF-1.4\n")
    assert pdf.endswith(b"%%EOF\n")
    startxref = int(re.search(rb"startxref\n(\d+)\n", pdf).group(1))
    assert pdf[startxref:].startswith(b"xref\n0 6\n")
    entries = re.findall(rb"(\d{10}) 00000 n \n", pdf[startxref:])
    assert len(entries) == 5
    for number, offset in enumerate(entries, start=1):
        assert pdf[int(offset):].startswith(f"{number} 0 obj\n".encode("ascii"))
    assert b"/Size 6 /Root 1 0 R" in pdf


def test_pdf_without_lines_is_well_formed():
    pdf = build_pdf([])
    _assert_valid_xref(pdf)
    assert b"/Length 31 >>" in pdf


def test_pdf_with_many_long_lines_keeps_offsets():
    lines = ["Grade report"] + [f"Row {i} " + "x" * 300 for i in range(80)]
    pdf = build_pdf(lines)
    _assert_valid_xref(pdf)
    assert b"(Row 79 " in pdf
    stream = re.search(rb"<< /Length (\d+) >>\nstream\n", pdf)
    length = int(stream.group(1))
    body_start = stream.end()
    assert pdf[body_start + length:].startswith(b"\nendstream")
