import io

import pytest
from docx import Document

from declarations import (
    DeclarationProcessor,
    create_file_name,
    create_submission_prefix,
    extract_table,
    format_student_name,
    get_candidate_and_centre_no,
    replace_table,
)
from roster import RosterError

HEADER = ["Name", "User ID", "Folder ID"]
SIGNED_TABLES = (
    [["Title of Task:", ""]],
    [["TOTAL", ""], ["Mark", ""]],
)
MARKED_TABLES = (
    [["Title of Task:", "Portfolio"]],
    [["TOTAL", "42"], ["Mark", "A"]],
)


def _course(attachments):
    return {
        "id": "c1",
        "students": [{"userId": "u1", "profile": {"name": {"fullName": "Jane Doe"}}}],
        "courseWork": [{"id": "w1", "title": "Final Project"}],
        "studentSubmissions": [
            {
                "courseWorkId": "w1",
                "userId": "u1",
                "assignmentSubmission": {"attachments": [{"driveFile": {"id": item}} for item in attachments]},
            }
        ],
    }


def test_candidate_and_centre_numbers():
    text = "Centre number: 12345\nCandidate number: 0042\nYear 2024-123456"

    assert get_candidate_and_centre_no(text) == ("0042", "12345")
    assert get_candidate_and_centre_no("no numbers here") == (None, None)


def test_file_naming():
    assert format_student_name("Jane Doe") == "DO_J"
    assert create_submission_prefix("12345", "0042", "Jane Doe") == "12345_0042_DO_J"
    assert create_file_name("12345_0042_DO_J") == "0. Frontsheet_12345_0042_DO_J"


def _document(tables):
    document = Document()
    for rows in tables:
        table = document.add_table(rows=len(rows), cols=len(rows[0]))
        for r, row in enumerate(rows):
            for c, value in enumerate(row):
                table.cell(r, c).text = value
    return document


def test_replace_table_copies_marked_values():
    source = _document(MARKED_TABLES)
    target = _document(SIGNED_TABLES)

    data = extract_table(source, "total")
    assert replace_table(target, "TOTAL", data) is True

    table = target.tables[1]
    assert [[cell.text for cell in row.cells] for row in table.rows] == [["TOTAL", "42"], ["Mark", "A"]]
    assert target.tables[0].cell(0, 1).text == ""


def test_replace_table_truncates_larger_source_with_warning():
    source = _document(([["TOTAL", "42"], ["Mark", "A"], ["Extra", "x"]],))
    target = _document(([["TOTAL", ""]],))
    warnings = []

    assert replace_table(target, "TOTAL", extract_table(source, "TOTAL"), warnings) is True

    assert target.tables[0].cell(0, 1).text == "42"
    assert warnings[0]["code"] == "declaration_table_truncated"


def test_missing_table_is_not_replaced():
    assert extract_table(_document(()), "TOTAL") is None
    assert replace_table(_document(()), "TOTAL", [[[]]]) is False


@pytest.fixture
def declaration_setup(store, make_docx, make_roster):
    make_docx(
        "submissions/jane_signed.docx",
        "Candidate number 1234, centre number 12345",
        SIGNED_TABLES,
    )
    make_docx("Jane Doe/JDO_Declaration.docx", "", MARKED_TABLES)
    make_docx("Jane Doe/JDO_Marking Grid.docx", "Grid")
    roster = make_roster([_course(["submissions/jane_signed.docx"])])
    return roster, [HEADER, ["Jane Doe", "u1", "Jane Doe"]]


def test_final_declaration_form_is_created(store, declaration_setup, page_widths, patch_word_converter):
    patch_word_converter()
    roster, rows = declaration_setup

    entries = DeclarationProcessor(store, roster).create_final_declaration_forms("c1", "Final Project", rows)

    assert len(entries) == 1
    entry = entries[0]
    assert entry["success"] is True
    assert entry["submission_prefix"] == "12345_1234_DO_J"
    assert entry["row"] == ["Jane Doe", "u1", "Jane Doe", "12345_1234_DO_J"]
    assert entry["output_file"] == "Jane Doe/0. Frontsheet_12345_1234_DO_J.pdf"
    assert page_widths(entry["output_file"]) == [72, 72]

    merged = Document(io.BytesIO(store.read_bytes("Jane Doe/0. Frontsheet_12345_1234_DO_J.docx")))
    assert merged.tables[0].cell(0, 1).text == "Portfolio"
    assert merged.tables[1].cell(0, 1).text == "42"
    assert not [item for item in store.list_files("Jane Doe") if item.name.startswith("~declaration_")]


def test_declaration_without_marking_grid_uses_declaration_only(store, declaration_setup, patch_word_converter):
    patch_word_converter()
    roster, rows = declaration_setup
    store.trash_file("Jane Doe/JDO_Marking Grid.docx")

    entries = DeclarationProcessor(store, roster).create_final_declaration_forms("c1", "Final Project", rows)

    assert entries[0]["success"] is True
    assert entries[0]["output_file"] == "Jane Doe/0. Frontsheet_12345_1234_DO_J.pdf"


def test_declaration_without_numbers_fails(store, make_docx, make_roster, patch_word_converter):
    patch_word_converter()
    make_docx("submissions/unsigned.docx", "Candidate number: ____")
    store.create_container("", "Jane Doe")
    roster = make_roster([_course(["submissions/unsigned.docx"])])

    entries = DeclarationProcessor(store, roster).create_final_declaration_forms(
        "c1", "Final Project", [HEADER, ["Jane Doe", "u1", "Jane Doe"]]
    )

    assert entries[0]["success"] is False
    assert "candidate and centre numbers" in entries[0]["message"]


def test_student_rows_without_folder_are_reported(store, declaration_setup, patch_word_converter):
    patch_word_converter()
    roster, rows = declaration_setup

    entries = DeclarationProcessor(store, roster).create_final_declaration_forms(
        "c1", "Final Project", rows + [["No Folder", "u2", ""]]
    )

    assert len(entries) == 2
    assert entries[1]["message"] == "No folder ID found for this student."


def test_unknown_assignment_raises(store, make_roster, patch_word_converter):
    patch_word_converter()

    with pytest.raises(RosterError):
        DeclarationProcessor(store, make_roster([_course([])])).create_final_declaration_forms(
            "c1", "Nope", [HEADER]
        )
