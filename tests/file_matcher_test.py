import pytest

from sample_engine import FileMatcher, MatchMode, MatchRule
from storage import MIME_PDF


def _names(files):
    return [item.name for item in files]


def test_substring_order_decides_result_order(store, make_file):
    for name in ["A2.pdf", "A1.pdf", "B1.pdf"]:
        make_file(f"s/{name}")

    rule = MatchRule.build(["B", "A"], MatchMode.PREFIX)
    found = FileMatcher(store).find_files("s", rule)

    assert _names(found) == ["B1.pdf", "A1.pdf", "A2.pdf"]


def test_prefix_match_over_flat_folder(store, make_pdf):
    for name in ["Apple.pdf", "Banana.pdf", "Cherry.pdf"]:
        make_pdf(f"s/{name}")

    found = FileMatcher(store).find_files("s", MatchRule.build(["A", "B"]))

    assert _names(found) == ["Apple.pdf", "Banana.pdf"]


def test_file_matched_by_two_substrings_appears_once(store, make_file):
    make_file("s/A1.pdf")
    make_file("s/A2.pdf")

    rule = MatchRule.build(["A1", "A"], MatchMode.PREFIX)
    found = FileMatcher(store).find_files("s", rule)

    assert _names(found) == ["A1.pdf", "A2.pdf"]


@pytest.mark.parametrize(
    "mode, expected",
    [
        (MatchMode.PREFIX, ["Task1 essay.pdf"]),
        (MatchMode.SUFFIX, ["notes Task1.pdf"]),
        (MatchMode.CONTAINS, ["Task1 essay.pdf", "notes Task1.pdf", "x Task1 y.pdf"]),
        ("unknown-mode", ["Task1 essay.pdf", "notes Task1.pdf", "x Task1 y.pdf"]),
    ],
)
def test_match_modes(store, make_file, mode, expected):
    for name in ["Task1 essay.pdf", "notes Task1.pdf", "x Task1 y.pdf"]:
        make_file(f"s/{name}")
    substring = "Task1.pdf" if mode is MatchMode.SUFFIX else "Task1"

    found = FileMatcher(store).find_files("s", MatchRule.build(substring, mode))

    assert sorted(_names(found)) == sorted(expected)


def test_mime_filter_excludes_other_types(store, make_file):
    make_file("s/T1 essay.pdf")
    make_file("s/T1 notes.docx")

    rule = MatchRule.build("T1", MatchMode.PREFIX, {MIME_PDF})
    found = FileMatcher(store).find_files("s", rule)

    assert _names(found) == ["T1 essay.pdf"]


def test_non_recursive_ignores_subfolders(store, make_file):
    make_file("s/T1 top.pdf")
    make_file("s/inner/T1 nested.pdf")

    found = FileMatcher(store).find_files("s", MatchRule.build("T1"))

    assert _names(found) == ["T1 top.pdf"]


def test_recursive_descends_but_skips_excluded_containers(store, make_file):
    make_file("s/T1 top.pdf")
    make_file("s/inner/T1 nested.pdf")
    make_file("s/MergedPDFs/T1 merged.pdf")

    rule = MatchRule.build("T1", recursive=True)
    found = FileMatcher(store).find_files("s", rule, exclude=["s/MergedPDFs"])

    assert _names(found) == ["T1 top.pdf", "T1 nested.pdf"]


def test_empty_substrings_rejected(store):
    with pytest.raises(ValueError):
        FileMatcher(store).find_files("", MatchRule.build([]))


def test_missing_container_yields_empty_list_with_warning(store):
    warnings = []

    found = FileMatcher(store).find_files("nope", MatchRule.build("T1"), warnings=warnings)

    assert found == []
    assert warnings[0]["code"] == "match_traversal_failed"
