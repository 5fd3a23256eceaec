import json
import threading
from pathlib import Path

import pytest

from sample_engine import GroupingTableError, StudentMergeCoordinator
from storage import CollisionPolicy

HEADER = ["Name", "User ID", "Folder ID"]
GROUPING_TABLE = [["Task 1", "Task 2"], ["T1", "T2"]]


@pytest.fixture
def two_students(make_pdf):
    make_pdf("Ann Lee/T1 essay.pdf")
    make_pdf("Ann Lee/T2 code.pdf")
    make_pdf("Ann Lee/T2 tests.pdf")
    make_pdf("Bob Roe/T1 essay.pdf")
    return [HEADER, ["Ann Lee", "u1", "Ann Lee"], ["Bob Roe", "u2", "Bob Roe"]]


def test_every_row_gets_a_report_even_without_folder(store, two_students):
    rows = [two_students[0], two_students[1], ["No Folder", "u3", ""], two_students[2]]

    reports = StudentMergeCoordinator(store, GROUPING_TABLE).run_all(rows)

    assert len(reports) == 3
    assert reports[1].success is False
    assert reports[1].error == "No folder ID found for this student."
    assert reports[0].success and reports[2].success


def test_outputs_go_to_default_folder_inside_student_folder(store, two_students):
    reports = StudentMergeCoordinator(store, GROUPING_TABLE).run_all(two_students)

    ann, bob = reports
    assert ann.output_container_id == "Ann Lee/MergedPDFs"
    assert sorted(item.name for item in store.list_files("Ann Lee/MergedPDFs")) == ["Task 1.pdf", "Task 2.pdf"]
    assert bob.category_results[0].result.success is True
    assert bob.category_results[1].result.message == "No matching PDF files found for this category."


def test_destination_parent_and_row_folder_name(store, two_students):
    store.create_container("", "Samples")
    rows = [HEADER, ["Ann Lee", "u1", "Ann Lee", "Ann Sample"]]

    reports = StudentMergeCoordinator(store, GROUPING_TABLE).run_all(rows, destination_parent_container_id="Samples")

    assert reports[0].output_container_id == "Samples/Ann Sample"
    assert store.find_files_by_name("Samples/Ann Sample", "Task 2.pdf")


def test_missing_student_folder_is_reported_and_run_continues(store, two_students):
    rows = [HEADER, ["Ghost", "u9", "Ghost"], two_students[1]]

    reports = StudentMergeCoordinator(store, GROUPING_TABLE).run_all(rows)

    assert reports[0].success is False
    assert reports[0].error.startswith("Error:")
    assert reports[1].success is True


def test_rerun_under_skip_reuses_folder_and_skips_outputs(store, two_students):
    coordinator = StudentMergeCoordinator(store, GROUPING_TABLE)
    coordinator.run_all(two_students)

    reports = coordinator.run_all(two_students)

    statuses = [result.result.status for result in reports[0].category_results]
    assert statuses == ["skipped", "skipped"]
    assert reports[0].output_container_id == "Ann Lee/MergedPDFs"
    summary = StudentMergeCoordinator.summarize(reports)["summary"]
    assert summary["categories_skipped"] == 3
    assert summary["outputs_total"] == 0


def test_rerun_under_replace_rewrites_outputs(store, two_students):
    StudentMergeCoordinator(store, GROUPING_TABLE).run_all(two_students)

    reports = StudentMergeCoordinator(
        store,
        GROUPING_TABLE,
        collision_policy=CollisionPolicy.REPLACE,
    ).run_all(two_students)

    assert [result.result.status for result in reports[0].category_results] == ["merged", "merged"]
    assert len(store.find_files_by_name("Ann Lee/MergedPDFs", "Task 2.pdf")) == 1


def test_bad_grouping_table_raises_before_any_student(store, two_students):
    coordinator = StudentMergeCoordinator(store, [["Task 1", "Task 1"], ["T1", "T2"]])

    with pytest.raises(GroupingTableError):
        coordinator.run_all(two_students)
    assert not store.container_exists("Ann Lee/MergedPDFs")


def test_run_log_files_and_events(tmp_path: Path, store, two_students):
    events = []
    progress = []
    coordinator = StudentMergeCoordinator(store, GROUPING_TABLE, logs_dir=str(tmp_path / "logs"))

    coordinator.run_all(
        two_students,
        progress_callback=lambda current, total, message: progress.append((current, total)),
        event_callback=events.append,
    )

    assert coordinator.last_log_path and Path(coordinator.last_log_path).exists()
    jsonl_path = Path(coordinator.last_log_path).with_suffix(".jsonl")
    logged = [json.loads(line) for line in jsonl_path.read_text(encoding="utf-8").splitlines()]
    assert logged[0]["event"] == "run_start"
    assert logged[-1]["event"] == "run_end"
    assert [event["event"] for event in events] == [entry["event"] for entry in logged]
    assert progress == [(1, 2), (2, 2)]


def test_cancel_stops_before_next_student(store, two_students):
    cancel_event = threading.Event()
    cancel_event.set()

    reports = StudentMergeCoordinator(store, GROUPING_TABLE).run_all(two_students, cancel_event=cancel_event)

    assert reports == []


def test_summarize_counts_outcomes(store, two_students):
    rows = two_students + [["No Folder", "u3", ""]]
    reports = StudentMergeCoordinator(store, GROUPING_TABLE).run_all(rows)

    manifest = StudentMergeCoordinator.summarize(reports)

    assert manifest["summary"] == {
        "students_total": 3,
        "students_failed": 1,
        "outputs_total": 3,
        "categories_skipped": 0,
        "categories_failed": 1,
    }
    assert manifest["students"][0]["categories"]["Task 2"]["status"] == "merged"


def test_unwritable_logs_dir_does_not_stop_the_run(tmp_path: Path, store, two_students):
    logs_path = tmp_path / "logs"
    logs_path.write_text("not a folder", encoding="utf-8")
    events = []
    warnings = []
    coordinator = StudentMergeCoordinator(store, GROUPING_TABLE, logs_dir=str(logs_path))

    reports = coordinator.run_all(two_students, event_callback=events.append, warnings=warnings)

    assert [report.success for report in reports] == [True, True]
    assert coordinator.last_log_path is None
    assert "run_log_unavailable" in [warning["code"] for warning in warnings]
    assert events[0]["event"] == "run_start"
    assert events[-1]["event"] == "run_end"
    assert logs_path.read_text(encoding="utf-8") == "not a folder"
