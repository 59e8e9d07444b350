from __future__ import annotations

from pathlib import Path

import allure

from tracker_sync.models import DriftKind
from tracker_sync.sync.drift import apply_safe_updates, detect_drift
from tracker_sync.sync.mapping_store import MappingConfig, MappingStore

pytestmark = [
    allure.epic("Status Resolution"),
    allure.feature("Mapping Drift"),
]

TODO_ID = "11111111-1111-4111-8111-111111111111"
PROGRESS_ID = "22222222-2222-4222-8222-222222222222"
DONE_ID = "44444444-4444-4444-8444-444444444444"
GONE_ID = "99999999-9999-4999-8999-999999999999"


def _entry(report, status: str):
    return next(entry for entry in report.entries if entry.status == status)


def test_unchanged_mapping_reports_no_breaking_drift(standard_snapshot) -> None:
    config = MappingConfig(
        status_mapping={"pending": "Todo", "done": "Done"},
        status_uuid_mapping={"pending": TODO_ID, "done": DONE_ID},
    )

    report = detect_drift(config, standard_snapshot)

    assert [entry.kind for entry in report.entries] == [DriftKind.VALID, DriftKind.VALID]
    assert report.breaking == []
    assert report.renamed == []


def test_missing_id_is_broken(standard_snapshot) -> None:
    config = MappingConfig(status_uuid_mapping={"done": GONE_ID})

    report = detect_drift(config, standard_snapshot)

    entry = _entry(report, "done")
    assert entry.kind == DriftKind.BROKEN
    assert entry.external_id == GONE_ID
    assert report.breaking == [entry]


def test_present_id_with_new_name_is_renamed(make_snapshot) -> None:
    snapshot = make_snapshot([(PROGRESS_ID, "Doing", "started")])
    config = MappingConfig(
        status_mapping={"in-progress": "In Progress"},
        status_uuid_mapping={"in-progress": PROGRESS_ID},
    )

    report = detect_drift(config, snapshot)

    entry = _entry(report, "in-progress")
    assert entry.kind == DriftKind.RENAMED
    assert entry.stored_name == "In Progress"
    assert entry.current_name == "Doing"
    assert report.breaking == []
    assert report.changes_detected is True


def test_name_only_mapping_without_match_is_deleted(standard_snapshot) -> None:
    config = MappingConfig(status_mapping={"review": "QA", "done": "done"})

    report = detect_drift(config, standard_snapshot)

    assert _entry(report, "review").kind == DriftKind.DELETED
    assert _entry(report, "done").kind == DriftKind.VALID
    assert _entry(report, "done").current_name == "Done"


def test_unmapped_states_are_listed_as_new(standard_snapshot) -> None:
    config = MappingConfig(
        status_uuid_mapping={"pending": TODO_ID},
        status_mapping={"done": "Done"},
    )

    report = detect_drift(config, standard_snapshot)

    assert [state.name for state in report.new_states] == [
        "Backlog",
        "In Progress",
        "In Review",
        "Canceled",
    ]


def test_detection_is_report_only(tmp_path: Path, make_snapshot) -> None:
    store = MappingStore(tmp_path / "config.json")
    store.set_name_mapping({"in-progress": "In Progress"})
    before = store.path.read_text()

    detect_drift(store.load(), make_snapshot([(PROGRESS_ID, "Doing", "started")]))

    assert store.path.read_text() == before


def test_apply_persists_renames_and_leaves_broken_entries(tmp_path: Path, make_snapshot) -> None:
    store = MappingStore(tmp_path / "config.json")
    store.set_id_mapping({"in-progress": PROGRESS_ID, "done": GONE_ID})
    store.set_name_mapping({"in-progress": "In Progress", "done": "Done"})
    snapshot = make_snapshot([(PROGRESS_ID, "Doing", "started")])

    report = detect_drift(store.load(), snapshot)
    warnings = apply_safe_updates(report, store)

    config = store.load()
    assert config.status_mapping == {"in-progress": "Doing", "done": "Done"}
    assert config.status_uuid_mapping == {"in-progress": PROGRESS_ID, "done": GONE_ID}
    assert warnings == [_entry(report, "done").message]
    assert detect_drift(config, snapshot).renamed == []


def test_apply_without_renames_writes_nothing(tmp_path: Path, standard_snapshot) -> None:
    store = MappingStore(tmp_path / "config.json")

    warnings = apply_safe_updates(detect_drift(MappingConfig(), standard_snapshot), store)

    assert warnings == []
    assert not store.path.exists()
