from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from rampart.errors import CorruptStateError, InvalidTransitionError, NoActiveRunError, PrerequisiteError
from rampart.memory.schema import PhaseStatus, Run
from rampart.memory.store import STATE_FILE_NAME, StateStore, archive_key
from rampart.phases import PHASE_SEQUENCE, PhaseName


def test_load_returns_none_when_no_run(tmp_path: Path) -> None:
    store = StateStore(tmp_path / ".audit", tmp_path / ".audit-history")

    assert store.load() is None
    with pytest.raises(NoActiveRunError):
        store.require()


def test_new_run_seeds_every_phase_pending(store: StateStore) -> None:
    run = store.require()

    assert [phase for phase in run.phases] == [phase.value for phase in PHASE_SEQUENCE]
    assert all(state.status == PhaseStatus.PENDING for state in run.phases.values())
    assert run.skill == "rampart"


def test_save_replaces_document_without_leftover_temp_files(store: StateStore) -> None:
    run = store.require()
    run.file_index = ["src/a.py", "src/b.py"]
    before = run.updated_at

    store.save(run)

    entries = sorted(path.name for path in store.audit_dir.iterdir())
    assert entries == [STATE_FILE_NAME]
    reloaded = store.require()
    assert reloaded.file_index == ["src/a.py", "src/b.py"]
    assert reloaded.updated_at >= before


@pytest.mark.parametrize(
    "payload",
    [
        "{not json",
        "[1, 2, 3]",
        '{"run_number": "first", "phases": 3}',
    ],
)
def test_unreadable_state_is_reported_not_reinitialised(tmp_path: Path, payload: str) -> None:
    store = StateStore(tmp_path / ".audit", tmp_path / ".audit-history")
    store.audit_dir.mkdir(parents=True)
    store.state_path.write_text(payload, encoding="utf-8")

    with pytest.raises(CorruptStateError) as excinfo:
        store.load()

    assert excinfo.value.path == store.state_path
    assert store.state_path.read_text(encoding="utf-8") == payload


def test_starting_phase_before_predecessor_fails_closed(store: StateStore) -> None:
    with pytest.raises(PrerequisiteError) as excinfo:
        store.transition_phase(PhaseName.ANALYZE, PhaseStatus.IN_PROGRESS)

    assert excinfo.value.missing == "scan"
    assert "scan" in str(excinfo.value)
    assert store.require().phase(PhaseName.ANALYZE).status == PhaseStatus.PENDING


def test_prerequisite_names_first_incomplete_phase(store: StateStore) -> None:
    store.transition_phase(PhaseName.SCAN, PhaseStatus.IN_PROGRESS)
    store.transition_phase(PhaseName.SCAN, PhaseStatus.COMPLETE)
    store.transition_phase(PhaseName.ANALYZE, PhaseStatus.IN_PROGRESS)

    with pytest.raises(PrerequisiteError) as excinfo:
        store.transition_phase(PhaseName.STRATEGIZE, PhaseStatus.IN_PROGRESS)

    assert excinfo.value.missing == "analyze"
    assert "in_progress" in str(excinfo.value)


def test_complete_phase_cannot_regress(store: StateStore) -> None:
    store.transition_phase(PhaseName.SCAN, PhaseStatus.IN_PROGRESS)
    store.transition_phase(PhaseName.SCAN, PhaseStatus.COMPLETE)

    with pytest.raises(InvalidTransitionError):
        store.transition_phase(PhaseName.SCAN, PhaseStatus.IN_PROGRESS)
    with pytest.raises(InvalidTransitionError):
        store.transition_phase(PhaseName.SCAN, PhaseStatus.PENDING)


def test_pending_phase_cannot_skip_to_complete(store: StateStore) -> None:
    with pytest.raises(InvalidTransitionError) as excinfo:
        store.transition_phase(PhaseName.SCAN, PhaseStatus.COMPLETE)

    assert not isinstance(excinfo.value, PrerequisiteError)


def test_reentering_in_progress_supports_resume(store: StateStore) -> None:
    first = store.transition_phase(PhaseName.SCAN, PhaseStatus.IN_PROGRESS)
    started = first.phase(PhaseName.SCAN).started_at

    again = store.transition_phase("scan", "in_progress")

    assert again.phase(PhaseName.SCAN).status == PhaseStatus.IN_PROGRESS
    assert again.phase(PhaseName.SCAN).started_at == started


def test_transitions_are_persisted_before_returning(store: StateStore) -> None:
    store.transition_phase(PhaseName.SCAN, PhaseStatus.IN_PROGRESS)
    store.transition_phase(PhaseName.SCAN, PhaseStatus.COMPLETE)

    fresh = StateStore(store.audit_dir, store.history_dir)
    state = fresh.require().phase(PhaseName.SCAN)
    assert state.status == PhaseStatus.COMPLETE
    assert state.completed_at is not None


def test_archive_key_uses_date_and_short_revision() -> None:
    stamp = datetime(2024, 3, 9, 23, 30, tzinfo=timezone.utc)

    assert archive_key(stamp, "0123456789abcdef") == "2024-03-09-0123456"
    assert archive_key(stamp, None) == "2024-03-09-norev"


def test_archive_moves_run_and_avoids_collisions(tmp_path: Path) -> None:
    store = StateStore(tmp_path / ".audit", tmp_path / ".audit-history")
    store.save(Run(run_number=1, revision="abcdef0123"))
    (store.phase_dir("scan")).mkdir(parents=True)
    (store.phase_dir("scan") / "scan-p1.md").write_text("## Summary\n", encoding="utf-8")

    first = store.archive()

    assert not store.audit_dir.exists()
    assert first.parent == store.history_dir
    assert first.name.endswith("-abcdef0")
    assert (first / "scan" / "scan-p1.md").exists()
    archived = store.load_archive(first)
    assert archived.archived is True

    store.save(Run(run_number=2, revision="abcdef0123"))
    second = store.archive()

    assert second.name == f"{first.name}-2"
    assert store.list_archives() == [first, second]
    assert store.latest_archive() == second


def test_archives_are_ordered_by_run_number(tmp_path: Path) -> None:
    store = StateStore(tmp_path / ".audit", tmp_path / ".audit-history")
    store.save(Run(run_number=1, revision="ffff111"))
    first = store.archive()
    store.save(Run(run_number=2, revision="aaaa222"))
    second = store.archive()
    for number in range(3, 12):
        store.save(Run(run_number=number, revision="aaaa222"))
        store.archive()

    archives = store.list_archives()

    assert archives[:2] == [first, second]
    assert [store.load_archive(path).run_number for path in archives] == list(range(1, 12))
    assert archives[-1].name.endswith("-10")
    assert store.load_archive(store.latest_archive()).run_number == 11
