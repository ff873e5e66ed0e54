"""Durable storage for the active run document and its archives."""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping, Optional

from pydantic import ValidationError

from ..errors import CorruptStateError, InvalidTransitionError, NoActiveRunError, PrerequisiteError
from ..phases import PHASE_SEQUENCE, PhaseName, normalize_phase
from .schema import PhaseStatus, Run, utc_now

STATE_FILE_NAME = "STATE.json"
DEFAULT_AUDIT_DIR = Path(".audit")
DEFAULT_HISTORY_DIR = Path(".audit-history")
LOGGER = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[PhaseStatus, set[PhaseStatus]] = {
    PhaseStatus.PENDING: {PhaseStatus.PENDING, PhaseStatus.IN_PROGRESS},
    PhaseStatus.IN_PROGRESS: {PhaseStatus.IN_PROGRESS, PhaseStatus.COMPLETE},
    PhaseStatus.COMPLETE: {PhaseStatus.COMPLETE},
}


def _fsync_directory(directory: Path) -> None:
    """Flush directory metadata so a completed rename survives a crash."""
    try:
        dir_fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


def write_json_atomic(path: Path, payload: str) -> None:
    """Replace ``path`` with ``payload`` via a synced temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    _fsync_directory(path.parent)


def archive_key(timestamp: datetime, revision: str | None) -> str:
    """Return the ``{date}-{short-revision}`` directory name for an archive."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    date_part = timestamp.astimezone(timezone.utc).strftime("%Y-%m-%d")
    short_rev = (revision or "").strip()[:7] or "norev"
    return f"{date_part}-{short_rev}"


class StateStore:
    """JSON-document persistence for the active run.

    The active run lives in ``audit_dir/STATE.json`` next to one output
    directory per phase. Completed runs are moved under ``history_dir`` and
    are only ever read afterwards.
    """

    def __init__(
        self,
        audit_dir: Path | str = DEFAULT_AUDIT_DIR,
        history_dir: Path | str = DEFAULT_HISTORY_DIR,
    ) -> None:
        self.audit_dir = Path(audit_dir).resolve()
        self.history_dir = Path(history_dir).resolve()

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, root: Path | str | None = None) -> "StateStore":
        paths = config.get("paths") or {}
        base = Path(root) if root is not None else Path.cwd()
        audit = Path(paths.get("audit") or DEFAULT_AUDIT_DIR)
        history = Path(paths.get("history") or DEFAULT_HISTORY_DIR)
        if not audit.is_absolute():
            audit = base / audit
        if not history.is_absolute():
            history = base / history
        return cls(audit, history)

    @property
    def state_path(self) -> Path:
        return self.audit_dir / STATE_FILE_NAME

    @property
    def logs_dir(self) -> Path:
        return self.audit_dir / "logs"

    def phase_dir(self, phase: PhaseName | str) -> Path:
        return self.audit_dir / normalize_phase(phase).value

    # Run document ---------------------------------------------------------------------
    def exists(self) -> bool:
        return self.state_path.exists()

    def load(self) -> Optional[Run]:
        """Return the active run, ``None`` when there is none."""
        return self._read(self.state_path)

    def require(self) -> Run:
        run = self.load()
        if run is None:
            raise NoActiveRunError(f"No active run found in {self.audit_dir}")
        return run

    def save(self, run: Run) -> Run:
        """Persist ``run`` as a whole document; durable once this returns."""
        run.updated_at = utc_now()
        for state in run.phases.values():
            state.refresh_counters()
        write_json_atomic(self.state_path, run.model_dump_json(indent=2))
        return run

    def transition_phase(self, phase: PhaseName | str, new_status: PhaseStatus | str) -> Run:
        """Move ``phase`` to ``new_status`` after checking ordering rules."""
        phase_name = normalize_phase(phase)
        target = PhaseStatus(new_status)
        run = self.require()
        state = run.phase(phase_name)

        if target not in _ALLOWED_TRANSITIONS[state.status]:
            raise InvalidTransitionError(phase_name.value, state.status.value, target.value)

        if target == PhaseStatus.IN_PROGRESS:
            for earlier in PHASE_SEQUENCE[: PHASE_SEQUENCE.index(phase_name)]:
                earlier_state = run.phase(earlier)
                if earlier_state.status != PhaseStatus.COMPLETE:
                    raise PrerequisiteError(phase_name.value, earlier.value, earlier_state.status.value)
            if state.started_at is None:
                state.started_at = utc_now()
        elif target == PhaseStatus.COMPLETE and state.completed_at is None:
            state.completed_at = utc_now()

        if state.status != target:
            LOGGER.info("Phase %s: %s -> %s", phase_name.value, state.status.value, target.value)
        state.status = target
        return self.save(run)

    # Archives -------------------------------------------------------------------------
    def archive(self, run: Run | None = None) -> Path:
        """Move the active run directory into history and return its new path."""
        if run is None:
            run = self.require()
        run.archived = True
        self.save(run)

        self.history_dir.mkdir(parents=True, exist_ok=True)
        key = archive_key(run.updated_at, run.revision)
        destination = self.history_dir / key
        suffix = 2
        while destination.exists():
            destination = self.history_dir / f"{key}-{suffix}"
            suffix += 1
        shutil.move(str(self.audit_dir), str(destination))
        _fsync_directory(self.history_dir)
        LOGGER.info("Archived run #%d to %s", run.run_number, destination)
        return destination

    def list_archives(self) -> List[Path]:
        """Return archived run directories, oldest run first.

        Directory names only carry the date and revision, so ordering comes
        from the archived run number and update time. Unreadable archives
        are listed first so they never become the latest one.
        """
        if not self.history_dir.exists():
            return []
        keyed: List[tuple[tuple[int, float, str], Path]] = []
        for entry in self.history_dir.iterdir():
            if not entry.is_dir() or not (entry / STATE_FILE_NAME).exists():
                continue
            try:
                run = self.load_archive(entry)
            except CorruptStateError as error:
                LOGGER.warning("Archive %s is unreadable: %s", entry.name, error)
                keyed.append(((-1, 0.0, entry.name), entry))
                continue
            keyed.append(((run.run_number, run.updated_at.timestamp(), entry.name), entry))
        return [entry for _, entry in sorted(keyed, key=lambda pair: pair[0])]

    def load_archive(self, archive_dir: Path | str) -> Run:
        path = Path(archive_dir) / STATE_FILE_NAME
        run = self._read(path)
        if run is None:
            raise NoActiveRunError(f"No archived run found in {archive_dir}")
        return run

    def latest_archive(self) -> Optional[Path]:
        archives = self.list_archives()
        return archives[-1] if archives else None

    def resolve_audit(self, selector: str | None = None, *, base_dir: Path | str | None = None) -> tuple[Run, Path]:
        """Load the run named by ``current``, ``previous`` or an audit directory.

        ``previous`` is the most recent archive. Any other value is a
        directory path, relative to ``base_dir`` when not absolute.
        """
        choice = (selector or "current").strip()
        if choice == "current":
            return self.require(), self.audit_dir
        if choice == "previous":
            latest = self.latest_archive()
            if latest is None:
                raise NoActiveRunError(f"No archived run found in {self.history_dir}")
            return self.load_archive(latest), latest
        directory = Path(choice)
        if not directory.is_absolute() and base_dir is not None:
            directory = Path(base_dir) / directory
        return self.load_archive(directory), directory

    @staticmethod
    def _read(path: Path) -> Optional[Run]:
        if not path.exists():
            return None
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as error:
            raise CorruptStateError(path, str(error)) from error
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as error:
            raise CorruptStateError(path, f"invalid JSON ({error})") from error
        if not isinstance(payload, dict):
            raise CorruptStateError(path, "top-level value is not an object")
        try:
            return Run.model_validate(payload)
        except ValidationError as error:
            raise CorruptStateError(path, f"schema mismatch ({error.error_count()} errors)") from error


__all__ = [
    "DEFAULT_AUDIT_DIR",
    "DEFAULT_HISTORY_DIR",
    "STATE_FILE_NAME",
    "StateStore",
    "archive_key",
    "write_json_atomic",
]
