from __future__ import annotations

import asyncio
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from rampart.memory.schema import Finding, Run, WorkItem  # noqa: E402
from rampart.phases import PHASE_SEQUENCE, PhaseName  # noqa: E402
from rampart.memory.store import StateStore  # noqa: E402
from rampart.workers.base import Worker, WorkerOutcome, WorkRequest  # noqa: E402

DEFAULT_BODY = "## Summary\n" + "Observed behaviour of the analysed scope. " * 8 + "\n"


class RecordingWorker(Worker):
    """In-process worker that records calls and overlap between invocations."""

    name = "recording"

    def __init__(
        self,
        *,
        delay: float = 0.0,
        fail: Iterable[str] = (),
        raise_for: Iterable[str] = (),
        hang: Iterable[str] = (),
        bodies: Dict[str, str] | None = None,
        retry_bodies: Dict[str, str] | None = None,
        findings: Dict[str, List[Finding]] | None = None,
        replace_on_retry: bool = False,
    ) -> None:
        self.delay = delay
        self.fail = set(fail)
        self.raise_for = set(raise_for)
        self.hang = set(hang)
        self.bodies = dict(bodies or {})
        self.retry_bodies = dict(retry_bodies or {})
        self.findings = dict(findings or {})
        self.replace_on_retry = replace_on_retry
        self.calls: List[str] = []
        self.requests: List[WorkRequest] = []
        self.started: Dict[str, float] = {}
        self.finished: Dict[str, float] = {}
        self.active = 0
        self.max_active = 0

    async def invoke(self, request: WorkRequest) -> WorkerOutcome:
        item_id = request.item.id
        loop = asyncio.get_running_loop()
        self.calls.append(item_id)
        self.requests.append(request)
        self.started[item_id] = loop.time()
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if item_id in self.hang:
                await asyncio.sleep(3600)
            await asyncio.sleep(self.delay)
            if item_id in self.raise_for:
                raise RuntimeError(f"worker crashed on {item_id}")
            if item_id in self.fail:
                return WorkerOutcome.failed("worker declined")
            if request.item.retry_count > 0 and item_id in self.retry_bodies:
                body = self.retry_bodies[item_id]
            else:
                body = self.bodies.get(item_id, DEFAULT_BODY)
            request.output_path.parent.mkdir(parents=True, exist_ok=True)
            append = request.append and request.output_path.exists() and not self.replace_on_retry
            with request.output_path.open("a" if append else "w", encoding="utf-8") as handle:
                handle.write(body)
            return WorkerOutcome(findings=list(self.findings.get(item_id, [])))
        finally:
            self.active -= 1
            self.finished[item_id] = loop.time()


def make_items(count: int, *, phase: PhaseName = PhaseName.ANALYZE, refs: int = 2) -> List[WorkItem]:
    return [
        WorkItem(
            id=f"item-{index:02d}",
            phase=phase,
            scope=[f"src/file_{index}_{ref}.py" for ref in range(refs)],
            output_path=f"{phase.value}/item-{index:02d}.md",
        )
        for index in range(count)
    ]


def complete_through(store: StateStore, last: PhaseName) -> Run:
    """Mark every phase up to and including ``last`` complete."""
    run = store.require()
    for phase in PHASE_SEQUENCE:
        store.transition_phase(phase, "in_progress")
        run = store.transition_phase(phase, "complete")
        if phase == last:
            break
    return run


@pytest.fixture()
def store(tmp_path: Path) -> StateStore:
    state_store = StateStore(tmp_path / ".audit", tmp_path / ".audit-history")
    state_store.save(Run())
    return state_store


@pytest.fixture()
def recording_worker() -> Callable[..., RecordingWorker]:
    return RecordingWorker


@dataclass(slots=True)
class GitRepo:
    """Throwaway git repository used by delta and CLI tests."""

    root: Path
    commits: List[str] = field(default_factory=list)

    def git(self, *args: str) -> str:
        result = subprocess.run(
            ["git", *args],
            cwd=self.root,
            check=True,
            capture_output=True,
            text=True,
        )
        return result.stdout

    def write(self, relative: str, content: str) -> None:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    def commit(self, message: str) -> str:
        self.git("add", "-A")
        self.git("commit", "-m", message)
        revision = self.git("rev-parse", "HEAD").strip()
        self.commits.append(revision)
        return revision


@pytest.fixture()
def git_repo(tmp_path: Path) -> GitRepo:
    root = tmp_path / "project"
    root.mkdir()
    repo = GitRepo(root=root)
    repo.git("init")
    repo.git("config", "user.email", "auditor@example.com")
    repo.git("config", "user.name", "Rampart Tests")
    repo.write("src/app/main.py", "def main():\n    return 1\n")
    repo.write("src/app/util.py", "def helper(value):\n    return value\n")
    repo.write("README.md", "demo project\n")
    repo.commit("Initial project state")
    return repo
