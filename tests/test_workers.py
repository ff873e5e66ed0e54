from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from rampart.memory.schema import ItemStatus, WorkItem
from rampart.phases import PhaseName
from rampart.workers import CommandWorker, OfflineWorker, WorkerError, WorkRequest, read_findings_sidecar


def _request(tmp_path: Path, *, retry_count: int = 0, feedback: str | None = None) -> WorkRequest:
    item = WorkItem(
        id="analyze-p1",
        phase=PhaseName.ANALYZE,
        scope=["src/a.py", "src/b.py"],
        output_path="analyze/analyze-p1.md",
        retry_count=retry_count,
    )
    return WorkRequest(item=item, output_path=tmp_path / "analyze" / "analyze-p1.md", feedback=feedback)


def test_offline_worker_creates_then_appends(tmp_path: Path) -> None:
    worker = OfflineWorker()

    first = asyncio.run(worker.invoke(_request(tmp_path)))
    original = (tmp_path / "analyze" / "analyze-p1.md").read_text(encoding="utf-8")
    second = asyncio.run(worker.invoke(_request(tmp_path, retry_count=1, feedback="Missing sections: ## Impact")))
    combined = (tmp_path / "analyze" / "analyze-p1.md").read_text(encoding="utf-8")

    assert first.ok and second.ok
    assert "## Summary" in original
    assert "- src/a.py" in original
    assert combined.startswith(original)
    assert "## Revision notes\nMissing sections: ## Impact" in combined


def test_request_payload_marks_retries_as_append(tmp_path: Path) -> None:
    payload = _request(tmp_path, retry_count=1, feedback="extend").to_payload()

    assert payload["append"] is True
    assert payload["retry"] == 1
    assert payload["scope"] == ["src/a.py", "src/b.py"]
    assert payload["phase"] == "analyze"


def test_findings_sidecar_accepts_list_or_mapping(tmp_path: Path) -> None:
    output = tmp_path / "out.md"
    sidecar = tmp_path / "out.md.findings.json"

    assert read_findings_sidecar(output) == []

    sidecar.write_text(json.dumps({"findings": [{"id": "F-1", "title": "Injection", "severity": "high"}]}), encoding="utf-8")
    assert [finding.id for finding in read_findings_sidecar(output)] == ["F-1"]

    sidecar.write_text(json.dumps([{"id": "F-2", "unexpected": True}]), encoding="utf-8")
    with pytest.raises(WorkerError):
        read_findings_sidecar(output)


def test_command_worker_runs_template_and_reads_findings(tmp_path: Path) -> None:
    script = (
        'cat > /dev/null; printf "## Summary\\nfrom %s\\n" "$RAMPART_ITEM_ID" > "{output}"; '
        'printf \'[{{"id": "F-9", "title": "Hardcoded secret"}}]\' > "{output}.findings.json"'
    )
    worker = CommandWorker(["sh", "-c", script], cwd=tmp_path)

    outcome = asyncio.run(worker.invoke(_request(tmp_path)))

    assert outcome.ok, outcome.error
    assert (tmp_path / "analyze" / "analyze-p1.md").read_text(encoding="utf-8") == "## Summary\nfrom analyze-p1\n"
    assert [finding.id for finding in outcome.findings] == ["F-9"]


def test_command_worker_reports_failures(tmp_path: Path) -> None:
    failing = CommandWorker(["sh", "-c", "cat > /dev/null; echo boom >&2; exit 3"])
    silent = CommandWorker(["sh", "-c", "cat > /dev/null"])
    missing = CommandWorker(["definitely-not-a-rampart-worker"])

    failed = asyncio.run(failing.invoke(_request(tmp_path)))
    empty = asyncio.run(silent.invoke(_request(tmp_path)))
    absent = asyncio.run(missing.invoke(_request(tmp_path)))

    assert failed.status == ItemStatus.FAILED
    assert failed.error == "exit 3: boom"
    assert "produced no output" in (empty.error or "")
    assert "Executable not available" in (absent.error or "")


def test_command_worker_requires_command() -> None:
    with pytest.raises(WorkerError):
        CommandWorker([])
