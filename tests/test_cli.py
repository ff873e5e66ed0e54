from __future__ import annotations

from pathlib import Path

import yaml
from typer.testing import CliRunner

from rampart.cli import app
from rampart.memory.schema import Finding, FindingStatus, Run, Severity
from rampart.memory.store import StateStore


def _project(tmp_path: Path) -> Path:
    root = tmp_path / "service"
    (root / "src" / "api").mkdir(parents=True)
    (root / "src" / "api" / "handlers.py").write_text("def handle(request):\n    return request\n", encoding="utf-8")
    (root / "src" / "models.py").write_text("class Account:\n    pass\n", encoding="utf-8")
    return root


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(app, list(args), catch_exceptions=False)


def test_init_writes_config_and_refuses_overwrite(tmp_path: Path) -> None:
    root = _project(tmp_path)
    config_path = root / "rampart.yaml"
    runner = CliRunner()

    result = _invoke(runner, "init", "--config", str(config_path), "--tier", "deep")

    assert result.exit_code == 0, result.output
    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert data["run"]["tier"] == "deep"
    assert data["project"]["name"] == "service"

    again = _invoke(runner, "init", "--config", str(config_path))
    assert again.exit_code == 1
    assert "already exists" in again.output


def test_init_rejects_unknown_tier(tmp_path: Path) -> None:
    config_path = _project(tmp_path) / "rampart.yaml"

    result = CliRunner().invoke(app, ["init", "--config", str(config_path), "--tier", "extreme"])

    assert result.exit_code != 0
    assert not config_path.exists()


def test_full_offline_run_then_history(tmp_path: Path) -> None:
    root = _project(tmp_path)
    config = str(root / "rampart.yaml")
    runner = CliRunner()
    assert _invoke(runner, "init", "--config", config).exit_code == 0

    started = _invoke(runner, "start", "--config", config)
    assert started.exit_code == 0, started.output
    assert "Started audit #1 (standard)" in started.output

    status_before = _invoke(runner, "status", "--config", config)
    assert "Next: run scan" in status_before.output

    completed = _invoke(runner, "run", "--all", "--config", config)
    assert completed.exit_code == 0, completed.output
    for phase in ("scan", "analyze", "strategize", "investigate", "report", "verify"):
        assert f"Phase {phase} complete" in completed.output
    assert "batch 1 done" in completed.output
    assert (root / ".audit" / "report" / "REPORT.md").exists()

    nothing_left = _invoke(runner, "run", "--config", config)
    assert "All phases are already complete." in nothing_left.output

    status_after = _invoke(runner, "status", "--config", config)
    assert "Phase: verify [complete]" in status_after.output
    assert "Archived runs: 0" in status_after.output

    assert "No archived runs." in _invoke(runner, "history", "--config", config).output

    restarted = _invoke(runner, "start", "--stack", "--config", config)
    assert restarted.exit_code == 0, restarted.output
    assert "Started audit #2" in restarted.output
    assert "Stacked on #1" in restarted.output

    listed = _invoke(runner, "history", "--config", config)
    assert "audit #1 (standard)" in listed.output


def test_run_rejects_unknown_phase(tmp_path: Path) -> None:
    root = _project(tmp_path)
    config = str(root / "rampart.yaml")
    runner = CliRunner()
    _invoke(runner, "init", "--config", config)
    _invoke(runner, "start", "--config", config)

    result = runner.invoke(app, ["run", "deploy", "--config", config])

    assert result.exit_code == 2
    assert "Unknown phase" in result.output


def test_run_out_of_order_reports_prerequisite(tmp_path: Path) -> None:
    root = _project(tmp_path)
    config = str(root / "rampart.yaml")
    runner = CliRunner()
    _invoke(runner, "init", "--config", config)
    _invoke(runner, "start", "--config", config)

    result = _invoke(runner, "run", "investigate", "--config", config)

    assert result.exit_code == 1
    assert "requires 'scan'" in result.output


def test_findings_filters_active_run(tmp_path: Path) -> None:
    root = _project(tmp_path)
    config = str(root / "rampart.yaml")
    runner = CliRunner()
    _invoke(runner, "init", "--config", config)
    store = StateStore(root / ".audit", root / ".audit-history")
    store.save(
        Run(
            findings=[
                Finding(
                    id="F-1",
                    title="Unvalidated input",
                    severity=Severity.HIGH,
                    status=FindingStatus.CONFIRMED,
                    target_file="src/api/handlers.py",
                ),
                Finding(id="F-2", title="Verbose errors", severity=Severity.LOW, target_file="src/models.py"),
            ]
        )
    )

    high = _invoke(runner, "findings", "--severity", "high", "--config", config)
    api = _invoke(runner, "findings", "--subsystem", "models", "--config", config)
    none = _invoke(runner, "findings", "--severity", "critical", "--config", config)

    assert high.output.strip() == "- F-1 high confirmed src/api/handlers.py: Unvalidated input"
    assert "F-2" in api.output and "F-1" not in api.output
    assert "No matching findings." in none.output


def test_corrupt_state_is_reported_not_reset(tmp_path: Path) -> None:
    root = _project(tmp_path)
    config = str(root / "rampart.yaml")
    runner = CliRunner()
    _invoke(runner, "init", "--config", config)
    state_path = root / ".audit" / "STATE.json"
    state_path.parent.mkdir(parents=True)
    state_path.write_text("{broken", encoding="utf-8")

    status_result = _invoke(runner, "status", "--config", config)
    start_result = _invoke(runner, "start", "--config", config)

    assert status_result.exit_code == 1
    assert "unreadable" in status_result.output
    assert start_result.exit_code == 1
    assert state_path.read_text(encoding="utf-8") == "{broken"


def test_missing_config_exits_with_error(tmp_path: Path) -> None:
    result = _invoke(CliRunner(), "status", "--config", str(tmp_path / "absent.yaml"))

    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_findings_and_documents_from_previous_audit(tmp_path: Path) -> None:
    root = _project(tmp_path)
    config = str(root / "rampart.yaml")
    runner = CliRunner()
    _invoke(runner, "init", "--config", config)
    _invoke(runner, "start", "--config", config)
    _invoke(runner, "run", "--all", "--config", config)
    store = StateStore(root / ".audit", root / ".audit-history")
    finished = store.require()
    finished.findings = [Finding(id="F-7", title="Missing auth check", severity=Severity.HIGH)]
    store.save(finished)
    report = (root / ".audit" / "report" / "REPORT.md").read_text(encoding="utf-8")
    assert _invoke(runner, "start", "--config", config).exit_code == 0
    archive_dir = store.latest_archive()

    current = _invoke(runner, "findings", "--config", config)
    previous = _invoke(runner, "findings", "--audit", "previous", "--config", config)
    explicit = _invoke(runner, "findings", "--audit", str(archive_dir), "--config", config)
    shown = _invoke(runner, "show", "report", "--audit", "previous", "--config", config)
    strategies = _invoke(runner, "show", "strategies", "--audit", "previous", "--config", config)
    empty = _invoke(runner, "show", "--config", config)
    missing = _invoke(runner, "findings", "--audit", "no-such-audit", "--config", config)

    assert "No matching findings." in current.output
    assert previous.output.strip() == "- F-7 high potential: Missing auth check"
    assert explicit.output == previous.output
    assert shown.output.strip() == report.strip()
    assert "## Summary" in strategies.output
    assert "No report output found" in empty.output
    assert missing.exit_code == 1
    assert "No archived run found" in missing.output
