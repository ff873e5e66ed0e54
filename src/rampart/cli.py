"""CLI commands for starting, running and inspecting audit runs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .config import DEFAULT_CONFIG_NAME, OrchestratorSettings, copy_config_template, load_config, write_config
from .errors import ConfigError, RampartError
from .memory.schema import Batch, BatchStatus, PhaseState, Run
from .memory.store import StateStore
from .orchestrator import Orchestrator
from .phases import PhaseName, normalize_phase
from .scheduler import PhaseResult
from .status import count_history, phase_artifacts, query_findings, summarize

APP_HELP = "Rampart audit pipeline orchestrator."

app = typer.Typer(help=APP_HELP)

_CONFIG_OPTION_HELP = "Path to the rampart configuration file."
_AUDIT_OPTION_HELP = "Audit to read: current, previous or an audit directory."


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level for orchestration messages (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    """Configure logging before any command runs."""
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _load(config: str) -> tuple[Path, Dict[str, Any]]:
    config_path = Path(config)
    try:
        return config_path, load_config(config_path)
    except ConfigError as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error


def _settings(config: str) -> OrchestratorSettings:
    config_path, config_data = _load(config)
    try:
        return OrchestratorSettings.from_config(config_data, base_dir=config_path.parent)
    except ConfigError as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error


def _resolve_audit(config: str, audit: str) -> tuple[Run, Path]:
    settings = _settings(config)
    store = StateStore(settings.audit_dir, settings.history_dir)
    try:
        return store.resolve_audit(audit, base_dir=settings.root)
    except RampartError as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error


def _report_batch(phase: PhaseName, batch: Batch, state: PhaseState) -> None:
    done = sum(1 for entry in state.batches if entry.status == BatchStatus.DONE)
    typer.echo(f"  {phase.value}: batch {batch.index + 1} done ({done}/{len(state.batches)})")


def _orchestrator(config: str) -> Orchestrator:
    config_path, config_data = _load(config)
    try:
        return Orchestrator.from_config(config_data, base_dir=config_path.parent, progress=_report_batch)
    except RampartError as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error


def _echo_result(result: PhaseResult) -> None:
    typer.echo(
        f"Phase {result.phase.value} complete: {len(result.succeeded)} succeeded, "
        f"{len(result.failed)} failed, {len(result.quality_gaps)} quality gap(s)"
    )
    for item_id in result.failed:
        error = result.items[item_id].error or "unknown error"
        typer.echo(f"  failed: {item_id} ({error})")
    for gap in result.quality_gaps:
        typer.echo(f"  below threshold: {gap.item_id} score {gap.score:.2f} ({gap.reason})")
    if result.coverage is not None and result.coverage.gaps:
        coverage = result.coverage
        typer.echo(
            f"  coverage: units {coverage.scope_ratio:.0%}, patterns {coverage.pattern_ratio:.0%}, "
            f"checklist {coverage.checklist_ratio:.0%}; {len(coverage.gaps)} gap(s)"
        )


@app.command()
def init(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    tier: str = typer.Option("standard", "--tier", help="Operating tier: quick, standard or deep."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    data = copy_config_template()
    data["project"]["name"] = config_path.resolve().parent.name
    data["run"]["tier"] = tier.strip().lower()
    try:
        OrchestratorSettings.from_config(data, base_dir=config_path.parent)
    except ConfigError as error:
        raise typer.BadParameter(str(error)) from error
    write_config(config_path, data)
    typer.echo(f"Wrote configuration to {config_path}")


@app.command()
def start(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    stack: bool = typer.Option(False, "--stack", help="Reuse the latest archived run through a file delta."),
) -> None:
    """Archive the active run (if any) and start a new one."""
    orchestrator = _orchestrator(config)
    try:
        run = orchestrator.start_run(stack=stack)
    except RampartError as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error
    typer.echo(f"Started audit #{run.run_number} ({run.config.tier})")
    if run.delta is not None and run.prior_run is not None:
        counts = run.delta.counts
        typer.echo(
            f"Stacked on #{run.prior_run.run_number}: {counts.get('added', 0)} added, "
            f"{counts.get('modified', 0)} modified, {counts.get('deleted', 0)} deleted, "
            f"{counts.get('unchanged', 0)} unchanged"
        )
        if run.delta.massive_rewrite:
            typer.echo("Massive rewrite detected: every carried finding will be fully re-checked.")
        typer.echo(f"Carried {len(run.carried_findings)} finding(s) forward")


@app.command()
def run(
    phase: Optional[str] = typer.Argument(None, help="Phase to run; defaults to the next eligible phase."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    run_all: bool = typer.Option(False, "--all", help="Run every remaining phase in order."),
) -> None:
    """Run (or resume) a phase of the active run."""
    if phase is not None and run_all:
        raise typer.BadParameter("Pass either a phase or --all, not both.")
    target: Optional[PhaseName] = None
    if phase is not None:
        try:
            target = normalize_phase(phase)
        except KeyError as error:
            raise typer.BadParameter(str(error.args[0])) from error

    orchestrator = _orchestrator(config)
    try:
        if run_all:
            results = orchestrator.run_all()
            if not results:
                typer.echo("All phases are already complete.")
            for result in results:
                _echo_result(result)
            return
        if target is None:
            result = orchestrator.run_next()
            if result is None:
                typer.echo("All phases are already complete.")
                return
        else:
            result = orchestrator.run_phase(target)
    except RampartError as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error
    _echo_result(result)


@app.command()
def status(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
) -> None:
    """Show where the active run stands and what to do next."""
    settings = _settings(config)
    store = StateStore(settings.audit_dir, settings.history_dir)
    try:
        active = store.load()
    except RampartError as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error
    archived = count_history(settings.history_dir)
    if active is None:
        typer.echo("No active run.")
        typer.echo(f"Archived runs: {archived}")
        typer.echo("Next: start")
        return
    typer.echo(summarize(active).render())
    typer.echo(f"Archived runs: {archived}")


@app.command()
def findings(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    severity: Optional[str] = typer.Option(None, "--severity", "-s", help="Only show this severity."),
    subsystem: Optional[str] = typer.Option(None, "--subsystem", help="Substring of the file path or title."),
    include_inactive: bool = typer.Option(False, "--all", help="Include resolved findings."),
    audit: str = typer.Option("current", "--audit", help=_AUDIT_OPTION_HELP),
) -> None:
    """List findings of a run (and the ones it carried forward)."""
    selected, _ = _resolve_audit(config, audit)
    seen = {finding.id for finding in selected.findings}
    pool = list(selected.findings) + [finding for finding in selected.carried_findings if finding.id not in seen]
    matches = query_findings(pool, severity=severity, subsystem=subsystem, include_inactive=include_inactive)
    if not matches:
        typer.echo("No matching findings.")
        return
    for finding in matches:
        tags = [tag for tag in (finding.evolution and finding.evolution.value, finding.recheck and finding.recheck.value) if tag]
        suffix = f" [{', '.join(tags)}]" if tags else ""
        location = f" {finding.target_file}" if finding.target_file else ""
        typer.echo(f"- {finding.id} {finding.severity.value} {finding.status.value}{location}: {finding.title}{suffix}")


@app.command()
def show(
    document: str = typer.Argument("report", help="Phase whose output to print, or 'architecture' / 'strategies'."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
    audit: str = typer.Option("current", "--audit", help=_AUDIT_OPTION_HELP),
) -> None:
    """Print the documents a phase wrote."""
    selected, audit_dir = _resolve_audit(config, audit)
    try:
        paths = phase_artifacts(selected, audit_dir, document)
    except KeyError as error:
        raise typer.BadParameter(str(error.args[0])) from error
    if not paths:
        typer.echo(f"No {document} output found in {audit_dir}.")
        return
    for path in paths:
        if len(paths) > 1:
            typer.echo(f"==> {path.relative_to(audit_dir).as_posix()} <==")
        typer.echo(path.read_text(encoding="utf-8").rstrip("\n"))


@app.command()
def history(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=_CONFIG_OPTION_HELP),
) -> None:
    """List archived runs."""
    settings = _settings(config)
    store = StateStore(settings.audit_dir, settings.history_dir)
    archives = store.list_archives()
    if not archives:
        typer.echo("No archived runs.")
        return
    for archive_dir in archives:
        try:
            archived = store.load_archive(archive_dir)
        except RampartError as error:
            typer.echo(f"- {archive_dir.name}: unreadable ({error})")
            continue
        typer.echo(
            f"- {archive_dir.name}: audit #{archived.run_number} ({archived.config.tier}), "
            f"{len(archived.active_findings)} active finding(s)"
        )


if __name__ == "__main__":
    app()
