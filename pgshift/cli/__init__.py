"""
Command Line Interface for pgshift.
"""

import json
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

import typer
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..audit.coupling import CouplingFinding, audit as audit_project
from ..config import Settings, get_settings
from ..db.base import create_ledger_session
from ..db.endpoint import PostgresEndpoint
from ..db.ledger_service import LedgerService
from ..db.pg_tools import PgTools
from ..log_config import configure_logging
from ..pipeline.orchestrator import MigrationOrchestrator, RunOutcome, RunResult
from ..pipeline.session import FreezeState, open_session, parse_scope
from ..pipeline.validation import ValidationReport
from ..policy.preflight import PreflightConfig, PreflightError, evaluate, gather_inputs

app = typer.Typer(help="pgshift - migrate a hosted Postgres database and prove the result")
console = Console()

STATUS_STYLE = {
    "pass": "✅ pass",
    "fail": "❌ fail",
    "warn": "⚠️  warn",
    "inconclusive": "❓ inconclusive",
}


def _tools(settings: Settings) -> PgTools:
    return PgTools(pg_dump_bin=settings.pg_dump_bin, psql_bin=settings.psql_bin)


def _auditor(settings: Settings):
    return audit_project if settings.project_root else None


def _run_dir(settings: Settings, run_id: str) -> Path:
    root = settings.workspace_root
    parsed = urlparse(root)
    return Path(parsed.path if parsed.scheme == "file" else root) / run_id


def _print_report(report: ValidationReport) -> None:
    table = Table(title="Validation", show_header=True, header_style="bold magenta")
    table.add_column("Check", style="cyan")
    table.add_column("Outcome")
    table.add_column("Details")

    for check in report.checks:
        name = f"{check.name} (critical)" if check.critical else check.name
        details = check.message
        if check.mismatches:
            details += "\n" + "\n".join(check.mismatches[:20])
            if len(check.mismatches) > 20:
                details += f"\n... {len(check.mismatches) - 20} more"
        table.add_row(name, STATUS_STYLE.get(check.status, check.status), details)

    console.print(table)
    if report.critical_failures:
        console.print(f"❌ Critical failures: {', '.join(report.critical_failures)}")
    console.print(f"Report: {report.report_name}")


def _print_result(result: RunResult) -> None:
    if result.report is not None:
        _print_report(result.report)
    for warning in result.warnings:
        console.print(f"⚠️  {warning}")
    if result.skipped_steps:
        console.print(f"↪ Reused checkpoints: {', '.join(result.skipped_steps)}")
    if result.error:
        console.print(f"❌ {result.error.get('code')}: {result.error.get('message')}")

    style = "bold green" if result.exit_code in (0, 3) else "bold red"
    rprint(
        Panel.fit(
            f"Run {result.run_id}: {result.outcome.value} (exit {result.exit_code})",
            style=style,
        )
    )


@app.callback()
def setup(
    log_level: Optional[str] = typer.Option(None, help="Log level (default: from config)"),
    log_format: Optional[str] = typer.Option(None, help="json or console (default: from config)"),
):
    """Configure logging before any command runs."""
    settings = get_settings()
    configure_logging(log_level or settings.log_level, log_format or settings.log_format)


@app.command()
def preflight(
    override_readiness: bool = typer.Option(
        False, help="Do not block on a moderate/high coupling tier"
    ),
):
    """Check tools, connectivity, versions and readiness without touching either database."""
    settings = get_settings()
    source = PostgresEndpoint("source", settings.source_db_url or "")
    target = PostgresEndpoint("target", settings.target_db_url or "")
    try:
        inputs = gather_inputs(settings, source, target, _tools(settings), _auditor(settings))
        result = evaluate(inputs, PreflightConfig(override_readiness=override_readiness))
    except PreflightError as e:
        console.print(f"❌ {e.code}: {e.message}")
        raise typer.Exit(RunOutcome.FAILURE_PREFLIGHT.exit_code)
    finally:
        source.dispose()
        target.dispose()

    table = Table(title="Preflight", show_header=True, header_style="bold magenta")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_row("Client tools", "✅ found")
    table.add_row("Source", f"✅ reachable ({source.display_url})")
    table.add_row("Target", f"✅ reachable ({target.display_url})")
    table.add_row("Source major / pg_dump major", f"{result.source_major} / {result.pg_dump_major}")
    table.add_row("Readiness tier", result.readiness_tier or "not audited")
    console.print(table)

    for warning in result.warnings:
        console.print(f"⚠️  {warning}")
    console.print("✅ Preflight passed")


@app.command()
def migrate(
    dry_run: bool = typer.Option(False, help="Extract and clean the schema only; write nothing"),
    scope: str = typer.Option("all", help="Phases to run: schema,data,sequences or all"),
    run_id: Optional[str] = typer.Option(None, help="Resume an existing run"),
    override_readiness: bool = typer.Option(
        False, help="Do not block on a moderate/high coupling tier"
    ),
):
    """Run (or resume) a migration."""
    try:
        parse_scope(scope)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--scope")

    settings = get_settings()
    session = open_session(
        settings,
        run_id=run_id,
        dry_run=dry_run,
        scope=scope,
        override_readiness=override_readiness,
    )
    rprint(
        Panel.fit(
            f"🚚 pgshift run {session.run_id}"
            + (" (dry-run)" if dry_run else "")
            + f"\nScope: {', '.join(sorted(session.scope))}",
            style="bold blue",
        )
    )

    orchestrator = MigrationOrchestrator(
        session, _tools(settings), settings, auditor=_auditor(settings)
    )
    try:
        result = orchestrator.run()
    finally:
        session.source.dispose()
        session.target.dispose()

    _print_result(result)
    if session.freeze_state is FreezeState.FROZEN:
        console.print(
            f"🧊 Source is frozen (read-only). Lift with: pgshift rollback --run-id {session.run_id}"
        )
    raise typer.Exit(result.exit_code)


@app.command()
def validate(
    run_id: Optional[str] = typer.Option(None, help="Attach the report to an existing run"),
):
    """Compare source and target and write a validation report."""
    settings = get_settings()
    session = open_session(settings, run_id=run_id)
    orchestrator = MigrationOrchestrator(session, _tools(settings), settings)
    try:
        result = orchestrator.validate_only()
    finally:
        session.source.dispose()
        session.target.dispose()

    _print_result(result)
    raise typer.Exit(result.exit_code)


@app.command()
def rollback(
    run_id: str = typer.Option(..., help="Run whose source freeze should be lifted"),
    actor: str = typer.Option("operator", help="Who requested the rollback (recorded)"),
):
    """Make the source writable again."""
    settings = get_settings()
    if not _run_dir(settings, run_id).exists():
        console.print(f"❌ Run {run_id} not found in {settings.workspace_root}")
        raise typer.Exit(1)

    session = open_session(settings, run_id=run_id)
    if session.freeze_state is not FreezeState.FROZEN:
        console.print(f"ℹ️  Source of run {run_id} is not frozen; nothing to roll back")
        return

    orchestrator = MigrationOrchestrator(session, _tools(settings), settings)
    try:
        orchestrator.rollback(actor=actor)
    finally:
        session.source.dispose()
    console.print(f"✅ Source writable again ({session.source.display_url})")


@app.command()
def status(
    run_id: str = typer.Option(..., help="Run to show"),
):
    """Show checkpoints, state transitions and freeze state of a run."""
    settings = get_settings()
    run_dir = _run_dir(settings, run_id)
    if not (run_dir / "ledger.db").exists():
        console.print(f"❌ Run {run_id} not found in {settings.workspace_root}")
        raise typer.Exit(1)

    ledger = LedgerService(create_ledger_session(run_dir / "ledger.db"), run_id)

    table = Table(title=f"Run {run_id}", show_header=True, header_style="bold magenta")
    table.add_column("Phase", style="cyan")
    table.add_column("Step", style="yellow")
    table.add_column("Status")
    table.add_column("Recorded")
    for checkpoint in ledger.checkpoints():
        table.add_row(
            checkpoint.phase,
            checkpoint.step,
            checkpoint.status,
            checkpoint.recorded_at.isoformat() if checkpoint.recorded_at else "",
        )
    console.print(table)

    transitions = ledger.transitions()
    if transitions:
        path = " → ".join([transitions[0].from_state] + [t.to_state for t in transitions])
        console.print(f"States: {path}")

    freeze = ledger.current_freeze_state()
    console.print(f"Source freeze: {'🧊 frozen' if freeze == 'frozen' else 'writable'}")

    reports: List[Path] = sorted((run_dir / "reports").glob("validation-*.json"))
    if reports:
        latest = json.loads(reports[-1].read_text(encoding="utf-8"))
        console.print(f"Latest report: reports/{reports[-1].name} (verdict: {latest['verdict']})")


@app.command()
def audit(
    project_root: Path = typer.Argument(..., help="Application source tree to scan"),
    report: Optional[Path] = typer.Option(
        None, "--report", help="Also write the finding as JSON to this path"
    ),
):
    """Score how tightly an application is coupled to the source platform."""
    try:
        finding: CouplingFinding = audit_project(project_root)
    except FileNotFoundError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)

    table = Table(title="Coupling audit", show_header=True, header_style="bold cyan")
    table.add_column("Category", style="yellow")
    table.add_column("Count", justify="right")
    for name, count in sorted(finding.counts.items()):
        table.add_row(name, str(count))
    for name, present in sorted(finding.layout.items()):
        table.add_row(name, "yes" if present else "no")
    console.print(table)

    if report is not None:
        report.write_text(json.dumps(finding.to_dict(), indent=2) + "\n", encoding="utf-8")
        console.print(f"Report saved: {report}")

    style = "bold red" if finding.blocking else "bold green"
    rprint(
        Panel.fit(
            f"Tier: {finding.tier} ({finding.violations} violations, "
            f"{finding.files_scanned} files)",
            style=style,
        )
    )


@app.command()
def version():
    """Show version information."""
    from .. import __version__
    rprint(Panel.fit(f"pgshift v{__version__}", style="bold green"))


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
