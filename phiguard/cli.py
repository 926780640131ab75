"""phiguard CLI entry point.

Provides the `phiguard` command with subcommands:
  - scan: Scan a text file for PHI, classify it, optionally de-identify it
  - report: Compliance report over a ledger file
  - sweep: Mark retained scans past their disposal date as eligible
  - validate-config: Load and validate an engine configuration
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, NoReturn, Optional

import typer
from rich.console import Console

from phiguard import __version__
from phiguard.errors import PHIGuardError

app = typer.Typer(
    name="phiguard",
    help="PHI detection, risk classification and de-identification for Quebec clinical text.",
    no_args_is_help=True,
)

# Human output goes to stderr; stdout carries JSON and de-identified text.
_console = Console(stderr=True)


def _version_callback(value: bool) -> None:
    if value:
        _console.print(f"phiguard {__version__}")
        raise typer.Exit()


def _fail(error: PHIGuardError) -> NoReturn:
    _console.print(f"[bold red]Error ({error.kind}):[/bold red] {error}", highlight=False)
    raise typer.Exit(1)


def _parse_when(value: str | None, option: str) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        _console.print(f"[bold red]Error:[/bold red] {option} must be an ISO 8601 date, got {value!r}")
        raise typer.Exit(1) from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Logging level. Defaults to PHIGUARD_LOG_LEVEL or INFO."),
    ] = None,
) -> None:
    """phiguard — PHI detection and de-identification engine."""
    from phiguard.config.settings import Settings
    from phiguard.logging_config import configure_logging

    settings = Settings()
    configure_logging(log_level or settings.log_level, settings.log_format)


# ---------------------------------------------------------------------------
# scan command
# ---------------------------------------------------------------------------


@app.command()
def scan(
    file: Annotated[Path, typer.Argument(help="Text file to scan (UTF-8).")],
    config: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Engine configuration YAML. Built-in Quebec defaults if omitted."),
    ] = None,
    deidentify: Annotated[
        bool,
        typer.Option("--deidentify", "-d", help="Write a de-identified version of the text."),
    ] = False,
    patient_id: Annotated[
        Optional[str],
        typer.Option("--patient-id", help="Subject id; keeps date shifts consistent per patient."),
    ] = None,
    content_type: Annotated[
        str,
        typer.Option("--content-type", help="Content type (medical_note, lab_result, ...)."),
    ] = "text",
    ledger: Annotated[
        Optional[Path],
        typer.Option("--ledger", "-l", help="JSON Lines ledger file to append the audit trail to."),
    ] = None,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write de-identified text here instead of stdout."),
    ] = None,
    output_json: Annotated[
        bool,
        typer.Option("--json", help="Print the result as JSON (quotes are masked)."),
    ] = False,
) -> None:
    """Scan a text file for PHI and classify its risk.

    Examples:
      phiguard scan note.txt
      phiguard scan note.txt --deidentify -o note.deid.txt
      phiguard scan note.txt --ledger audit.jsonl --json > result.json
    """
    from phiguard.comply.render import render_scan_result
    from phiguard.config.settings import Settings
    from phiguard.engine import PHIEngine
    from phiguard.errors import ValidationError
    from phiguard.scan.models import ContentType, ScanContext, ScanOptions

    if not file.exists():
        _console.print(f"[bold red]Error:[/bold red] File not found: {file}")
        raise typer.Exit(1)
    try:
        kind = ContentType(content_type)
    except ValueError:
        valid = ", ".join(c.value for c in ContentType)
        _console.print(f"[bold red]Error:[/bold red] Unknown content type '{content_type}'. Valid: {valid}")
        raise typer.Exit(1) from None

    settings = Settings()
    updates = {}
    if config is not None:
        updates["config_path"] = config
    if ledger is not None:
        updates["ledger_path"] = ledger
    settings = settings.model_copy(update=updates)

    try:
        content = file.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        _fail(ValidationError(f"{file} is not UTF-8 text: {e}", field="file"))

    try:
        engine = PHIEngine.from_settings(settings)
        outcome = engine.scan(
            content,
            ScanContext(patient_id=patient_id, content_type=kind, source_system="cli"),
            ScanOptions(enable_deidentification=deidentify),
            principal="cli",
        )
    except PHIGuardError as e:
        _fail(e)

    if output_json:
        Console().print_json(json.dumps(outcome.to_dict(), default=str))
    else:
        render_scan_result(outcome.result, outcome.findings, _console, outcome.record)
        if outcome.deidentified_text is not None:
            if output is not None:
                output.write_text(outcome.deidentified_text, encoding="utf-8")
                _console.print(f"[#00ff88]✓[/#00ff88] De-identified text written to {output}")
            else:
                typer.echo(outcome.deidentified_text)


# ---------------------------------------------------------------------------
# report command
# ---------------------------------------------------------------------------


@app.command()
def report(
    ledger: Annotated[Path, typer.Option("--ledger", "-l", help="JSON Lines ledger file.")],
    report_type: Annotated[
        str,
        typer.Option("--type", "-t", help="daily, weekly, monthly, quarterly, annual or on_demand."),
    ] = "monthly",
    start: Annotated[
        Optional[str], typer.Option("--start", help="Period start (ISO 8601), on_demand only.")
    ] = None,
    end: Annotated[
        Optional[str], typer.Option("--end", help="Period end (ISO 8601), on_demand only.")
    ] = None,
    anchor: Annotated[
        Optional[str], typer.Option("--at", help="Any moment inside the period. Defaults to now.")
    ] = None,
    output_json: Annotated[bool, typer.Option("--json", help="Output the report as JSON.")] = False,
) -> None:
    """Compliance report over an audit ledger."""
    from phiguard.audit.ledger import AuditLedger
    from phiguard.audit.store import JsonlLedgerStore
    from phiguard.comply.render import render_compliance_json, render_compliance_report
    from phiguard.comply.report import ReportPeriod, ReportType, build_report

    try:
        kind = ReportType(report_type)
    except ValueError:
        valid = ", ".join(t.value for t in ReportType)
        _console.print(f"[bold red]Error:[/bold red] Unknown report type '{report_type}'. Valid: {valid}")
        raise typer.Exit(1) from None

    try:
        if kind == ReportType.ON_DEMAND:
            period_start = _parse_when(start, "--start")
            period_end = _parse_when(end, "--end")
            if period_start is None or period_end is None:
                _console.print("[bold red]Error:[/bold red] on_demand reports need --start and --end")
                raise typer.Exit(1)
            period = ReportPeriod(kind, period_start, period_end)
        else:
            period = ReportPeriod.for_type(kind, _parse_when(anchor, "--at") or datetime.now(timezone.utc))
        entries = AuditLedger(JsonlLedgerStore(ledger)).entries()
    except PHIGuardError as e:
        _fail(e)

    result = build_report(entries, period)
    if output_json:
        Console().print_json(json.dumps(render_compliance_json(result)))
    else:
        render_compliance_report(result, _console)


# ---------------------------------------------------------------------------
# sweep command
# ---------------------------------------------------------------------------


@app.command()
def sweep(
    ledger: Annotated[Path, typer.Option("--ledger", "-l", help="JSON Lines ledger file.")],
    principal: Annotated[
        str, typer.Option("--principal", "-p", help="Who is running the sweep.")
    ] = "retention-sweep",
) -> None:
    """Mark retained scans past their disposal date as eligible for disposal.

    Nothing is deleted.
    """
    from phiguard.audit.ledger import AuditLedger
    from phiguard.audit.store import JsonlLedgerStore

    try:
        marked = AuditLedger(JsonlLedgerStore(ledger)).sweep(datetime.now(timezone.utc), principal=principal)
    except PHIGuardError as e:
        _fail(e)

    if not marked:
        _console.print("[dim]No scans are due for disposal.[/dim]")
        return
    for entry in marked:
        _console.print(f"  [#ffcc00]→[/#ffcc00] {entry.scan_id} eligible for disposal")
    _console.print(f"[bold]{len(marked)}[/bold] scan(s) marked eligible for disposal.")


# ---------------------------------------------------------------------------
# validate-config command
# ---------------------------------------------------------------------------


@app.command(name="validate-config")
def validate_config_command(
    path: Annotated[Path, typer.Argument(help="Engine configuration YAML.")],
) -> None:
    """Load and validate an engine configuration."""
    from phiguard.config.loader import load_config
    from phiguard.scan.registry import InfoTypeRegistry

    try:
        config = load_config(path)
        InfoTypeRegistry.from_config(config).validate()
    except PHIGuardError as e:
        _fail(e)

    summary = config.summary()
    _console.print(
        f"[#00ff88]✓[/#00ff88] Configuration {summary['version']} "
        f"({summary['status']}) is valid: {len(summary['info_types'])} InfoTypes."
    )
    if summary["status"] != "approved":
        _console.print("[bold yellow]![/bold yellow] Not approved: the engine will reject scans with it.")
