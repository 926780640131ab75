"""Rich CLI rendering for scan results and compliance reports."""

from __future__ import annotations

from typing import Any, Sequence

from phiguard.classify.models import RiskTier, ScanResult
from phiguard.comply.report import ComplianceReport
from phiguard.scan.models import Finding
from phiguard.transform.models import DeidentificationRecord

_TIER_COLORS = {
    RiskTier.SAFE: "#00ff88",
    RiskTier.LOW_RISK: "#5eead4",
    RiskTier.MEDIUM_RISK: "#ffcc00",
    RiskTier.HIGH_RISK: "#ff8800",
    RiskTier.CRITICAL_RISK: "#ff3366",
}


def _pct(value: float | None) -> str:
    return "—" if value is None else f"{value * 100:.1f}%"


def render_scan_result(
    result: ScanResult,
    findings: Sequence[Finding],
    console: Any,
    record: DeidentificationRecord | None = None,
) -> None:
    """Render one scan to the terminal.

    Findings are shown with their masked quote only.

    Args:
        result: The scan result.
        findings: Findings of the scan.
        console: A rich Console instance (stderr-routed).
        record: De-identification record, if one was produced.
    """
    from rich.panel import Panel
    from rich.table import Table

    tier = result.classification.tier
    color = _TIER_COLORS[tier]
    summary = (
        f"[bold {color}]{tier.value.upper()}[/bold {color}] · "
        f"score [bold]{result.classification.risk_score:.2f}[/bold] · "
        f"{len(findings)} finding(s)"
    )
    if result.compliance_issues:
        summary += "\n[dim]Issues: " + ", ".join(result.compliance_issues) + "[/dim]"
    console.print(Panel(summary, title=f"Scan {result.scan_id}", border_style="#5eead4"))

    if findings:
        table = Table(
            title="Findings",
            show_header=True,
            header_style="bold dim",
            border_style="#333333",
            title_style="#5eead4 bold",
            expand=True,
        )
        table.add_column("Line:Col", justify="right", no_wrap=True)
        table.add_column("InfoType", style="cyan", ratio=2)
        table.add_column("Likelihood", ratio=1)
        table.add_column("Quote", ratio=2)
        for f in findings:
            table.add_row(
                f"{f.span.line}:{f.span.column}",
                f.info_type,
                f.likelihood.value,
                f.redacted_quote,
            )
        console.print(table)

    if record is not None:
        ops = ", ".join(f"{op} ×{n}" for op, n in record.operation_counts.items()) or "none"
        reversible = "reversible" if record.reversible else "irreversible"
        console.print(
            f"[dim]De-identified ({reversible}): {ops}; "
            f"information loss {_pct(record.information_loss)}[/dim]"
        )
        for warning in record.warnings:
            console.print(f"  [bold yellow]![/bold yellow] {warning}")

    for line in result.recommendations:
        console.print(f"  [dim]→ {line}[/dim]")
    console.print()


def render_compliance_report(report: ComplianceReport, console: Any) -> None:
    """Render a compliance report to the terminal using rich.

    Args:
        report: The aggregated report.
        console: A rich Console instance (stderr-routed).
    """
    from rich.panel import Panel
    from rich.table import Table

    period = report.period
    title = (
        f"{period.report_type.value.replace('_', ' ').title()} Compliance Report "
        f"({period.start.date().isoformat()} – {period.end.date().isoformat()})"
    )

    if report.total_scans == 0:
        console.print(Panel("[dim]No scans in this period.[/dim]", title=title, border_style="#5eead4"))
        return

    rate_color = "#00ff88" if (report.compliance_rate or 0) >= 0.95 else "#ff3366"
    summary = " · ".join([
        f"[bold]{report.total_scans}[/bold] scans",
        f"[bold {rate_color}]{_pct(report.compliance_rate)}[/bold {rate_color}] compliant",
        f"[bold]{report.high_risk_scans}[/bold] high risk",
        f"error rate {_pct(report.error_rate)}",
    ])
    console.print(Panel(summary, title=title, border_style="#5eead4"))

    table = Table(
        title="Metrics",
        show_header=True,
        header_style="bold dim",
        border_style="#333333",
        title_style="#5eead4 bold",
        expand=True,
    )
    table.add_column("Metric", style="cyan", ratio=3)
    table.add_column("Value", justify="right", ratio=1)

    latency = report.average_processing_ms
    rows = [
        ("Successful scans", str(report.successful_scans)),
        ("Failed scans", str(report.failed_scans)),
        ("Pending scans", str(report.pending_scans)),
        ("Total findings", str(report.total_findings)),
        ("Quebec-specific detections", str(report.quebec_specific_detections)),
        ("RAMQ detections", str(report.ramq_detections)),
        ("Average processing time", "—" if latency is None else f"{latency:.1f} ms"),
        ("Consent violations", str(report.consent_violations)),
        ("Undocumented purpose", str(report.purpose_violations)),
        ("Data residency unconfirmed", str(report.residency_violations)),
        ("High risk, not de-identified", str(report.high_risk_not_deidentified)),
        ("De-identification requests", str(report.deidentification_requests)),
        ("De-identification failures", str(report.deidentification_failures)),
        ("Average information loss", _pct(report.average_information_loss)),
        ("Eligible for disposal", str(report.eligible_for_disposal)),
        ("Disposed", str(report.disposed)),
    ]
    for name, value in rows:
        table.add_row(name, value)
    console.print(table)

    tiers = Table(show_header=True, header_style="bold dim", border_style="#333333", expand=True)
    for tier in RiskTier:
        tiers.add_column(tier.value, justify="center")
    tiers.add_row(*(
        f"[{_TIER_COLORS[t]}]{report.tier_counts.get(t.value, 0)}[/{_TIER_COLORS[t]}]"
        for t in RiskTier
    ))
    console.print(tiers)
    console.print()


def render_compliance_json(report: ComplianceReport) -> dict[str, Any]:
    """Convert a compliance report to a JSON-serializable dict."""
    return report.to_dict()
