"""Compliance Reporter — periodic metrics aggregated from the audit ledger.

Reports are pure functions of ledger entries and a period: nothing is
written, so a report can be built any number of times, concurrently with
scanning, and always gives the same answer for the same entries.
"""

from __future__ import annotations

import calendar
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable

from phiguard.audit.models import AuditLedgerEntry, EntryKind, LedgerState
from phiguard.classify.models import RiskTier
from phiguard.errors import ValidationError

RAMQ_INFO_TYPE = "QUEBEC_RAMQ_NUMBER"


class ReportType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"
    ON_DEMAND = "on_demand"


@dataclass(frozen=True)
class ReportPeriod:
    """Half-open time range ``[start, end)`` a report covers."""

    report_type: ReportType
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValidationError(
                f"Report period end {self.end.isoformat()} is not after start "
                f"{self.start.isoformat()}",
                field="end",
            )

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    @classmethod
    def for_type(cls, report_type: ReportType, anchor: datetime) -> ReportPeriod:
        """The calendar period of *report_type* containing *anchor* (UTC).

        Weeks start on Monday; quarters on January, April, July, October.

        Raises:
            ValidationError: For ``on_demand``, which needs explicit bounds.
        """
        anchor = anchor.astimezone(timezone.utc)
        day = anchor.replace(hour=0, minute=0, second=0, microsecond=0)

        if report_type == ReportType.DAILY:
            return cls(report_type, day, day + timedelta(days=1))
        if report_type == ReportType.WEEKLY:
            start = day - timedelta(days=day.weekday())
            return cls(report_type, start, start + timedelta(days=7))
        if report_type == ReportType.MONTHLY:
            start = day.replace(day=1)
            days = calendar.monthrange(start.year, start.month)[1]
            return cls(report_type, start, start + timedelta(days=days))
        if report_type == ReportType.QUARTERLY:
            first_month = 3 * ((day.month - 1) // 3) + 1
            start = day.replace(month=first_month, day=1)
            end_month = first_month + 3
            if end_month > 12:
                end = start.replace(year=start.year + 1, month=1)
            else:
                end = start.replace(month=end_month)
            return cls(report_type, start, end)
        if report_type == ReportType.ANNUAL:
            start = day.replace(month=1, day=1)
            return cls(report_type, start, start.replace(year=start.year + 1))
        raise ValidationError(
            "An on_demand report needs an explicit start and end", field="report_type"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_type": self.report_type.value,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }


@dataclass(frozen=True)
class ComplianceReport:
    """Aggregated metrics for one period.

    Rates are None when the period contains no scans.
    """

    period: ReportPeriod
    generated_at: datetime
    total_scans: int = 0
    successful_scans: int = 0
    failed_scans: int = 0
    pending_scans: int = 0
    error_rate: float | None = None
    tier_counts: dict[str, int] = field(default_factory=dict)
    high_risk_scans: int = 0
    total_findings: int = 0
    category_counts: dict[str, int] = field(default_factory=dict)
    quebec_specific_detections: int = 0
    ramq_detections: int = 0
    average_processing_ms: float | None = None
    compliant_scans: int = 0
    compliance_rate: float | None = None
    consent_violations: int = 0
    purpose_violations: int = 0
    residency_violations: int = 0
    high_risk_not_deidentified: int = 0
    deidentification_requests: int = 0
    deidentification_successes: int = 0
    deidentification_failures: int = 0
    transformations_applied: int = 0
    average_information_loss: float | None = None
    eligible_for_disposal: int = 0
    disposed: int = 0

    @property
    def law25_compliance_score(self) -> float | None:
        """Compliance rate as a percentage."""
        if self.compliance_rate is None:
            return None
        return round(self.compliance_rate * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period.to_dict(),
            "generated_at": self.generated_at.isoformat(),
            "total_scans": self.total_scans,
            "successful_scans": self.successful_scans,
            "failed_scans": self.failed_scans,
            "pending_scans": self.pending_scans,
            "error_rate": self.error_rate,
            "tier_counts": dict(self.tier_counts),
            "high_risk_scans": self.high_risk_scans,
            "total_findings": self.total_findings,
            "category_counts": dict(self.category_counts),
            "quebec_specific_detections": self.quebec_specific_detections,
            "ramq_detections": self.ramq_detections,
            "average_processing_ms": self.average_processing_ms,
            "compliant_scans": self.compliant_scans,
            "compliance_rate": self.compliance_rate,
            "law25_compliance_score": self.law25_compliance_score,
            "consent_violations": self.consent_violations,
            "purpose_violations": self.purpose_violations,
            "residency_violations": self.residency_violations,
            "high_risk_not_deidentified": self.high_risk_not_deidentified,
            "deidentification_requests": self.deidentification_requests,
            "deidentification_successes": self.deidentification_successes,
            "deidentification_failures": self.deidentification_failures,
            "transformations_applied": self.transformations_applied,
            "average_information_loss": self.average_information_loss,
            "eligible_for_disposal": self.eligible_for_disposal,
            "disposed": self.disposed,
        }


# -----------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------


@dataclass
class _ScanView:
    """What the ledger says about one scan, compensations applied."""

    submitted_at: datetime | None = None
    states: set[LedgerState] = field(default_factory=set)
    result: dict[str, Any] = field(default_factory=dict)
    deidentification: dict[str, Any] = field(default_factory=dict)
    disposed_at: datetime | None = None


def _views(entries: Iterable[AuditLedgerEntry]) -> dict[str, _ScanView]:
    views: dict[str, _ScanView] = {}
    by_id: dict[str, AuditLedgerEntry] = {}
    ordered = sorted(entries, key=lambda e: (e.scan_id, e.sequence))
    for entry in ordered:
        by_id[entry.entry_id] = entry
        view = views.setdefault(entry.scan_id, _ScanView())
        if entry.kind == EntryKind.COMPENSATION:
            corrections = dict(entry.payload.get("corrections") or {})
            original = by_id.get(entry.compensates or "")
            if original is not None and original.state == LedgerState.TRANSFORMED:
                view.deidentification.update(corrections)
            else:
                view.result.update(corrections)
            continue

        view.states.add(entry.state)
        if entry.state == LedgerState.SUBMITTED:
            view.submitted_at = entry.timestamp
        elif entry.state in (LedgerState.SCANNED, LedgerState.FAILED):
            view.result.update(entry.payload)
        elif entry.state == LedgerState.TRANSFORMED:
            view.deidentification.update(entry.payload)
        elif entry.state == LedgerState.DISPOSED:
            view.disposed_at = entry.timestamp
    return views


def _mean(values: list[float]) -> float | None:
    if not values:
        return None
    return round(sum(values) / len(values), 4)


def build_report(
    entries: Iterable[AuditLedgerEntry],
    period: ReportPeriod,
    *,
    generated_at: datetime | None = None,
) -> ComplianceReport:
    """Aggregate ledger entries into a ComplianceReport.

    A scan belongs to the period its ``submitted`` entry falls in.  Disposal
    tombstones are counted by their own timestamp.

    Args:
        entries: Ledger entries, in any order.
        period: The period to report on.
        generated_at: Report timestamp.

    Returns:
        The ComplianceReport.
    """
    views = _views(entries)

    tiers: Counter[str] = Counter()
    categories: Counter[str] = Counter()
    latencies: list[float] = []
    losses: list[float] = []
    totals = Counter()

    for view in views.values():
        if view.disposed_at is not None and period.contains(view.disposed_at):
            totals["disposed"] += 1
        if view.submitted_at is None or not period.contains(view.submitted_at):
            continue

        totals["total"] += 1
        if LedgerState.ELIGIBLE_FOR_DISPOSAL in view.states:
            totals["eligible"] += 1

        if LedgerState.FAILED in view.states:
            totals["failed"] += 1
            continue
        if LedgerState.SCANNED not in view.states:
            totals["pending"] += 1
            continue

        result = view.result
        totals["successful"] += 1
        tier = RiskTier(result.get("classification", RiskTier.SAFE.value))
        tiers[tier.value] += 1
        if tier.at_least(RiskTier.HIGH_RISK):
            totals["high_risk"] += 1
        totals["findings"] += int(result.get("finding_count", 0))
        categories.update(result.get("category_counts") or {})
        totals["quebec"] += int(result.get("quebec_specific_count", 0))
        totals["ramq"] += int((result.get("info_type_counts") or {}).get(RAMQ_INFO_TYPE, 0))
        if result.get("processing_ms") is not None:
            latencies.append(float(result["processing_ms"]))

        issues = set(result.get("compliance_issues") or ())
        if result.get("compliant"):
            totals["compliant"] += 1
        totals["consent"] += "consent_not_verified" in issues
        totals["purpose"] += "purpose_not_documented" in issues
        totals["residency"] += "data_residency_unconfirmed" in issues
        totals["not_deidentified"] += "high_risk_not_deidentified" in issues

        if result.get("deidentification_requested"):
            totals["deid_requests"] += 1
            if LedgerState.TRANSFORMED in view.states:
                totals["deid_successes"] += 1
                totals["transformations"] += int(
                    view.deidentification.get("transformations_applied", 0)
                )
                losses.append(float(view.deidentification.get("information_loss", 0.0)))
            elif result.get("deidentification_failed"):
                totals["deid_failures"] += 1

    total = totals["total"]
    return ComplianceReport(
        period=period,
        generated_at=generated_at or datetime.now(timezone.utc),
        total_scans=total,
        successful_scans=totals["successful"],
        failed_scans=totals["failed"],
        pending_scans=totals["pending"],
        error_rate=round(totals["failed"] / total, 4) if total else None,
        tier_counts={t.value: tiers.get(t.value, 0) for t in RiskTier},
        high_risk_scans=totals["high_risk"],
        total_findings=totals["findings"],
        category_counts=dict(sorted(categories.items())),
        quebec_specific_detections=totals["quebec"],
        ramq_detections=totals["ramq"],
        average_processing_ms=_mean(latencies),
        compliant_scans=totals["compliant"],
        compliance_rate=round(totals["compliant"] / total, 4) if total else None,
        consent_violations=totals["consent"],
        purpose_violations=totals["purpose"],
        residency_violations=totals["residency"],
        high_risk_not_deidentified=totals["not_deidentified"],
        deidentification_requests=totals["deid_requests"],
        deidentification_successes=totals["deid_successes"],
        deidentification_failures=totals["deid_failures"],
        transformations_applied=totals["transformations"],
        average_information_loss=_mean(losses),
        eligible_for_disposal=totals["eligible"],
        disposed=totals["disposed"],
    )
