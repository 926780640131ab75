"""Risk tiers and the Classification result."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RiskTier(str, Enum):
    """Overall risk classification of scanned content, lowest first."""

    SAFE = "safe"
    LOW_RISK = "low_risk"
    MEDIUM_RISK = "medium_risk"
    HIGH_RISK = "high_risk"
    CRITICAL_RISK = "critical_risk"

    @property
    def rank(self) -> int:
        return list(RiskTier).index(self)

    def at_least(self, other: RiskTier) -> bool:
        return self.rank >= other.rank


@dataclass(frozen=True)
class Classification:
    """Aggregate verdict over a set of findings.

    Attributes:
        finding_count: Number of findings classified.
        category_counts: Findings per InfoCategory value.
        info_type_counts: Findings per InfoType id.
        quebec_specific_count: Findings from Quebec-specific InfoTypes.
        tier: Risk tier after threshold mapping and overrides.
        risk_score: Weighted score in [0, 10].
        score_tier: Tier implied by the score alone, before overrides.
        compliance_issues: Codes of override rules that fired.
    """

    finding_count: int
    category_counts: dict[str, int] = field(default_factory=dict)
    info_type_counts: dict[str, int] = field(default_factory=dict)
    quebec_specific_count: int = 0
    tier: RiskTier = RiskTier.SAFE
    risk_score: float = 0.0
    score_tier: RiskTier = RiskTier.SAFE
    compliance_issues: tuple[str, ...] = ()

    @property
    def is_high_risk(self) -> bool:
        return self.tier.at_least(RiskTier.HIGH_RISK)

    def to_dict(self) -> dict[str, Any]:
        return {
            "finding_count": self.finding_count,
            "category_counts": dict(self.category_counts),
            "info_type_counts": dict(self.info_type_counts),
            "quebec_specific_count": self.quebec_specific_count,
            "classification": self.tier.value,
            "risk_score": self.risk_score,
            "score_tier": self.score_tier.value,
            "compliance_issues": list(self.compliance_issues),
        }


@dataclass(frozen=True)
class ScanResult:
    """The persisted outcome of one ScanRequest.

    Exactly one exists per request.  It is derived and never edited;
    scanning the same content again produces a new request and result.

    Attributes:
        scan_id: Owning ScanRequest id.
        classification: Risk verdict over the findings.
        compliant: All Law 25 conditions held for this scan.
        compliance_issues: Override codes and Law 25 violations.
        recommendations: Human-readable follow-ups for the submitter.
        processing_ms: Wall time spent scanning and classifying.
        deidentified: Whether a de-identified variant was produced.
        config_version: Configuration version the scan ran against.
    """

    scan_id: str
    classification: Classification
    compliant: bool
    compliance_issues: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    processing_ms: float = 0.0
    deidentified: bool = False
    config_version: str = ""

    @property
    def tier(self) -> RiskTier:
        return self.classification.tier

    def to_dict(self) -> dict[str, Any]:
        data = self.classification.to_dict()
        data.update({
            "scan_id": self.scan_id,
            "compliant": self.compliant,
            "compliance_issues": list(self.compliance_issues),
            "recommendations": list(self.recommendations),
            "processing_ms": self.processing_ms,
            "deidentified": self.deidentified,
            "config_version": self.config_version,
        })
        return data
