"""Classifier — turns a set of findings into a risk verdict.

The score is a weighted sum of ``base_risk_weight × confidence`` over all
findings, saturating at ``max_score``.  Thresholds map the score to a
tier, and override rules can force a minimum tier whatever the score says.
Classification is a pure function: the same findings in any order always
yield the same Classification.
"""

from __future__ import annotations

import math
from collections import Counter
from typing import Iterable, Mapping

from phiguard.classify.models import Classification, RiskTier
from phiguard.config.schema import EngineConfig, OverrideRule, RiskConfig, RiskThresholds
from phiguard.errors import ConfigurationError
from phiguard.scan.models import Finding, InfoCategory


def score_to_tier(score: float, thresholds: RiskThresholds) -> RiskTier:
    """Map a risk score to a tier.

    ``0`` is safe; each threshold is the inclusive upper bound of its tier.
    """
    if score <= 0.0:
        return RiskTier.SAFE
    if score <= thresholds.low:
        return RiskTier.LOW_RISK
    if score <= thresholds.medium:
        return RiskTier.MEDIUM_RISK
    if score <= thresholds.high:
        return RiskTier.HIGH_RISK
    return RiskTier.CRITICAL_RISK


def _rule_matches(rule: OverrideRule, finding: Finding) -> bool:
    if rule.category is not None and finding.category != rule.category:
        return False
    if rule.info_type is not None and finding.info_type != rule.info_type:
        return False
    return finding.likelihood.meets(rule.min_likelihood)


class Classifier:
    """Weighted, rule-based classifier for one configuration version.

    Args:
        weights: ``base_risk_weight`` per InfoType id.
        risk: Thresholds, override rules and score ceiling.
    """

    def __init__(self, weights: Mapping[str, float], risk: RiskConfig | None = None) -> None:
        self._weights = dict(weights)
        self._risk = risk or RiskConfig()

    @classmethod
    def from_config(cls, config: EngineConfig) -> Classifier:
        return cls({t.id: t.base_risk_weight for t in config.info_types}, config.risk)

    def _weight(self, info_type: str) -> float:
        try:
            return self._weights[info_type]
        except KeyError:
            raise ConfigurationError(
                f"Finding references InfoType '{info_type}' that has no risk weight "
                f"in this configuration",
                field="info_type",
            ) from None

    def raw_score(self, findings: Iterable[Finding]) -> float:
        """Weighted risk score in ``[0, max_score]``, unrounded."""
        # fsum is exact, so the order findings arrive in cannot change the score
        raw = math.fsum(self._weight(f.info_type) * f.confidence_score for f in findings)
        return min(raw, self._risk.max_score)

    def score(self, findings: Iterable[Finding]) -> float:
        """Weighted risk score rounded to 2 places for display."""
        return round(self.raw_score(findings), 2)

    def classify(self, findings: Iterable[Finding]) -> Classification:
        """Aggregate *findings* into a Classification.

        Args:
            findings: Findings from one scan, in any order.

        Returns:
            The Classification.  ``compliance_issues`` lists the codes of
            every override rule that matched, in configuration order.

        Raises:
            ConfigurationError: If a finding's InfoType has no weight.
        """
        items = sorted(findings, key=Finding.sort_key)
        raw = self.raw_score(items)
        score_tier = score_to_tier(raw, self._risk.thresholds)

        tier = score_tier
        fired: list[str] = []
        for rule in self._risk.overrides:
            if any(_rule_matches(rule, f) for f in items):
                fired.append(rule.code)
                if not tier.at_least(rule.min_tier):
                    tier = rule.min_tier

        categories = Counter(f.category.value for f in items)
        info_types = Counter(f.info_type for f in items)
        return Classification(
            finding_count=len(items),
            category_counts=dict(sorted(categories.items())),
            info_type_counts=dict(sorted(info_types.items())),
            quebec_specific_count=sum(1 for f in items if f.quebec_specific),
            tier=tier,
            risk_score=round(raw, 2),
            score_tier=score_tier,
            compliance_issues=tuple(fired),
        )


def classify(findings: Iterable[Finding], config: EngineConfig) -> Classification:
    """Classify *findings* with the weights and rules of *config*."""
    return Classifier.from_config(config).classify(findings)


# -----------------------------------------------------------------------
# Recommendations
# -----------------------------------------------------------------------

_CATEGORY_ADVICE: dict[str, str] = {
    InfoCategory.QUEBEC_IDENTIFIER.value: (
        "Quebec health or government identifiers found: restrict access and "
        "store only in Quebec-resident systems."
    ),
    InfoCategory.MEDICAL_INFO.value: (
        "Medical codes or record numbers found: limit disclosure to the care team."
    ),
    InfoCategory.CONTACT_INFO.value: (
        "Contact details found: remove them before sharing outside the clinic."
    ),
    InfoCategory.FINANCIAL_INFO.value: (
        "Financial identifiers found: handle under payment-data controls."
    ),
}


def recommendations(classification: Classification, *, deidentified: bool = False) -> list[str]:
    """Human-readable follow-ups for a classification."""
    advice: list[str] = []
    if classification.tier == RiskTier.SAFE:
        return ["No sensitive information detected."]

    if classification.tier.at_least(RiskTier.HIGH_RISK) and not deidentified:
        advice.append(
            "High-risk content: de-identify before storing outside the clinical record."
        )
    if classification.tier == RiskTier.CRITICAL_RISK:
        advice.append(
            "Critical risk: review who can access this content and assess "
            "whether a confidentiality incident must be declared."
        )
    for category in sorted(classification.category_counts):
        if category in _CATEGORY_ADVICE:
            advice.append(_CATEGORY_ADVICE[category])
    if classification.quebec_specific_count and not deidentified:
        advice.append("Verify Law 25 consent before any secondary use of this content.")
    return advice
