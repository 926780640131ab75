"""Retention period and disposal date rules."""

from __future__ import annotations

from datetime import datetime, timedelta

from phiguard.classify.models import RiskTier
from phiguard.config.schema import RetentionPolicy
from phiguard.scan.models import ContentType


def retention_days(policy: RetentionPolicy, content_type: ContentType, tier: RiskTier) -> int:
    """Days a scan's ledger entries must be kept.

    A per-content-type override wins.  Otherwise content with no findings
    (``safe``) is kept for ``non_phi_days`` and everything else for
    ``clinical_days``.
    """
    if content_type in policy.content_type_days:
        return policy.content_type_days[content_type]
    if tier == RiskTier.SAFE:
        return policy.non_phi_days
    return policy.clinical_days


def disposal_date(timestamp: datetime, days: int) -> datetime:
    return timestamp + timedelta(days=days)
