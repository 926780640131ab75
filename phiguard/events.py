"""Structured events for the notification collaborator.

The engine only emits events; delivering them (email, SMS, webhooks) is
someone else's job.  Anything with an ``emit(event)`` method can receive
them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, Union

from phiguard.classify.models import RiskTier
from phiguard.comply.report import ComplianceReport

logger = logging.getLogger(__name__)

# Quebec Law 25 / HIPAA-style confidentiality incident window.
BREACH_NOTIFICATION_WINDOW = timedelta(hours=72)


@dataclass(frozen=True)
class HighRiskDetectedEvent:
    """A scan was classified ``high_risk`` or above."""

    scan_id: str
    tier: RiskTier
    risk_score: float
    compliance_issues: tuple[str, ...]
    patient_id: str | None
    professional_id: str | None
    detected_at: datetime

    event_type = "high_risk_detected"

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "scan_id": self.scan_id,
            "tier": self.tier.value,
            "risk_score": self.risk_score,
            "compliance_issues": list(self.compliance_issues),
            "patient_id": self.patient_id,
            "professional_id": self.professional_id,
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass(frozen=True)
class BreachNotificationEvent:
    """A confidentiality incident that must be notified within 72 hours."""

    incident_id: str
    description: str
    detected_at: datetime
    scan_ids: tuple[str, ...] = ()
    affected_patients: int = 0

    event_type = "breach_notification"

    @property
    def notification_deadline(self) -> datetime:
        return self.detected_at + BREACH_NOTIFICATION_WINDOW

    def is_overdue(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) > self.notification_deadline

    def time_remaining(self, now: datetime | None = None) -> timedelta:
        """Time left before the deadline; negative once overdue."""
        return self.notification_deadline - (now or datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "incident_id": self.incident_id,
            "description": self.description,
            "detected_at": self.detected_at.isoformat(),
            "notification_deadline": self.notification_deadline.isoformat(),
            "scan_ids": list(self.scan_ids),
            "affected_patients": self.affected_patients,
        }


@dataclass(frozen=True)
class ComplianceReportEvent:
    """A compliance report is ready for distribution."""

    report: ComplianceReport

    event_type = "compliance_report"

    def to_dict(self) -> dict[str, Any]:
        return {"event_type": self.event_type, "report": self.report.to_dict()}


Event = Union[HighRiskDetectedEvent, BreachNotificationEvent, ComplianceReportEvent]


class EventSink(Protocol):
    def emit(self, event: Event) -> None: ...


class LoggingSink:
    """Writes every event to the log; the default when no sink is given."""

    def emit(self, event: Event) -> None:
        logger.info("Event %s: %s", event.event_type, event.to_dict())


@dataclass
class CollectingSink:
    """Keeps events in memory, for tests and batch jobs."""

    events: list[Event] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def emit(self, event: Event) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> list[Event]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]
