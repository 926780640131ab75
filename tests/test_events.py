"""Tests for events, error serialization and logging setup."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from phiguard.classify.models import RiskTier
from phiguard.errors import (
    ConfigurationError,
    KeyManagementError,
    LedgerImmutableError,
    LedgerSequenceError,
    PersistenceError,
    PHIGuardError,
)
from phiguard.events import (
    BREACH_NOTIFICATION_WINDOW,
    BreachNotificationEvent,
    CollectingSink,
    HighRiskDetectedEvent,
    LoggingSink,
)
from phiguard.logging_config import StructuredFormatter, configure_logging

T0 = datetime(2025, 5, 14, 10, 0, tzinfo=timezone.utc)


class TestEvents:
    def test_breach_window_is_72_hours(self) -> None:
        assert BREACH_NOTIFICATION_WINDOW == timedelta(hours=72)

    def test_breach_serialization(self) -> None:
        event = BreachNotificationEvent("inc-1", "Lost laptop", T0, ("scan-1",), 3)
        data = event.to_dict()
        assert data["event_type"] == "breach_notification"
        assert data["notification_deadline"] == (T0 + timedelta(hours=72)).isoformat()
        assert data["affected_patients"] == 3

    def test_overdue_time_remaining_is_negative(self) -> None:
        event = BreachNotificationEvent("inc-1", "Lost laptop", T0)
        assert event.time_remaining(T0 + timedelta(hours=80)) == timedelta(hours=-8)

    def test_collecting_sink_filters(self) -> None:
        sink = CollectingSink()
        high = HighRiskDetectedEvent("scan-1", RiskTier.CRITICAL_RISK, 9.5, (), None, None, T0)
        breach = BreachNotificationEvent("inc-1", "Lost laptop", T0)
        sink.emit(high)
        sink.emit(breach)
        assert sink.of_type("high_risk_detected") == [high]
        assert sink.of_type("breach_notification") == [breach]

    def test_logging_sink(self, caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch) -> None:
        event = HighRiskDetectedEvent("scan-1", RiskTier.HIGH_RISK, 8.0, (), "p-1", None, T0)
        monkeypatch.setattr(logging.getLogger("phiguard"), "propagate", True)
        with caplog.at_level(logging.INFO, logger="phiguard.events"):
            LoggingSink().emit(event)
        assert "high_risk_detected" in caplog.text


class TestErrors:
    def test_to_dict(self) -> None:
        error = ConfigurationError("bad", field="version", details=[{"type": "missing"}])
        assert error.to_dict() == {
            "kind": "configuration",
            "field": "version",
            "message": "bad",
            "details": [{"type": "missing"}],
        }

    def test_key_management_carries_scan_id(self) -> None:
        error = KeyManagementError("no key", scan_id="scan-1")
        assert error.scan_id == "scan-1"
        assert error.field == "reversal_key_id"

    def test_hierarchy(self) -> None:
        assert issubclass(LedgerSequenceError, PersistenceError)
        assert issubclass(LedgerImmutableError, PersistenceError)
        assert issubclass(PersistenceError, PHIGuardError)


class TestLogging:
    def test_structured_formatter(self) -> None:
        record = logging.LogRecord("phiguard.engine", logging.INFO, __file__, 10, "Scan %s done", ("scan-1",), None)
        record.scan_id = "scan-1"
        data = json.loads(StructuredFormatter().format(record))
        assert data["message"] == "Scan scan-1 done"
        assert data["level"] == "INFO"
        assert data["scan_id"] == "scan-1"

    @pytest.mark.parametrize("fmt", ["rich", "json"])
    def test_configure(self, fmt: str) -> None:
        configure_logging("DEBUG", fmt)
        logger = logging.getLogger("phiguard")
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert logger.propagate is False
        configure_logging("WARNING", fmt)
        assert len(logger.handlers) == 1
