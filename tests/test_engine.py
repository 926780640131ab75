"""End-to-end tests for PHIEngine: scan, classify, de-identify and audit."""

from __future__ import annotations

import json
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from phiguard.audit.models import LedgerState
from phiguard.classify.models import RiskTier
from phiguard.comply.report import ReportPeriod, ReportType
from phiguard.config.loader import validate_config
from phiguard.config.schema import EngineConfig
from phiguard.config.settings import Settings
from phiguard.config.versions import ConfigVersionStore
from phiguard.engine import BatchItem, PHIEngine
from phiguard.errors import (
    AuthorizationError,
    ConfigurationError,
    DeidentificationError,
    KeyManagementError,
    ScanTimeoutError,
    ValidationError,
)
from phiguard.events import BREACH_NOTIFICATION_WINDOW, CollectingSink
from phiguard.scan.models import AuditLevel, ContentType, ScanContext, ScanOptions, content_sha256
from phiguard.transform.keys import FernetKeyManager

from tests.conftest import CLINICAL_NOTE, RAMQ_NOTE

T0 = datetime(2025, 5, 14, 10, 0, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _reversible_engine(config: EngineConfig, kms: FernetKeyManager, sink: CollectingSink) -> PHIEngine:
    policy = config.transform.model_copy(update={
        "reversible": True,
        "reversal_key_id": "k1",
        "authorized_roles": ("privacy_officer",),
    })
    reversible = config.model_copy(update={"transform": policy})
    return PHIEngine(
        ConfigVersionStore.with_config(reversible),
        kms=kms,
        events=sink,
        hash_salt="salt",
        rng=random.Random(3),
    )


def _states(engine: PHIEngine, scan_id: str) -> list[str]:
    return [e.state.value for e in engine.ledger.entries(scan_id)]


DEIDENTIFY = ScanOptions(enable_deidentification=True)

# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


class TestScan:
    def test_ramq_note(self, engine: PHIEngine) -> None:
        outcome = engine.scan(RAMQ_NOTE, options=DEIDENTIFY)

        assert outcome.classification.tier == RiskTier.HIGH_RISK
        assert outcome.classification.risk_score == 8.0
        assert outcome.result.compliant is True
        assert outcome.result.compliance_issues == ("quebec_identifier_override",)
        assert outcome.deidentified_text is not None
        assert outcome.deidentified_text.startswith("Patient RAMQ: **** **** **** **, DOB ")
        assert all(f.scan_id == outcome.scan_id for f in outcome.findings)
        assert _states(engine, outcome.scan_id) == ["submitted", "scanned", "transformed", "retained"]

    def test_nothing_raw_is_persisted(self, engine: PHIEngine) -> None:
        outcome = engine.scan(
            RAMQ_NOTE,
            options=ScanOptions(enable_deidentification=True, audit_level=AuditLevel.FORENSIC),
        )
        ledger_text = json.dumps([e.to_dict() for e in engine.ledger.entries()], default=str)
        stored = json.dumps(engine.repository.get_findings(outcome.scan_id))
        for text in (ledger_text, stored):
            assert "ABCD" not in text
            assert "1990-01-01" not in text
        assert content_sha256(RAMQ_NOTE) in ledger_text

    def test_high_risk_without_deidentification(self, engine: PHIEngine) -> None:
        outcome = engine.scan(RAMQ_NOTE)
        assert outcome.result.compliant is False
        assert "high_risk_not_deidentified" in outcome.result.compliance_issues
        assert outcome.deidentified_text is None
        assert _states(engine, outcome.scan_id) == ["submitted", "scanned", "retained"]

    def test_jurisdiction_not_required(self, engine: PHIEngine) -> None:
        outcome = engine.scan(RAMQ_NOTE, options=ScanOptions(jurisdiction_required=False))
        assert outcome.result.compliant is True

    def test_law25_context_flags(self, engine: PHIEngine) -> None:
        context = ScanContext(consent_verified=False, purpose_documented=False, data_residency_confirmed=False)
        outcome = engine.scan("Routine follow-up, no concerns.", context)
        assert outcome.classification.tier == RiskTier.SAFE
        assert outcome.result.compliant is False
        assert set(outcome.result.compliance_issues) == {
            "consent_not_verified",
            "purpose_not_documented",
            "data_residency_unconfirmed",
        }

    def test_clinical_note_is_clean_after_deidentification(self, engine: PHIEngine) -> None:
        outcome = engine.scan(CLINICAL_NOTE, ScanContext(patient_id="p-42"), DEIDENTIFY)
        assert outcome.classification.tier == RiskTier.CRITICAL_RISK
        assert "residual_phi_detected" not in outcome.result.compliance_issues
        assert outcome.result.compliant is True
        assert outcome.record is not None
        assert not outcome.record.warnings

    def test_match_created_by_rewrite_is_deidentified(self, engine: PHIEngine) -> None:
        outcome = engine.scan("Tél: 514-555-0199Patiente: Marie Gagnon", options=DEIDENTIFY)
        assert outcome.deidentified_text == "Tél: [PHONE_NUMBER]Patiente: Jean Tremblay"
        assert "residual_phi_detected" not in outcome.result.compliance_issues
        assert outcome.record is not None
        assert [s.info_type for s in outcome.record.spans] == ["PHONE_NUMBER", "PERSON_NAME"]

    def test_context_tags_read_only(self, engine: PHIEngine) -> None:
        outcome = engine.scan(RAMQ_NOTE, ScanContext(tags={"unit": "psy"}))
        with pytest.raises(TypeError):
            outcome.request.context.tags["unit"] = "er"  # type: ignore[index]
        assert outcome.request.context.tags == {"unit": "psy"}

    def test_repository(self, engine: PHIEngine) -> None:
        outcome = engine.scan(RAMQ_NOTE, options=DEIDENTIFY)
        assert engine.repository.get_result(outcome.scan_id) == outcome.result
        assert engine.repository.get_request(outcome.scan_id) == outcome.request
        record, text = engine.repository.get_deidentification(outcome.scan_id)  # type: ignore[misc]
        assert text == outcome.deidentified_text
        assert record == outcome.record

    def test_retention_follows_tier(self, engine: PHIEngine) -> None:
        safe = engine.scan("Routine follow-up, no concerns.")
        risky = engine.scan(RAMQ_NOTE)
        assert engine.ledger.head(safe.scan_id).retention_period_days == 365  # type: ignore[union-attr]
        assert engine.ledger.head(risky.scan_id).retention_period_days == 2557  # type: ignore[union-attr]

    def test_high_risk_event(self, engine: PHIEngine, sink: CollectingSink) -> None:
        outcome = engine.scan(RAMQ_NOTE, ScanContext(patient_id="p-1", content_type=ContentType.MEDICAL_NOTE))
        engine.scan("Routine follow-up, no concerns.")
        events = sink.of_type("high_risk_detected")
        assert len(events) == 1
        assert events[0].scan_id == outcome.scan_id  # type: ignore[union-attr]
        assert events[0].patient_id == "p-1"  # type: ignore[union-attr]
        assert "ABCD" not in json.dumps(events[0].to_dict())


# ---------------------------------------------------------------------------
# Rejections and failures
# ---------------------------------------------------------------------------


class TestRejections:
    @pytest.mark.parametrize("content", ["", "   \n\t"])
    def test_empty_content(self, engine: PHIEngine, content: str) -> None:
        with pytest.raises(ValidationError, match="empty"):
            engine.scan(content)
        assert len(engine.ledger) == 0

    def test_oversized_content(self, config: EngineConfig) -> None:
        small = config.model_copy(update={"limits": config.limits.model_copy(update={"max_content_length": 10})})
        engine = PHIEngine(ConfigVersionStore.with_config(small), hash_salt="s")
        with pytest.raises(ValidationError, match="exceeds"):
            engine.scan(RAMQ_NOTE)
        assert len(engine.ledger) == 0

    def test_no_approved_configuration(self) -> None:
        draft = validate_config({
            "version": "draft-1",
            "info_types": [{"id": "DIGITS", "category": "other", "patterns": ["\\d{4}"]}],
        })
        engine = PHIEngine(ConfigVersionStore.with_config(draft), hash_salt="s")
        with pytest.raises(ConfigurationError, match="No active"):
            engine.scan(RAMQ_NOTE)
        assert len(engine.ledger) == 0
        assert engine.health()["status"] == "degraded"

    def test_timeout_records_failure(self, engine: PHIEngine, monkeypatch: pytest.MonkeyPatch) -> None:
        def too_slow(*args: object, **kwargs: object) -> list:
            raise ScanTimeoutError("Scan exceeded 30s", field="content")

        monkeypatch.setattr("phiguard.engine.scan_text", too_slow)
        with pytest.raises(ScanTimeoutError):
            engine.scan(RAMQ_NOTE)

        (scan_id,) = engine.ledger.scan_ids()
        assert _states(engine, scan_id) == ["submitted", "failed"]
        failed = engine.ledger.head(scan_id)
        assert failed is not None and failed.payload["error"]["kind"] == "timeout"
        assert len(engine.repository) == 0

    def test_hash_policy_requires_salt(self, config: EngineConfig) -> None:
        engine = PHIEngine(ConfigVersionStore.with_config(config))
        with pytest.raises(ConfigurationError) as exc_info:
            engine.scan(RAMQ_NOTE, options=DEIDENTIFY)
        assert exc_info.value.field == "hash_salt"
        assert len(engine.ledger) == 0

    def test_scan_only_needs_no_salt(self, config: EngineConfig) -> None:
        engine = PHIEngine(ConfigVersionStore.with_config(config))
        outcome = engine.scan(RAMQ_NOTE)
        assert outcome.deidentified_text is None

    def test_residual_phi_fails_closed(self, engine: PHIEngine, monkeypatch: pytest.MonkeyPatch) -> None:
        def leaky(*args: object, **kwargs: object) -> tuple:
            raise DeidentificationError(
                "Covered PHI remains", details=[{"info_type": "DATE", "start": 0, "end": 10}]
            )

        monkeypatch.setattr("phiguard.engine.transform", leaky)
        with pytest.raises(DeidentificationError) as exc_info:
            engine.scan(RAMQ_NOTE, options=DEIDENTIFY)

        scan_id = exc_info.value.scan_id
        assert scan_id is not None
        assert exc_info.value.details == [{"info_type": "DATE", "start": 0, "end": 10}]
        assert _states(engine, scan_id) == ["submitted", "scanned", "retained"]
        scanned = engine.ledger.entries(scan_id)[1].payload
        assert scanned["deidentification_failed"] is True
        assert "residual_phi_detected" in scanned["compliance_issues"]
        assert engine.repository.get_deidentification(scan_id) is None


# ---------------------------------------------------------------------------
# Reversible de-identification and retries
# ---------------------------------------------------------------------------


class TestReversible:
    def test_reverse(self, config: EngineConfig, kms: FernetKeyManager, sink: CollectingSink) -> None:
        kms.create_key("k1")
        engine = _reversible_engine(config, kms, sink)
        outcome = engine.scan(RAMQ_NOTE, options=DEIDENTIFY)
        assert outcome.record is not None and outcome.record.reversible
        assert engine.reverse(outcome.scan_id, role="privacy_officer") == RAMQ_NOTE
        with pytest.raises(AuthorizationError):
            engine.reverse(outcome.scan_id, role="receptionist")

    def test_ledger_holds_no_ciphertext(self, config: EngineConfig, kms: FernetKeyManager, sink: CollectingSink) -> None:
        kms.create_key("k1")
        engine = _reversible_engine(config, kms, sink)
        outcome = engine.scan(RAMQ_NOTE, options=DEIDENTIFY)
        transformed = next(e for e in engine.ledger.entries(outcome.scan_id) if e.state == LedgerState.TRANSFORMED)
        assert "encrypted_originals" not in transformed.payload
        assert "spans" not in transformed.payload

    def test_key_failure_then_retry(self, config: EngineConfig, kms: FernetKeyManager, sink: CollectingSink) -> None:
        engine = _reversible_engine(config, kms, sink)
        with pytest.raises(KeyManagementError) as exc_info:
            engine.scan(RAMQ_NOTE, options=DEIDENTIFY, now=T0)
        scan_id = exc_info.value.scan_id
        assert scan_id is not None

        # Scan and classification survive; the scan waits in `scanned`.
        assert _states(engine, scan_id) == ["submitted", "scanned"]
        assert engine.repository.get_result(scan_id).tier == RiskTier.HIGH_RISK
        scanned = engine.ledger.entries(scan_id)[1]
        assert scanned.payload["deidentification_failed"] is True

        kms.create_key("k1")
        output, record = engine.transform(scan_id, RAMQ_NOTE, now=T0 + timedelta(minutes=5))
        assert record.reversible
        assert engine.ledger.state(scan_id) == LedgerState.RETAINED

        entries = engine.ledger.entries(scan_id)
        assert [e.state.value for e in entries[:4]] == ["submitted", "scanned", "transformed", "retained"]
        compensation = entries[-1]
        assert compensation.compensates == scanned.entry_id
        assert compensation.payload["corrections"]["deidentified"] is True

        # Idempotent: the stored output comes back unchanged.
        again, _ = engine.transform(scan_id, RAMQ_NOTE)
        assert again == output
        assert len(engine.ledger.entries(scan_id)) == len(entries)

        assert engine.reverse(scan_id, role="privacy_officer") == RAMQ_NOTE

    def test_key_still_missing_on_retry(self, config: EngineConfig, kms: FernetKeyManager, sink: CollectingSink) -> None:
        engine = _reversible_engine(config, kms, sink)
        with pytest.raises(KeyManagementError) as exc_info:
            engine.scan(RAMQ_NOTE, options=DEIDENTIFY)
        scan_id = exc_info.value.scan_id
        with pytest.raises(KeyManagementError):
            engine.transform(scan_id, RAMQ_NOTE)  # type: ignore[arg-type]
        assert engine.ledger.state(scan_id) == LedgerState.SCANNED  # type: ignore[arg-type]

    def test_retry_with_wrong_content(self, config: EngineConfig, kms: FernetKeyManager, sink: CollectingSink) -> None:
        engine = _reversible_engine(config, kms, sink)
        with pytest.raises(KeyManagementError) as exc_info:
            engine.scan(RAMQ_NOTE, options=DEIDENTIFY)
        with pytest.raises(ValidationError, match="content hash"):
            engine.transform(exc_info.value.scan_id, "something else")  # type: ignore[arg-type]

    def test_finalize_without_deidentifying(self, config: EngineConfig, kms: FernetKeyManager, sink: CollectingSink) -> None:
        engine = _reversible_engine(config, kms, sink)
        with pytest.raises(KeyManagementError) as exc_info:
            engine.scan(RAMQ_NOTE, options=DEIDENTIFY)
        scan_id = exc_info.value.scan_id
        entry = engine.finalize(scan_id)  # type: ignore[arg-type]
        assert entry.state == LedgerState.RETAINED
        with pytest.raises(ValidationError, match="not awaiting"):
            engine.transform(scan_id, RAMQ_NOTE)  # type: ignore[arg-type]

    def test_fallback_to_irreversible(self, config: EngineConfig, kms: FernetKeyManager, sink: CollectingSink) -> None:
        policy = config.transform.model_copy(update={
            "reversible": True,
            "reversal_key_id": "k1",
            "allow_irreversible_fallback": True,
        })
        engine = PHIEngine(
            ConfigVersionStore.with_config(config.model_copy(update={"transform": policy})),
            kms=kms, events=sink, hash_salt="s",
        )
        outcome = engine.scan(RAMQ_NOTE, options=DEIDENTIFY)
        assert outcome.record is not None
        assert outcome.record.reversible is False
        assert outcome.record.warnings


# ---------------------------------------------------------------------------
# Batch, retention, events and health
# ---------------------------------------------------------------------------


class TestOperations:
    def test_batch_isolates_failures(self, engine: PHIEngine) -> None:
        results = engine.scan_batch([
            BatchItem(RAMQ_NOTE),
            BatchItem(""),
            BatchItem("Routine follow-up, no concerns."),
        ])
        assert [r.index for r in results] == [0, 1, 2]
        assert [r.ok for r in results] == [True, False, True]
        assert isinstance(results[1].error, ValidationError)
        assert results[0].outcome.classification.tier == RiskTier.HIGH_RISK  # type: ignore[union-attr]
        assert len(engine.repository) == 2

    def test_sweep_and_dispose(self, engine: PHIEngine) -> None:
        outcome = engine.scan("Routine follow-up, no concerns.", now=T0)
        assert engine.sweep(now=T0 + timedelta(days=300)) == []
        marked = engine.sweep(now=T0 + timedelta(days=366))
        assert [e.scan_id for e in marked] == [outcome.scan_id]

        tombstone = engine.dispose(
            outcome.scan_id, approved_by="privacy-officer", now=T0 + timedelta(days=800)
        )
        assert tombstone.state == LedgerState.DISPOSED
        assert engine.ledger.entries(outcome.scan_id) == [tombstone]

    def test_breach_deadline(self, engine: PHIEngine, sink: CollectingSink) -> None:
        outcome = engine.scan(RAMQ_NOTE, ScanContext(patient_id="p-9"))
        event = engine.report_breach("Misdirected fax", [outcome.scan_id], detected_at=T0)
        assert event.notification_deadline == T0 + BREACH_NOTIFICATION_WINDOW
        assert event.affected_patients == 1
        assert not event.is_overdue(T0 + timedelta(hours=71))
        assert event.is_overdue(T0 + timedelta(hours=73))
        assert event.time_remaining(T0 + timedelta(hours=70)) == timedelta(hours=2)
        assert sink.of_type("breach_notification") == [event]

    def test_report_event(self, engine: PHIEngine, sink: CollectingSink) -> None:
        engine.scan(RAMQ_NOTE, now=T0)
        report = engine.report(ReportPeriod.for_type(ReportType.DAILY, T0), notify=True)
        (event,) = sink.of_type("compliance_report")
        assert event.report == report  # type: ignore[union-attr]

    def test_health(self, engine: PHIEngine, config: EngineConfig) -> None:
        engine.scan(RAMQ_NOTE)
        health = engine.health()
        assert health["status"] == "ok"
        assert health["config_version"] == config.version
        assert health["info_types"] == len(config.info_types)
        assert health["scans"] == 1
        assert health["ledger_entries"] == 3

    def test_from_settings_with_ledger_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PHIGUARD_HASH_SALT", "pepper")
        path = tmp_path / "ledger.jsonl"
        engine = PHIEngine.from_settings(Settings(ledger_path=path))
        engine.scan(RAMQ_NOTE)
        assert len(path.read_text(encoding="utf-8").splitlines()) == 3
