"""PHI engine — ties scanning, classification, de-identification and audit together.

A scan runs against the active, approved configuration version.  The
Scanner locates findings, the Classifier derives the risk verdict, the
Transformer optionally de-identifies the content, and the ledger records
the whole operation in one atomic batch: if the ledger append fails, the
scan did not happen.

Raw content and raw quotes never leave this module except in the
returned ScanOutcome; the ledger and repository receive hashes, counts
and masked quotes only.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Sequence

from phiguard.audit.ledger import AuditLedger, Transition
from phiguard.audit.models import AuditLedgerEntry, LedgerState
from phiguard.audit.retention import retention_days
from phiguard.audit.store import JsonlLedgerStore, MemoryLedgerStore
from phiguard.classify.classifier import Classifier, recommendations
from phiguard.classify.models import Classification, RiskTier, ScanResult
from phiguard.comply.report import ComplianceReport, ReportPeriod, build_report
from phiguard.config.loader import load_config, load_default_config
from phiguard.config.schema import EngineConfig
from phiguard.config.settings import Settings
from phiguard.config.versions import ConfigVersionStore
from phiguard.errors import (
    ConfigurationError,
    DeidentificationError,
    KeyManagementError,
    PHIGuardError,
    ScanTimeoutError,
    ValidationError,
)
from phiguard.events import (
    BreachNotificationEvent,
    ComplianceReportEvent,
    EventSink,
    HighRiskDetectedEvent,
    LoggingSink,
)
from phiguard.repository import InMemoryRepository
from phiguard.scan.models import (
    AuditLevel,
    Finding,
    ScanContext,
    ScanOptions,
    ScanRequest,
    content_sha256,
)
from phiguard.scan.registry import InfoTypeRegistry
from phiguard.scan.scanner import scan as scan_text
from phiguard.transform.keys import KeyManagementService
from phiguard.transform.models import DeidentificationRecord, TransformOperation
from phiguard.transform.transformer import reverse, transform

logger = logging.getLogger(__name__)

# Compliance issues that make a scan non-compliant.  Override rule codes
# are reported too but only flag the content, not its handling.
LAW25_VIOLATIONS = frozenset({
    "consent_not_verified",
    "purpose_not_documented",
    "data_residency_unconfirmed",
    "high_risk_not_deidentified",
    "residual_phi_detected",
})


@dataclass(frozen=True)
class ScanOutcome:
    """Everything a scan produced.

    Attributes:
        request: The ScanRequest.
        findings: Findings with raw quotes (in memory only).
        result: The persisted ScanResult.
        deidentified_text: De-identified content, if requested.
        record: De-identification record, if requested.
        ledger_entries: Entries appended for this scan.
    """

    request: ScanRequest
    findings: tuple[Finding, ...]
    result: ScanResult
    deidentified_text: str | None = None
    record: DeidentificationRecord | None = None
    ledger_entries: tuple[AuditLedgerEntry, ...] = ()

    @property
    def scan_id(self) -> str:
        return self.request.scan_id

    @property
    def classification(self) -> Classification:
        return self.result.classification

    def to_dict(self) -> dict[str, Any]:
        """Serialize without raw quotes."""
        return {
            "request": self.request.to_dict(),
            "findings": [f.to_dict() for f in self.findings],
            "result": self.result.to_dict(),
            "deidentified_text": self.deidentified_text,
            "deidentification": self.record.to_dict() if self.record else None,
        }


@dataclass(frozen=True)
class BatchItem:
    content: str
    context: ScanContext | None = None
    options: ScanOptions | None = None


@dataclass(frozen=True)
class BatchResult:
    """Outcome or error for one item of a batch, in submission order."""

    index: int
    outcome: ScanOutcome | None = None
    error: PHIGuardError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class _Components:
    registry: InfoTypeRegistry
    classifier: Classifier
    surrogates: dict[str, str]


class PHIEngine:
    """Orchestrates one deployment's scans.

    Args:
        versions: Configuration versions; scans use the active one.
        ledger: Audit ledger; in-memory when omitted.
        repository: Keyed lookup store; in-memory when omitted.
        kms: Key management service for reversible transforms.
        events: Receiver of high-risk, breach and report events.
        hash_salt: Per-deployment salt for HASH.
        principal: Default acting principal.
        rng: Random source for DATE_SHIFT offsets.
    """

    def __init__(
        self,
        versions: ConfigVersionStore,
        *,
        ledger: AuditLedger | None = None,
        repository: InMemoryRepository | None = None,
        kms: KeyManagementService | None = None,
        events: EventSink | None = None,
        hash_salt: bytes | str = b"",
        principal: str = "phiguard",
        rng: random.Random | None = None,
    ) -> None:
        self._versions = versions
        self._ledger = ledger or AuditLedger(MemoryLedgerStore())
        self._repository = repository or InMemoryRepository()
        self._kms = kms
        self._events = events or LoggingSink()
        self._salt = hash_salt.encode("utf-8") if isinstance(hash_salt, str) else hash_salt
        self._principal = principal
        self._rng = rng
        self._components_cache: dict[str, _Components] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        kms: KeyManagementService | None = None,
        events: EventSink | None = None,
    ) -> PHIEngine:
        """Build an engine from deployment settings."""
        if settings.config_path is not None:
            config = load_config(settings.config_path)
        else:
            config = load_default_config()
        store = JsonlLedgerStore(settings.ledger_path) if settings.ledger_path else MemoryLedgerStore()
        return cls(
            ConfigVersionStore.with_config(config),
            ledger=AuditLedger(store),
            kms=kms,
            events=events,
            hash_salt=settings.hash_salt.get_secret_value(),
        )

    @property
    def ledger(self) -> AuditLedger:
        return self._ledger

    @property
    def repository(self) -> InMemoryRepository:
        return self._repository

    # -----------------------------------------------------------------
    # Scanning
    # -----------------------------------------------------------------

    def scan(
        self,
        content: str,
        context: ScanContext | None = None,
        options: ScanOptions | None = None,
        *,
        principal: str | None = None,
        now: datetime | None = None,
    ) -> ScanOutcome:
        """Scan, classify and optionally de-identify *content*.

        Args:
            content: The clinical text.
            context: Who and what the content is about.
            options: Processing options.
            principal: Acting principal for the ledger.
            now: Submission time.

        Returns:
            The ScanOutcome.

        Raises:
            ConfigurationError: No active configuration, or a broken InfoType.
                Nothing is persisted.
            ValidationError: Empty or oversized content.  Nothing is persisted.
            ConfigurationError: De-identification was requested with a policy
                that hashes but the engine has no hash salt.  Nothing is
                persisted.
            ScanTimeoutError: The scan timed out.  A ``failed`` transition is
                recorded, without findings.
            KeyManagementError: The reversal key was unavailable.  The scan
                and classification are persisted in state ``scanned``; retry
                with ``transform(exc.scan_id, content)``.
            DeidentificationError: Covered PHI survived every rewrite pass.
                The scan is retained with ``residual_phi_detected`` and no
                de-identified output is returned.
            PersistenceError: The ledger append failed; nothing happened.
        """
        config = self._versions.active()
        context = context or ScanContext()
        options = options or ScanOptions()
        principal = principal or self._principal
        self._validate_content(content, config)
        if options.enable_deidentification:
            self._require_salt(config)

        request = ScanRequest.create(content, context, options, config.version, now=now)
        parts = self._components(config)
        started = time.monotonic()
        try:
            raw = scan_text(
                content,
                parts.registry,
                min_likelihood=config.min_likelihood,
                workers=config.limits.scan_workers,
                timeout=config.limits.timeout_seconds,
            )
        except ScanTimeoutError as e:
            self._record_failure(request, e, started, config, principal, now)
            raise

        findings = [replace(f, scan_id=request.scan_id) for f in raw]
        classification = parts.classifier.classify(findings)
        processing_ms = round((time.monotonic() - started) * 1000, 3)

        extra_issues: list[str] = []
        limit = config.limits.max_findings_per_request
        if len(findings) > limit:
            logger.warning("Scan %s produced %d findings (limit %d)", request.scan_id, len(findings), limit)
            extra_issues.append("max_findings_exceeded")

        output: str | None = None
        record: DeidentificationRecord | None = None
        kms_error: KeyManagementError | None = None
        residual_error: DeidentificationError | None = None
        if options.enable_deidentification:
            try:
                output, record = self._deidentify(
                    content, findings, config, parts, request, options.reversible
                )
            except KeyManagementError as e:
                kms_error = e
            except DeidentificationError as e:
                logger.warning("Scan %s: %s", request.scan_id, e)
                residual_error = e
                extra_issues.append("residual_phi_detected")

        result = self._build_result(
            request, classification, extra_issues, processing_ms, deidentified=record is not None
        )
        days = retention_days(config.retention, context.content_type, classification.tier)

        scanned = result.to_dict()
        scanned["deidentification_requested"] = options.enable_deidentification
        scanned["deidentification_failed"] = kms_error is not None or residual_error is not None
        if options.audit_level in (AuditLevel.COMPREHENSIVE, AuditLevel.FORENSIC):
            scanned["findings"] = [f.to_dict() for f in findings]

        transitions = [
            Transition(LedgerState.SUBMITTED, request.to_dict()),
            Transition(LedgerState.SCANNED, scanned),
        ]
        if record is not None:
            transitions.append(Transition(LedgerState.TRANSFORMED, self._record_payload(record, options)))
        if kms_error is None:
            transitions.append(Transition(LedgerState.RETAINED, {"retention_period_days": days}))

        entries = self._ledger.append_batch(
            request.scan_id,
            transitions,
            previous_entry_id=None,
            principal=principal,
            retention_period_days=days,
            now=now,
        )
        self._repository.save_scan(request, findings, result)
        if record is not None and output is not None:
            self._repository.save_deidentification(record, output)

        logger.info(
            "Scan %s: %d findings, %s (score %.2f) in %.1f ms",
            request.scan_id, len(findings), classification.tier.value,
            classification.risk_score, processing_ms,
        )
        if classification.is_high_risk:
            self._events.emit(HighRiskDetectedEvent(
                scan_id=request.scan_id,
                tier=classification.tier,
                risk_score=classification.risk_score,
                compliance_issues=result.compliance_issues,
                patient_id=context.patient_id,
                professional_id=context.professional_id,
                detected_at=now or datetime.now(timezone.utc),
            ))

        if kms_error is not None:
            raise KeyManagementError(
                f"Scan {request.scan_id} was recorded but reversible de-identification "
                f"failed: {kms_error}. Retry with transform().",
                scan_id=request.scan_id,
            ) from kms_error
        if residual_error is not None:
            raise DeidentificationError(
                f"Scan {request.scan_id} was recorded but its output still carries covered PHI",
                scan_id=request.scan_id,
                details=residual_error.details,
            ) from residual_error

        return ScanOutcome(
            request=request,
            findings=tuple(findings),
            result=result,
            deidentified_text=output,
            record=record,
            ledger_entries=tuple(entries),
        )

    def scan_batch(self, items: Sequence[BatchItem], *, max_workers: int = 4) -> list[BatchResult]:
        """Scan independent items concurrently.

        One item failing does not affect the others; its error is returned
        in its BatchResult.
        """
        def run(index: int, item: BatchItem) -> BatchResult:
            try:
                return BatchResult(index, outcome=self.scan(item.content, item.context, item.options))
            except PHIGuardError as e:
                logger.warning("Batch item %d failed: %s", index, e.kind)
                return BatchResult(index, error=e)

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="phiguard-batch") as pool:
            futures = [pool.submit(run, i, item) for i, item in enumerate(items)]
            return [f.result() for f in futures]

    # -----------------------------------------------------------------
    # De-identification follow-ups
    # -----------------------------------------------------------------

    def transform(
        self,
        scan_id: str,
        content: str,
        *,
        principal: str | None = None,
        now: datetime | None = None,
    ) -> tuple[str, DeidentificationRecord]:
        """De-identify a scanned request, e.g. after a KeyManagementError.

        Idempotent: once a scan has been de-identified, the stored output
        and record are returned unchanged.

        Raises:
            ValidationError: Unknown scan, content that does not match the
                request's hash, or a scan not awaiting transformation.
            KeyManagementError: The reversal key is still unavailable.
            DeidentificationError: Covered PHI survived every rewrite pass;
                the scan stays in ``scanned``.
        """
        principal = principal or self._principal
        stored = self._repository.get_scan(scan_id)
        if content_sha256(content) != stored.request.content_hash:
            raise ValidationError(
                f"Content does not match the content hash of scan {scan_id}", field="content"
            )
        existing = self._repository.get_deidentification(scan_id)
        if existing is not None:
            record, output = existing
            return output, record

        state = self._ledger.state(scan_id)
        if state != LedgerState.SCANNED:
            raise ValidationError(
                f"Scan {scan_id} is '{state.value if state else 'unknown'}', not awaiting transformation",
                field="state",
            )

        request = stored.request
        config = self._versions.get(request.config_version)
        self._require_salt(config)
        parts = self._components(config)
        findings = [
            replace(f, scan_id=scan_id)
            for f in scan_text(
                content,
                parts.registry,
                min_likelihood=config.min_likelihood,
                workers=config.limits.scan_workers,
                timeout=config.limits.timeout_seconds,
            )
        ]
        try:
            output, record = self._deidentify(
                content, findings, config, parts, request, request.options.reversible
            )
        except KeyManagementError as e:
            raise KeyManagementError(str(e), scan_id=scan_id) from e
        except DeidentificationError as e:
            raise DeidentificationError(str(e), scan_id=scan_id, details=e.details) from e

        head = self._ledger.head(scan_id)
        if head is None:
            raise ValidationError(f"Scan {scan_id} has no ledger entries", field="scan_id")
        entries = self._ledger.append_batch(
            scan_id,
            [
                Transition(LedgerState.TRANSFORMED, self._record_payload(record, request.options)),
                Transition(LedgerState.RETAINED, {"retention_period_days": head.retention_period_days}),
            ],
            previous_entry_id=head.entry_id,
            principal=principal,
            retention_period_days=head.retention_period_days,
            now=now,
        )

        corrected = self._build_result(
            request,
            stored.result.classification,
            [],
            stored.result.processing_ms,
            deidentified=True,
        )
        scanned_entry = next(e for e in self._ledger.entries(scan_id) if e.state == LedgerState.SCANNED)
        self._ledger.compensate(
            scanned_entry.entry_id,
            previous_entry_id=entries[-1].entry_id,
            principal=principal,
            reason="de-identified on retry",
            corrections={
                "compliant": corrected.compliant,
                "compliance_issues": list(corrected.compliance_issues),
                "deidentified": True,
                "deidentification_failed": False,
            },
            now=now,
        )
        self._repository.save_deidentification(record, output)
        logger.info("Scan %s de-identified on retry", scan_id)
        return output, record

    def finalize(self, scan_id: str, *, principal: str | None = None, now: datetime | None = None) -> AuditLedgerEntry:
        """Retain a scan left in ``scanned`` without de-identifying it."""
        head = self._ledger.head(scan_id)
        if head is None:
            raise ValidationError(f"Unknown scan '{scan_id}'", field="scan_id")
        return self._ledger.append(
            scan_id,
            LedgerState.RETAINED,
            previous_entry_id=head.entry_id,
            principal=principal or self._principal,
            retention_period_days=head.retention_period_days,
            payload={"retention_period_days": head.retention_period_days, "deidentified": False},
            now=now,
        )

    def reverse(self, scan_id: str, *, role: str) -> str:
        """Restore a scan's original content for an authorized role.

        Raises:
            ValidationError: The scan was not de-identified reversibly.
            AuthorizationError: *role* may not reverse this scan.
            KeyManagementError: The key store failed.
        """
        existing = self._repository.get_deidentification(scan_id)
        if existing is None:
            raise ValidationError(f"Scan {scan_id} has no de-identification record", field="scan_id")
        if self._kms is None:
            raise KeyManagementError("No key management service configured", scan_id=scan_id)
        record, output = existing
        return reverse(output, record, self._kms, role=role)

    # -----------------------------------------------------------------
    # Retention, reporting, events
    # -----------------------------------------------------------------

    def sweep(self, *, now: datetime | None = None, principal: str | None = None) -> list[AuditLedgerEntry]:
        return self._ledger.sweep(now or datetime.now(timezone.utc), principal=principal or self._principal)

    def dispose(
        self,
        scan_id: str,
        *,
        approved_by: str,
        principal: str | None = None,
        now: datetime | None = None,
    ) -> AuditLedgerEntry:
        """Explicitly dispose of an eligible scan's ledger entries."""
        head = self._ledger.head(scan_id)
        if head is None:
            raise ValidationError(f"Unknown scan '{scan_id}'", field="scan_id")
        config = self._versions.active()
        return self._ledger.dispose(
            scan_id,
            previous_entry_id=head.entry_id,
            principal=principal or self._principal,
            approved_by=approved_by,
            disposal_record_days=config.retention.disposal_record_days,
            now=now,
        )

    def report(self, period: ReportPeriod, *, notify: bool = False) -> ComplianceReport:
        """Build a compliance report; optionally emit it as an event."""
        report = build_report(self._ledger.entries(), period)
        if notify:
            self._events.emit(ComplianceReportEvent(report))
        return report

    def report_breach(
        self,
        description: str,
        scan_ids: Sequence[str],
        *,
        detected_at: datetime | None = None,
    ) -> BreachNotificationEvent:
        """Emit a confidentiality incident with its 72-hour deadline."""
        patients = set()
        for scan_id in scan_ids:
            patient_id = self._repository.get_request(scan_id).context.patient_id
            if patient_id:
                patients.add(patient_id)
        event = BreachNotificationEvent(
            incident_id=f"inc-{uuid.uuid4().hex}",
            description=description,
            detected_at=detected_at or datetime.now(timezone.utc),
            scan_ids=tuple(scan_ids),
            affected_patients=len(patients),
        )
        logger.warning(
            "Confidentiality incident %s: notify by %s",
            event.incident_id, event.notification_deadline.isoformat(),
        )
        self._events.emit(event)
        return event

    def health(self) -> dict[str, Any]:
        try:
            config = self._versions.active()
        except PHIGuardError as e:
            return {"status": "degraded", "reason": str(e), "ledger_entries": len(self._ledger)}
        return {
            "status": "ok",
            "config_version": config.version,
            "info_types": len(config.info_types),
            "ledger_entries": len(self._ledger),
            "scans": len(self._repository),
        }

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _components(self, config: EngineConfig) -> _Components:
        parts = self._components_cache.get(config.version)
        if parts is None:
            registry = InfoTypeRegistry.from_config(config)
            registry.validate()
            parts = _Components(
                registry=registry,
                classifier=Classifier.from_config(config),
                surrogates={t.id: t.surrogate for t in config.info_types if t.surrogate},
            )
            self._components_cache[config.version] = parts
        return parts

    @staticmethod
    def _validate_content(content: str, config: EngineConfig) -> None:
        if not isinstance(content, str):
            raise ValidationError(
                f"Content must be text, got {type(content).__name__}", field="content"
            )
        if not content.strip():
            raise ValidationError("Content is empty", field="content")
        limit = config.limits.max_content_length
        if len(content) > limit:
            raise ValidationError(
                f"Content length {len(content)} exceeds the limit of {limit}", field="content"
            )

    def _deidentify(
        self,
        content: str,
        findings: list[Finding],
        config: EngineConfig,
        parts: _Components,
        request: ScanRequest,
        reversible: bool,
    ) -> tuple[str, DeidentificationRecord]:
        return transform(
            content,
            findings,
            config.transform,
            scan_id=request.scan_id,
            subject_id=request.context.patient_id,
            hash_salt=self._salt,
            surrogates=parts.surrogates,
            reversible=True if reversible else None,
            kms=self._kms,
            rng=self._rng,
            info_types=parts.registry,
            min_likelihood=config.min_likelihood,
        )

    def _require_salt(self, config: EngineConfig) -> None:
        if config.transform.uses(TransformOperation.HASH) and not self._salt:
            raise ConfigurationError(
                f"Configuration {config.version} hashes values but no hash salt is configured",
                field="hash_salt",
            )

    def _build_result(
        self,
        request: ScanRequest,
        classification: Classification,
        extra_issues: list[str],
        processing_ms: float,
        *,
        deidentified: bool,
    ) -> ScanResult:
        context, options = request.context, request.options
        issues = list(classification.compliance_issues)
        if not context.consent_verified:
            issues.append("consent_not_verified")
        if not context.purpose_documented:
            issues.append("purpose_not_documented")
        if not context.data_residency_confirmed:
            issues.append("data_residency_unconfirmed")
        if (
            options.jurisdiction_required
            and classification.tier.at_least(RiskTier.HIGH_RISK)
            and not deidentified
        ):
            issues.append("high_risk_not_deidentified")
        issues.extend(extra_issues)

        return ScanResult(
            scan_id=request.scan_id,
            classification=classification,
            compliant=not LAW25_VIOLATIONS.intersection(issues),
            compliance_issues=tuple(issues),
            recommendations=tuple(recommendations(classification, deidentified=deidentified)),
            processing_ms=processing_ms,
            deidentified=deidentified,
            config_version=request.config_version,
        )

    @staticmethod
    def _record_payload(record: DeidentificationRecord, options: ScanOptions) -> dict[str, Any]:
        payload = record.to_dict()
        payload.pop("encrypted_originals", None)
        if options.audit_level != AuditLevel.FORENSIC:
            payload.pop("spans", None)
        return payload

    def _record_failure(
        self,
        request: ScanRequest,
        error: PHIGuardError,
        started: float,
        config: EngineConfig,
        principal: str,
        now: datetime | None,
    ) -> None:
        processing_ms = round((time.monotonic() - started) * 1000, 3)
        self._ledger.append_batch(
            request.scan_id,
            [
                Transition(LedgerState.SUBMITTED, request.to_dict()),
                Transition(LedgerState.FAILED, {"error": error.to_dict(), "processing_ms": processing_ms}),
            ],
            previous_entry_id=None,
            principal=principal,
            retention_period_days=config.retention.clinical_days,
            now=now,
        )
        logger.warning("Scan %s failed: %s", request.scan_id, error.kind)
