"""Data models for the scanner.

Pure data structures — no I/O, no external dependencies.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class Likelihood(str, Enum):
    """Confidence bucket attached to a finding, weakest first."""

    VERY_UNLIKELY = "VERY_UNLIKELY"
    UNLIKELY = "UNLIKELY"
    POSSIBLE = "POSSIBLE"
    LIKELY = "LIKELY"
    VERY_LIKELY = "VERY_LIKELY"

    @property
    def rank(self) -> int:
        """Ordinal position, 0 for VERY_UNLIKELY up to 4 for VERY_LIKELY."""
        return _LIKELIHOOD_ORDER.index(self)

    @property
    def confidence(self) -> float:
        """Numeric confidence score (0.0–1.0) for this bucket."""
        return _CONFIDENCE_SCORES[self]

    def meets(self, threshold: Likelihood) -> bool:
        """True if this likelihood is at least *threshold*."""
        return self.rank >= threshold.rank

    def raised(self, levels: int = 1) -> Likelihood:
        """Return the likelihood *levels* buckets higher, capped at VERY_LIKELY."""
        idx = min(self.rank + levels, len(_LIKELIHOOD_ORDER) - 1)
        return _LIKELIHOOD_ORDER[idx]


_LIKELIHOOD_ORDER: tuple[Likelihood, ...] = (
    Likelihood.VERY_UNLIKELY,
    Likelihood.UNLIKELY,
    Likelihood.POSSIBLE,
    Likelihood.LIKELY,
    Likelihood.VERY_LIKELY,
)

_CONFIDENCE_SCORES: dict[Likelihood, float] = {
    Likelihood.VERY_UNLIKELY: 0.1,
    Likelihood.UNLIKELY: 0.3,
    Likelihood.POSSIBLE: 0.5,
    Likelihood.LIKELY: 0.8,
    Likelihood.VERY_LIKELY: 1.0,
}


class InfoCategory(str, Enum):
    """Category an InfoType belongs to."""

    QUEBEC_IDENTIFIER = "quebec_identifier"
    MEDICAL_INFO = "medical_info"
    PERSONAL_INFO = "personal_info"
    CONTACT_INFO = "contact_info"
    FINANCIAL_INFO = "financial_info"
    OTHER = "other"


class ContentType(str, Enum):
    """Kind of clinical content submitted for scanning."""

    TEXT = "text"
    MEDICAL_NOTE = "medical_note"
    PATIENT_RECORD = "patient_record"
    LAB_RESULT = "lab_result"
    PRESCRIPTION = "prescription"
    APPOINTMENT_NOTE = "appointment_note"
    ASSESSMENT = "assessment"
    DIAGNOSIS = "diagnosis"
    CORRESPONDENCE = "correspondence"
    FORM = "form"
    REPORT = "report"
    DOCUMENT = "document"


class AuditLevel(str, Enum):
    """How much detail the ledger records for a scan."""

    MINIMAL = "minimal"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"
    FORENSIC = "forensic"


@dataclass(frozen=True)
class Span:
    """Location of a finding in the scanned text.

    Attributes:
        start: Start codepoint offset (inclusive).
        end: End codepoint offset (exclusive).
        byte_start: Start offset in the UTF-8 encoding.
        byte_end: End offset in the UTF-8 encoding.
        line: 1-based line number of ``start``.
        column: 1-based column of ``start`` within its line.
    """

    start: int
    end: int
    byte_start: int
    byte_end: int
    line: int
    column: int

    def overlaps(self, other: Span) -> bool:
        return self.start < other.end and other.start < self.end


@dataclass(frozen=True)
class Finding:
    """One located occurrence of an InfoType.

    The raw ``quote`` lives only in memory; ``to_dict()`` emits a masked
    version so nothing persisted carries the original value.

    Attributes:
        info_type: InfoType id (e.g. ``QUEBEC_RAMQ_NUMBER``).
        category: Category of the InfoType.
        likelihood: Likelihood bucket.
        confidence_score: Numeric confidence (0.0–1.0).
        span: Location in the source text.
        quote: The matched substring.
        quebec_specific: True for Quebec-jurisdiction InfoTypes.
        scan_id: Owning ScanRequest id; empty until bound by the engine.
    """

    info_type: str
    category: InfoCategory
    likelihood: Likelihood
    confidence_score: float
    span: Span
    quote: str = field(repr=False)
    quebec_specific: bool = False
    scan_id: str = ""

    @property
    def start(self) -> int:
        return self.span.start

    @property
    def end(self) -> int:
        return self.span.end

    @property
    def finding_id(self) -> str:
        """Stable id derived from the scan, InfoType and span."""
        return f"{self.scan_id or 'unbound'}:{self.info_type}:{self.start}-{self.end}"

    @property
    def redacted_quote(self) -> str:
        """The quote with every alphanumeric character masked."""
        return "".join("*" if c.isalnum() else c for c in self.quote)

    def sort_key(self) -> tuple[int, int, str]:
        return (self.span.start, self.span.end, self.info_type)

    def to_dict(self) -> dict[str, Any]:
        """Serialize without the raw quote."""
        return {
            "finding_id": self.finding_id,
            "scan_id": self.scan_id,
            "info_type": self.info_type,
            "category": self.category.value,
            "likelihood": self.likelihood.value,
            "confidence_score": self.confidence_score,
            "byte_start": self.span.byte_start,
            "byte_end": self.span.byte_end,
            "codepoint_start": self.span.start,
            "codepoint_end": self.span.end,
            "line_number": self.span.line,
            "column_number": self.span.column,
            "quote": self.redacted_quote,
            "quebec_specific": self.quebec_specific,
        }


@dataclass(frozen=True)
class ScanContext:
    """Who and what a scan is about.

    Attributes:
        patient_id: Subject of the content, used for date-shift consistency.
        professional_id: Professional submitting or owning the content.
        session_id: Clinical session reference.
        appointment_id: Appointment reference.
        note_id: Note reference.
        content_type: Kind of content; drives retention.
        tags: Free-form key/value metadata.
        source_system: Origin system (web_app, mobile_app, api, import).
        consent_verified: Law 25 consent has been verified.
        purpose_documented: Processing purpose is documented.
        data_residency_confirmed: Data stays within Quebec.
    """

    patient_id: str | None = None
    professional_id: str | None = None
    session_id: str | None = None
    appointment_id: str | None = None
    note_id: str | None = None
    content_type: ContentType = ContentType.TEXT
    tags: Mapping[str, str] = field(default_factory=dict)
    source_system: str | None = None
    consent_verified: bool = True
    purpose_documented: bool = True
    data_residency_confirmed: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "professional_id": self.professional_id,
            "session_id": self.session_id,
            "appointment_id": self.appointment_id,
            "note_id": self.note_id,
            "content_type": self.content_type.value,
            "tags": dict(self.tags),
            "source_system": self.source_system,
            "consent_verified": self.consent_verified,
            "purpose_documented": self.purpose_documented,
            "data_residency_confirmed": self.data_residency_confirmed,
        }


@dataclass(frozen=True)
class ScanOptions:
    """Processing options for a scan.

    Attributes:
        enable_deidentification: Run the Transformer after classification.
        audit_level: Ledger detail level.
        jurisdiction_required: Quebec Law 25 rules apply to this content.
        reversible: Request a reversible de-identification.
    """

    enable_deidentification: bool = False
    audit_level: AuditLevel = AuditLevel.STANDARD
    jurisdiction_required: bool = True
    reversible: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "enable_deidentification": self.enable_deidentification,
            "audit_level": self.audit_level.value,
            "jurisdiction_required": self.jurisdiction_required,
            "reversible": self.reversible,
        }


@dataclass(frozen=True)
class ScanRequest:
    """A single scan call; immutable once created."""

    scan_id: str
    content_hash: str
    content_length: int
    context: ScanContext
    options: ScanOptions
    submitted_at: datetime
    config_version: str

    @classmethod
    def create(
        cls,
        content: str,
        context: ScanContext,
        options: ScanOptions,
        config_version: str,
        *,
        now: datetime | None = None,
    ) -> ScanRequest:
        """Build a request for *content*, hashing it instead of keeping it."""
        return cls(
            scan_id=f"scan-{uuid.uuid4().hex}",
            content_hash=content_sha256(content),
            content_length=len(content),
            context=context,
            options=options,
            submitted_at=now or datetime.now(timezone.utc),
            config_version=config_version,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "scan_id": self.scan_id,
            "content_hash": self.content_hash,
            "content_length": self.content_length,
            "context": self.context.to_dict(),
            "options": self.options.to_dict(),
            "submitted_at": self.submitted_at.isoformat(),
            "config_version": self.config_version,
        }


def content_sha256(content: str) -> str:
    """SHA-256 hex digest of *content* encoded as UTF-8."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
