"""Data models for the transformer."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TransformOperation(str, Enum):
    """How a finding's span is rewritten."""

    REDACT = "REDACT"
    MASK = "MASK"
    REPLACE = "REPLACE"
    HASH = "HASH"
    DATE_SHIFT = "DATE_SHIFT"
    NONE = "NONE"


# Operations whose output is deliberately well-formed for its InfoType.
SURROGATE_OPERATIONS: frozenset[TransformOperation] = frozenset({
    TransformOperation.REPLACE,
    TransformOperation.DATE_SHIFT,
})


@dataclass(frozen=True)
class TransformedSpan:
    """Where one transformation landed in the de-identified output.

    Attributes:
        info_type: InfoType of the winning finding.
        operation: Operation applied.
        source_start: Start offset in the original text.
        source_end: End offset in the original text.
        output_start: Start offset in the de-identified text.
        output_end: End offset in the de-identified text.
    """

    info_type: str
    operation: TransformOperation
    source_start: int
    source_end: int
    output_start: int
    output_end: int

    @property
    def is_surrogate(self) -> bool:
        return self.operation in SURROGATE_OPERATIONS

    def to_dict(self) -> dict[str, Any]:
        return {
            "info_type": self.info_type,
            "operation": self.operation.value,
            "source_start": self.source_start,
            "source_end": self.source_end,
            "output_start": self.output_start,
            "output_end": self.output_end,
        }


@dataclass(frozen=True)
class DeidentificationRecord:
    """Metadata describing one de-identification of a scan's content.

    Key material is never part of the record; a reversible record only
    holds the key id and the ciphertext of the original span values.

    Attributes:
        scan_id: Owning ScanRequest id.
        original_hash: SHA-256 of the original text.
        deidentified_hash: SHA-256 of the de-identified text.
        original_length: Length of the original text.
        deidentified_length: Length of the de-identified text.
        spans: Transformations in output order.
        operation_counts: Number of spans per operation.
        reversible: Whether the originals can be recovered.
        reversal_key_id: KMS key id used to encrypt originals.
        authorized_roles: Roles allowed to reverse.
        encrypted_originals: Ciphertext of the original span values.
        information_loss: Share of original characters rewritten (0–1).
        warnings: Non-fatal issues (e.g. irreversible fallback).
        created_at: When the record was produced.
    """

    scan_id: str
    original_hash: str
    deidentified_hash: str
    original_length: int
    deidentified_length: int
    spans: tuple[TransformedSpan, ...] = ()
    operation_counts: dict[str, int] = field(default_factory=dict)
    reversible: bool = False
    reversal_key_id: str | None = None
    authorized_roles: tuple[str, ...] = ()
    encrypted_originals: bytes | None = field(default=None, repr=False)
    information_loss: float = 0.0
    warnings: tuple[str, ...] = ()
    created_at: datetime | None = None

    @property
    def transformations_applied(self) -> int:
        return len(self.spans)

    @property
    def surrogate_spans(self) -> tuple[TransformedSpan, ...]:
        return tuple(s for s in self.spans if s.is_surrogate)

    def to_dict(self) -> dict[str, Any]:
        encrypted = None
        if self.encrypted_originals is not None:
            encrypted = base64.b64encode(self.encrypted_originals).decode("ascii")
        return {
            "scan_id": self.scan_id,
            "original_hash": self.original_hash,
            "deidentified_hash": self.deidentified_hash,
            "original_length": self.original_length,
            "deidentified_length": self.deidentified_length,
            "transformations_applied": self.transformations_applied,
            "operation_counts": dict(self.operation_counts),
            "spans": [s.to_dict() for s in self.spans],
            "reversible": self.reversible,
            "reversal_key_id": self.reversal_key_id,
            "authorized_roles": list(self.authorized_roles),
            "encrypted_originals": encrypted,
            "information_loss": self.information_loss,
            "warnings": list(self.warnings),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
