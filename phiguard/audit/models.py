"""Ledger entry model and lifecycle states."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class LedgerState(str, Enum):
    """Lifecycle state of a ScanRequest in the ledger."""

    SUBMITTED = "submitted"
    SCANNED = "scanned"
    TRANSFORMED = "transformed"
    FAILED = "failed"
    RETAINED = "retained"
    ELIGIBLE_FOR_DISPOSAL = "eligible_for_disposal"
    DISPOSED = "disposed"


class EntryKind(str, Enum):
    TRANSITION = "transition"
    COMPENSATION = "compensation"


@dataclass(frozen=True)
class AuditLedgerEntry:
    """One immutable ledger record.

    Attributes:
        entry_id: Unique id of this entry.
        scan_id: ScanRequest the entry belongs to.
        sequence: Position in the scan's chain, starting at 1.
        state: State the scan is in after this entry.
        kind: Transition or compensation.
        previous_entry_id: Head of the chain when this entry was appended.
        principal: Acting user or service.
        timestamp: When the entry was appended (UTC).
        retention_period_days: How long the entry must be kept.
        disposal_date: ``timestamp + retention_period_days``.
        payload: Operation details; never raw content.
        compensates: Entry id a compensation entry corrects.
    """

    entry_id: str
    scan_id: str
    sequence: int
    state: LedgerState
    kind: EntryKind
    previous_entry_id: str | None
    principal: str
    timestamp: datetime
    retention_period_days: int
    disposal_date: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)
    compensates: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", _freeze(self.payload))

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "scan_id": self.scan_id,
            "sequence": self.sequence,
            "state": self.state.value,
            "kind": self.kind.value,
            "previous_entry_id": self.previous_entry_id,
            "principal": self.principal,
            "timestamp": self.timestamp.isoformat(),
            "retention_period_days": self.retention_period_days,
            "disposal_date": self.disposal_date.isoformat(),
            "payload": _thaw(self.payload),
            "compensates": self.compensates,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AuditLedgerEntry:
        return cls(
            entry_id=data["entry_id"],
            scan_id=data["scan_id"],
            sequence=int(data["sequence"]),
            state=LedgerState(data["state"]),
            kind=EntryKind(data.get("kind", EntryKind.TRANSITION.value)),
            previous_entry_id=data.get("previous_entry_id"),
            principal=data["principal"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            retention_period_days=int(data["retention_period_days"]),
            disposal_date=datetime.fromisoformat(data["disposal_date"]),
            payload=data.get("payload") or {},
            compensates=data.get("compensates"),
        )


def _freeze(value: Any) -> Any:
    """Read-only copy of *value*: mappings become proxies, lists tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_thaw(v) for v in value]
    return value
