"""Audit & retention ledger.

Every state-changing operation on a ScanRequest appends one immutable
``AuditLedgerEntry``.  Per scan the entries form a chain: each append must
name the current head entry as ``previous_entry_id``, so two writers racing
on the same scan cannot both succeed, and transitions must follow the
state machine::

    submitted → scanned → (transformed)? → retained → eligible_for_disposal
    submitted → failed → retained

Nothing is ever edited.  A correction is a compensation entry that
references the entry it corrects.  Entries leave the ledger only through
``dispose()``, an explicitly authorized operation that requires every
entry of the scan to be past its disposal date and leaves a tombstone.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from phiguard.audit.models import AuditLedgerEntry, EntryKind, LedgerState
from phiguard.audit.retention import disposal_date
from phiguard.audit.store import LedgerStore
from phiguard.errors import LedgerImmutableError, LedgerSequenceError, ValidationError

logger = logging.getLogger(__name__)


# Allowed next states; None is the state before the first entry.
TRANSITIONS: dict[LedgerState | None, frozenset[LedgerState]] = {
    None: frozenset({LedgerState.SUBMITTED}),
    LedgerState.SUBMITTED: frozenset({LedgerState.SCANNED, LedgerState.FAILED}),
    LedgerState.SCANNED: frozenset({LedgerState.TRANSFORMED, LedgerState.RETAINED}),
    LedgerState.TRANSFORMED: frozenset({LedgerState.RETAINED}),
    LedgerState.FAILED: frozenset({LedgerState.RETAINED}),
    LedgerState.RETAINED: frozenset({LedgerState.ELIGIBLE_FOR_DISPOSAL}),
    LedgerState.ELIGIBLE_FOR_DISPOSAL: frozenset(),
    LedgerState.DISPOSED: frozenset(),
}


@dataclass(frozen=True)
class Transition:
    """A transition to append as part of a batch."""

    state: LedgerState
    payload: Mapping[str, Any] = field(default_factory=dict)


class AuditLedger:
    """Append-only ledger over a ``LedgerStore``.

    Args:
        store: Durable storage for entries.
    """

    def __init__(self, store: LedgerStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._chains: dict[str, list[AuditLedgerEntry]] = {}
        for entry in store.load():
            self._chains.setdefault(entry.scan_id, []).append(entry)

    # -- Queries -------------------------------------------------------

    def entries(self, scan_id: str | None = None) -> list[AuditLedgerEntry]:
        """Entries of one scan in chain order, or every entry."""
        with self._lock:
            if scan_id is not None:
                return list(self._chains.get(scan_id, ()))
            return [e for chain in self._chains.values() for e in chain]

    def scan_ids(self) -> list[str]:
        with self._lock:
            return list(self._chains)

    def head(self, scan_id: str) -> AuditLedgerEntry | None:
        with self._lock:
            chain = self._chains.get(scan_id)
            return chain[-1] if chain else None

    def state(self, scan_id: str) -> LedgerState | None:
        with self._lock:
            return _current_state(self._chains.get(scan_id, ()))

    def __len__(self) -> int:
        with self._lock:
            return sum(len(chain) for chain in self._chains.values())

    def due_for_disposal(self, now: datetime) -> list[str]:
        """Scan ids in ``retained`` whose every entry is past its disposal date."""
        with self._lock:
            return [
                scan_id for scan_id, chain in self._chains.items()
                if _current_state(chain) == LedgerState.RETAINED
                and all(e.disposal_date < now for e in chain)
            ]

    # -- Appends -------------------------------------------------------

    def append(
        self,
        scan_id: str,
        state: LedgerState,
        *,
        previous_entry_id: str | None,
        principal: str,
        retention_period_days: int,
        payload: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> AuditLedgerEntry:
        """Append one transition.  See ``append_batch``."""
        return self.append_batch(
            scan_id,
            [Transition(state, payload or {})],
            previous_entry_id=previous_entry_id,
            principal=principal,
            retention_period_days=retention_period_days,
            now=now,
        )[0]

    def append_batch(
        self,
        scan_id: str,
        transitions: Sequence[Transition],
        *,
        previous_entry_id: str | None,
        principal: str,
        retention_period_days: int,
        now: datetime | None = None,
    ) -> list[AuditLedgerEntry]:
        """Append several transitions for one scan, all or nothing.

        Args:
            scan_id: The scan the transitions belong to.
            transitions: Transitions in order.
            previous_entry_id: Current head entry id, None for a new scan.
            principal: Acting user or service.
            retention_period_days: Retention for every new entry.
            now: Entry timestamp.

        Returns:
            The appended entries.

        Raises:
            LedgerSequenceError: If *previous_entry_id* is not the head or a
                transition is not allowed from the current state.
            PersistenceError: If the store write fails; nothing was appended.
        """
        if not transitions:
            return []
        timestamp = now or datetime.now(timezone.utc)
        with self._lock:
            chain = self._chains.get(scan_id, [])
            self._check_head(scan_id, chain, previous_entry_id)

            state = _current_state(chain)
            prev_id = previous_entry_id
            sequence = len(chain)
            new: list[AuditLedgerEntry] = []
            for transition in transitions:
                if transition.state not in TRANSITIONS[state]:
                    raise LedgerSequenceError(
                        f"Illegal transition for {scan_id}: "
                        f"{state.value if state else 'none'} → {transition.state.value}",
                        field="state",
                    )
                sequence += 1
                entry = self._new_entry(
                    scan_id, sequence, transition.state, EntryKind.TRANSITION, prev_id,
                    principal, timestamp, retention_period_days, transition.payload,
                )
                new.append(entry)
                prev_id = entry.entry_id
                state = transition.state

            self._store.append_many(new)
            self._chains.setdefault(scan_id, []).extend(new)

        logger.debug("Ledger %s → %s", scan_id, ", ".join(e.state.value for e in new))
        return new

    def compensate(
        self,
        original_entry_id: str,
        *,
        previous_entry_id: str | None,
        principal: str,
        reason: str,
        corrections: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> AuditLedgerEntry:
        """Append a compensation entry correcting an earlier entry.

        The scan's state is unchanged.  ``corrections`` holds the payload
        fields that supersede those of the original entry.

        Raises:
            ValidationError: If *original_entry_id* is unknown.
            LedgerSequenceError: If *previous_entry_id* is not the head.
        """
        timestamp = now or datetime.now(timezone.utc)
        with self._lock:
            original = self._find(original_entry_id)
            chain = self._chains[original.scan_id]
            self._check_head(original.scan_id, chain, previous_entry_id)
            entry = self._new_entry(
                original.scan_id, len(chain) + 1, _current_state(chain) or original.state,
                EntryKind.COMPENSATION, previous_entry_id, principal, timestamp,
                max(original.retention_period_days, chain[-1].retention_period_days),
                {"reason": reason, "corrections": dict(corrections or {})},
                compensates=original_entry_id,
            )
            self._store.append_many([entry])
            chain.append(entry)
        logger.info("Compensated ledger entry %s: %s", original_entry_id, reason)
        return entry

    # -- Retention -----------------------------------------------------

    def sweep(self, now: datetime, *, principal: str) -> list[AuditLedgerEntry]:
        """Mark retained scans past their disposal date as eligible.

        Nothing is deleted.  Scans whose head moves concurrently are
        skipped and picked up by the next sweep.
        """
        marked: list[AuditLedgerEntry] = []
        for scan_id in self.due_for_disposal(now):
            head = self.head(scan_id)
            if head is None:
                continue
            try:
                marked.append(self.append(
                    scan_id,
                    LedgerState.ELIGIBLE_FOR_DISPOSAL,
                    previous_entry_id=head.entry_id,
                    principal=principal,
                    retention_period_days=head.retention_period_days,
                    payload={"swept_at": now.isoformat()},
                    now=now,
                ))
            except LedgerSequenceError:
                logger.info("Skipped %s during sweep: head moved", scan_id)
        logger.info("Sweep marked %d scan(s) eligible for disposal", len(marked))
        return marked

    def dispose(
        self,
        scan_id: str,
        *,
        previous_entry_id: str,
        principal: str,
        approved_by: str,
        disposal_record_days: int,
        now: datetime | None = None,
    ) -> AuditLedgerEntry:
        """Delete a scan's entries, leaving a tombstone.

        Raises:
            LedgerImmutableError: If the scan is not eligible for disposal
                or any entry is still inside its retention period.
            LedgerSequenceError: If *previous_entry_id* is not the head.
        """
        timestamp = now or datetime.now(timezone.utc)
        with self._lock:
            chain = self._chains.get(scan_id, [])
            self._check_head(scan_id, chain, previous_entry_id)
            if _current_state(chain) != LedgerState.ELIGIBLE_FOR_DISPOSAL:
                raise LedgerImmutableError(
                    f"Scan {scan_id} is not eligible for disposal", field="state"
                )
            if any(e.disposal_date >= timestamp for e in chain):
                raise LedgerImmutableError(
                    f"Scan {scan_id} has entries still inside their retention period",
                    field="disposal_date",
                )
            tombstone = self._new_entry(
                scan_id, len(chain) + 1, LedgerState.DISPOSED, EntryKind.TRANSITION,
                previous_entry_id, principal, timestamp, disposal_record_days,
                {"approved_by": approved_by, "disposed_entries": len(chain)},
            )
            self._store.replace_scan(scan_id, tombstone)
            self._chains[scan_id] = [tombstone]
        logger.info("Disposed %d ledger entries of %s (approved by %s)", len(chain), scan_id, approved_by)
        return tombstone

    def delete(self, entry_id: str, *, now: datetime | None = None) -> None:
        """Entries are never deleted one by one.

        Raises:
            LedgerImmutableError: Always; inside the retention period the
                entry is protected, after it only ``dispose()`` may remove it.
        """
        timestamp = now or datetime.now(timezone.utc)
        with self._lock:
            entry = self._find(entry_id)
        if timestamp <= entry.disposal_date:
            raise LedgerImmutableError(
                f"Entry {entry_id} is retained until {entry.disposal_date.isoformat()}",
                field="disposal_date",
            )
        raise LedgerImmutableError(
            f"Entry {entry_id} can only be removed by an authorized disposal of scan {entry.scan_id}",
            field="entry_id",
        )

    def amend(self, entry_id: str, **changes: Any) -> None:
        """Entries are never edited; append a compensation entry instead.

        Raises:
            LedgerImmutableError: Always.
        """
        raise LedgerImmutableError(
            f"Entry {entry_id} is immutable; use compensate() to correct it",
            field=next(iter(changes), None),
        )

    # -- Internals -----------------------------------------------------

    def _check_head(
        self, scan_id: str, chain: Sequence[AuditLedgerEntry], previous_entry_id: str | None
    ) -> None:
        head_id = chain[-1].entry_id if chain else None
        if previous_entry_id != head_id:
            raise LedgerSequenceError(
                f"Stale append for {scan_id}: expected previous entry {head_id}, "
                f"got {previous_entry_id}",
                field="previous_entry_id",
            )

    def _find(self, entry_id: str) -> AuditLedgerEntry:
        for chain in self._chains.values():
            for entry in chain:
                if entry.entry_id == entry_id:
                    return entry
        raise ValidationError(f"Unknown ledger entry '{entry_id}'", field="entry_id")

    @staticmethod
    def _new_entry(
        scan_id: str,
        sequence: int,
        state: LedgerState,
        kind: EntryKind,
        previous_entry_id: str | None,
        principal: str,
        timestamp: datetime,
        retention_period_days: int,
        payload: Mapping[str, Any],
        compensates: str | None = None,
    ) -> AuditLedgerEntry:
        return AuditLedgerEntry(
            entry_id=f"led-{uuid.uuid4().hex}",
            scan_id=scan_id,
            sequence=sequence,
            state=state,
            kind=kind,
            previous_entry_id=previous_entry_id,
            principal=principal,
            timestamp=timestamp,
            retention_period_days=retention_period_days,
            disposal_date=disposal_date(timestamp, retention_period_days),
            payload=payload,
            compensates=compensates,
        )


def _current_state(chain: Iterable[AuditLedgerEntry]) -> LedgerState | None:
    state = None
    for entry in chain:
        if entry.kind == EntryKind.TRANSITION:
            state = entry.state
    return state
