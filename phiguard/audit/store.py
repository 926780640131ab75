"""Append-only storage backends for the audit ledger.

A store only has to do three things: load every entry, append a batch of
entries atomically, and replace a disposed scan's entries with its
tombstone.  Ordering rules and immutability are enforced by the ledger on
top of it, so any storage with append semantics can back it.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol, Sequence

from phiguard.audit.models import AuditLedgerEntry
from phiguard.errors import PersistenceError

logger = logging.getLogger(__name__)


class LedgerStore(Protocol):
    """Durable storage for ledger entries."""

    def load(self) -> list[AuditLedgerEntry]: ...

    def append_many(self, entries: Sequence[AuditLedgerEntry]) -> None:
        """Persist all *entries* or none; raise PersistenceError on failure."""
        ...

    def replace_scan(self, scan_id: str, tombstone: AuditLedgerEntry) -> None:
        """Drop every entry of *scan_id* and store *tombstone* in their place."""
        ...


class MemoryLedgerStore:
    """In-process store, used by tests and short-lived engines."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[AuditLedgerEntry] = []

    def load(self) -> list[AuditLedgerEntry]:
        with self._lock:
            return list(self._entries)

    def append_many(self, entries: Sequence[AuditLedgerEntry]) -> None:
        with self._lock:
            self._entries.extend(entries)

    def replace_scan(self, scan_id: str, tombstone: AuditLedgerEntry) -> None:
        with self._lock:
            self._entries = [e for e in self._entries if e.scan_id != scan_id]
            self._entries.append(tombstone)


class JsonlLedgerStore:
    """JSON Lines file store, one entry per line.

    Args:
        path: Ledger file; created with its parent directories if missing.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[AuditLedgerEntry]:
        """Read every entry.

        Raises:
            PersistenceError: If a line is not a valid ledger entry.
        """
        if not self._path.exists():
            return []
        entries: list[AuditLedgerEntry] = []
        with self._lock, open(self._path, encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(AuditLedgerEntry.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                    raise PersistenceError(
                        f"Corrupt ledger entry at {self._path}:{line_num}: {e}",
                        field="ledger_path",
                    ) from e
        return entries

    def append_many(self, entries: Sequence[AuditLedgerEntry]) -> None:
        """Append *entries* with a single write.

        Raises:
            PersistenceError: If the write fails.
        """
        block = "".join(
            json.dumps(e.to_dict(), default=str, ensure_ascii=False) + "\n" for e in entries
        )
        with self._lock:
            try:
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(block)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise PersistenceError(
                    f"Failed to append to ledger {self._path}: {e}", field="ledger_path"
                ) from e

    def replace_scan(self, scan_id: str, tombstone: AuditLedgerEntry) -> None:
        """Rewrite the file without *scan_id*'s entries, then add the tombstone.

        The new file is written beside the old one and moved into place,
        so a failure leaves the original file untouched.
        """
        kept = [e for e in self.load() if e.scan_id != scan_id]
        kept.append(tombstone)
        with self._lock:
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".ledger-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    for entry in kept:
                        f.write(json.dumps(entry.to_dict(), default=str, ensure_ascii=False) + "\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self._path)
            except OSError as e:
                Path(tmp_name).unlink(missing_ok=True)
                raise PersistenceError(
                    f"Failed to rewrite ledger {self._path}: {e}", field="ledger_path"
                ) from e
        logger.info("Rewrote ledger %s after disposal of %s", self._path, scan_id)
