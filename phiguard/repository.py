"""Keyed-lookup persistence for scan requests, findings, results and records.

Only serialized, redacted forms are stored: findings keep their masked
quote, never the original substring.  The ledger is the append-only
history; this repository is the current-state lookup beside it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

from phiguard.classify.models import ScanResult
from phiguard.errors import ValidationError
from phiguard.scan.models import Finding, ScanRequest
from phiguard.transform.models import DeidentificationRecord


@dataclass(frozen=True)
class StoredScan:
    """Everything kept about one scan."""

    request: ScanRequest
    findings: tuple[dict[str, Any], ...]
    result: ScanResult


class InMemoryRepository:
    """Thread-safe in-memory repository."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._scans: dict[str, StoredScan] = {}
        self._records: dict[str, DeidentificationRecord] = {}
        self._outputs: dict[str, str] = {}

    def save_scan(self, request: ScanRequest, findings: list[Finding], result: ScanResult) -> None:
        """Store a request with its findings and result in one step.

        Raises:
            ValidationError: If the scan id is already stored.
        """
        stored = StoredScan(
            request=request,
            findings=tuple(f.to_dict() for f in findings),
            result=result,
        )
        with self._lock:
            if request.scan_id in self._scans:
                raise ValidationError(f"Scan {request.scan_id} is already stored", field="scan_id")
            self._scans[request.scan_id] = stored

    def save_deidentification(self, record: DeidentificationRecord, output: str) -> None:
        with self._lock:
            self._records[record.scan_id] = record
            self._outputs[record.scan_id] = output

    def get_scan(self, scan_id: str) -> StoredScan:
        with self._lock:
            try:
                return self._scans[scan_id]
            except KeyError:
                raise ValidationError(f"Unknown scan '{scan_id}'", field="scan_id") from None

    def get_request(self, scan_id: str) -> ScanRequest:
        return self.get_scan(scan_id).request

    def get_findings(self, scan_id: str) -> list[dict[str, Any]]:
        return list(self.get_scan(scan_id).findings)

    def get_result(self, scan_id: str) -> ScanResult:
        return self.get_scan(scan_id).result

    def get_deidentification(self, scan_id: str) -> tuple[DeidentificationRecord, str] | None:
        with self._lock:
            if scan_id not in self._records:
                return None
            return self._records[scan_id], self._outputs[scan_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._scans)
