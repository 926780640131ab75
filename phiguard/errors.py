"""Error taxonomy for the PHI engine.

Every error carries a machine-readable ``kind`` and the offending ``field``
so callers can log and display it without re-scanning the content.
"""

from __future__ import annotations

from typing import Any


class PHIGuardError(Exception):
    """Base class for all engine errors.

    Attributes:
        kind: Stable error category (e.g. ``"configuration"``).
        field: Name of the offending field, if any.
        details: Structured error details (e.g. pydantic error dicts).
    """

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: list[dict[str, Any]] | None = None,
    ) -> None:
        self.field = field
        self.details = details or []
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for logs and API responses."""
        return {
            "kind": self.kind,
            "field": self.field,
            "message": str(self),
            "details": self.details,
        }


class ConfigurationError(PHIGuardError):
    """Raised for a malformed InfoType, policy, or missing approved config."""

    kind = "configuration"


class ValidationError(PHIGuardError):
    """Raised when input is rejected before scanning begins."""

    kind = "validation"


class ScanTimeoutError(PHIGuardError):
    """Raised when scanning exceeds the configured timeout."""

    kind = "timeout"


class KeyManagementError(PHIGuardError):
    """Raised when a reversal key cannot be fetched or used."""

    kind = "key_management"

    def __init__(
        self,
        message: str,
        *,
        scan_id: str | None = None,
        field: str | None = "reversal_key_id",
        details: list[dict[str, Any]] | None = None,
    ) -> None:
        self.scan_id = scan_id
        super().__init__(message, field=field, details=details)


class AuthorizationError(PHIGuardError):
    """Raised when a principal is not allowed to perform an operation."""

    kind = "authorization"


class PersistenceError(PHIGuardError):
    """Raised when a ledger append fails; the operation did not happen."""

    kind = "persistence"


class LedgerSequenceError(PersistenceError):
    """Raised when an append does not follow the current head for its scan."""

    kind = "ledger_sequence"


class LedgerImmutableError(PersistenceError):
    """Raised on any attempt to mutate or delete a retained ledger entry."""

    kind = "ledger_immutable"


class DeidentificationError(PHIGuardError):
    """Raised when de-identified output still carries covered PHI.

    Attributes:
        scan_id: Owning ScanRequest id, when known.
    """

    kind = "deidentification"

    def __init__(
        self,
        message: str,
        *,
        scan_id: str | None = None,
        field: str | None = "content",
        details: list[dict[str, Any]] | None = None,
    ) -> None:
        self.scan_id = scan_id
        super().__init__(message, field=field, details=details)
