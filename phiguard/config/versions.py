"""Versioned configuration store.

Configurations are never edited: publishing adds a version, approving or
retiring replaces the stored object with a new frozen copy whose content
is otherwise identical, and every change is kept in ``history``.  Scans
always run against ``active()``: the most recently approved version that
has not been retired.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone

from phiguard.config.schema import ConfigStatus, EngineConfig
from phiguard.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigChange:
    """One entry in the configuration change history."""

    version: str
    status: ConfigStatus
    changed_by: str
    changed_at: datetime
    reason: str = ""


class ConfigVersionStore:
    """Thread-safe registry of configuration versions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._versions: dict[str, EngineConfig] = {}
        self._approval_order: list[str] = []
        self._history: list[ConfigChange] = []

    @classmethod
    def with_config(cls, config: EngineConfig, changed_by: str = "system") -> ConfigVersionStore:
        """Build a store holding *config*; approved configs become active."""
        store = cls()
        store.publish(config, changed_by=changed_by)
        if config.status == ConfigStatus.APPROVED:
            with store._lock:
                store._approval_order.append(config.version)
        return store

    @property
    def history(self) -> list[ConfigChange]:
        with self._lock:
            return list(self._history)

    def get(self, version: str) -> EngineConfig:
        with self._lock:
            try:
                return self._versions[version]
            except KeyError:
                raise ConfigurationError(
                    f"Unknown configuration version '{version}'", field="version"
                ) from None

    def publish(self, config: EngineConfig, *, changed_by: str, reason: str = "") -> None:
        """Add a new configuration version.

        Raises:
            ConfigurationError: If the version string is already taken.
        """
        with self._lock:
            if config.version in self._versions:
                raise ConfigurationError(
                    f"Configuration version '{config.version}' already exists; "
                    f"publish changes under a new version.",
                    field="version",
                )
            self._versions[config.version] = config
            self._record(config.version, config.status, changed_by, reason)
        logger.info("Published configuration version %s (%s)", config.version, config.status.value)

    def approve(self, version: str, *, approver: str, reason: str = "") -> EngineConfig:
        """Approve a published version, making it the active configuration."""
        with self._lock:
            config = self._require(version)
            if config.status == ConfigStatus.RETIRED:
                raise ConfigurationError(
                    f"Configuration version '{version}' is retired and cannot be approved",
                    field="status",
                )
            approved = config.model_copy(
                update={"status": ConfigStatus.APPROVED, "approved_by": approver}
            )
            self._versions[version] = approved
            if version in self._approval_order:
                self._approval_order.remove(version)
            self._approval_order.append(version)
            self._record(version, ConfigStatus.APPROVED, approver, reason)
        logger.info("Approved configuration version %s by %s", version, approver)
        return approved

    def retire(self, version: str, *, changed_by: str, reason: str = "") -> None:
        """Retire a version so it can no longer be active."""
        with self._lock:
            config = self._require(version)
            self._versions[version] = config.model_copy(update={"status": ConfigStatus.RETIRED})
            if version in self._approval_order:
                self._approval_order.remove(version)
            self._record(version, ConfigStatus.RETIRED, changed_by, reason)
        logger.info("Retired configuration version %s", version)

    def active(self) -> EngineConfig:
        """Return the active configuration.

        Raises:
            ConfigurationError: If no approved, non-retired version exists.
        """
        with self._lock:
            if not self._approval_order:
                raise ConfigurationError(
                    "No active, approved configuration version is available; "
                    "scans are rejected until one is approved.",
                    field="status",
                )
            return self._versions[self._approval_order[-1]]

    def _require(self, version: str) -> EngineConfig:
        try:
            return self._versions[version]
        except KeyError:
            raise ConfigurationError(
                f"Unknown configuration version '{version}'", field="version"
            ) from None

    def _record(self, version: str, status: ConfigStatus, changed_by: str, reason: str) -> None:
        self._history.append(
            ConfigChange(
                version=version,
                status=status,
                changed_by=changed_by,
                changed_at=datetime.now(timezone.utc),
                reason=reason,
            )
        )
