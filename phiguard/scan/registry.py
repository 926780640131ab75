"""InfoType registry — the catalog of detectable pattern classes.

The registry is built from an ``EngineConfig`` and is as immutable as the
configuration it came from.  Compiled matchers are cached per InfoType so
repeated scans do not recompile patterns.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Iterable, Iterator

from phiguard.config.schema import EngineConfig, InfoType
from phiguard.errors import ConfigurationError
from phiguard.scan.validators import VALIDATORS


@dataclass(frozen=True)
class CompiledMatcher:
    """Ready-to-run matcher for one InfoType.

    Attributes:
        info_type: The InfoType this matcher belongs to.
        patterns: Compiled regexes.
        validator: Format validator, if configured.
        context: Compiled keyword regex, if keywords are configured.
    """

    info_type: InfoType
    patterns: tuple[re.Pattern[str], ...]
    validator: Callable[[str], bool] | None
    context: re.Pattern[str] | None


@lru_cache(maxsize=256)
def compile_matcher(info_type: InfoType) -> CompiledMatcher:
    """Compile an InfoType's patterns, validator and context keywords.

    Args:
        info_type: The InfoType to compile.

    Returns:
        A CompiledMatcher.

    Raises:
        ConfigurationError: If a pattern does not compile, lacks the
            configured group, or the validator name is unknown.
    """
    flags = info_type.regex_flags
    compiled: list[re.Pattern[str]] = []
    for pattern in info_type.patterns:
        try:
            regex = re.compile(pattern, flags)
        except re.error as e:
            raise ConfigurationError(
                f"InfoType {info_type.id}: pattern {pattern!r} does not compile: {e}",
                field=f"info_types.{info_type.id}.patterns",
            ) from e
        if info_type.group > regex.groups:
            raise ConfigurationError(
                f"InfoType {info_type.id}: pattern {pattern!r} has no group {info_type.group}",
                field=f"info_types.{info_type.id}.group",
            )
        compiled.append(regex)
    if not compiled:
        raise ConfigurationError(
            f"InfoType {info_type.id} has no patterns",
            field=f"info_types.{info_type.id}.patterns",
        )

    validator = None
    if info_type.validator is not None:
        try:
            validator = VALIDATORS[info_type.validator]
        except KeyError:
            raise ConfigurationError(
                f"InfoType {info_type.id}: unknown validator '{info_type.validator}'",
                field=f"info_types.{info_type.id}.validator",
            ) from None

    context = None
    if info_type.context_keywords:
        alternatives = "|".join(
            re.escape(kw) for kw in sorted(info_type.context_keywords, key=len, reverse=True)
        )
        context = re.compile(rf"(?<!\w)(?:{alternatives})(?!\w)", re.IGNORECASE)

    return CompiledMatcher(
        info_type=info_type,
        patterns=tuple(compiled),
        validator=validator,
        context=context,
    )


class InfoTypeRegistry:
    """Lookup over the InfoTypes of one configuration version."""

    def __init__(self, info_types: Iterable[InfoType], *, version: str = "unversioned") -> None:
        self._by_id: dict[str, InfoType] = {}
        for info_type in info_types:
            if info_type.id in self._by_id:
                raise ConfigurationError(
                    f"Duplicate InfoType id '{info_type.id}'", field="info_types"
                )
            self._by_id[info_type.id] = info_type
        self.version = version

    @classmethod
    def from_config(cls, config: EngineConfig) -> InfoTypeRegistry:
        return cls(config.info_types, version=config.version)

    def __iter__(self) -> Iterator[InfoType]:
        return iter(self._by_id.values())

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, info_type_id: object) -> bool:
        return info_type_id in self._by_id

    def get(self, info_type_id: str) -> InfoType:
        """Return the InfoType with *info_type_id*.

        Raises:
            ConfigurationError: If the id is not registered.
        """
        try:
            return self._by_id[info_type_id]
        except KeyError:
            raise ConfigurationError(
                f"InfoType '{info_type_id}' is not in registry version {self.version}",
                field="info_type",
            ) from None

    def subset(self, info_type_ids: Iterable[str]) -> InfoTypeRegistry:
        """A registry restricted to the given ids."""
        return InfoTypeRegistry(
            (self.get(i) for i in info_type_ids), version=self.version
        )

    def weights(self) -> dict[str, float]:
        return {t.id: t.base_risk_weight for t in self}

    def validate(self) -> None:
        """Compile every matcher, raising on the first broken one."""
        for info_type in self:
            compile_matcher(info_type)
