"""Pydantic v2 models for the engine configuration YAML.

Defines the InfoType registry entries, risk thresholds and override rules,
the transformation policy, retention rules and processing limits.  All
models are frozen: a configuration is never edited in place, a change is
published as a new version.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from phiguard.classify.models import RiskTier
from phiguard.scan.models import ContentType, InfoCategory, Likelihood
from phiguard.scan.validators import VALIDATORS
from phiguard.transform.models import TransformOperation

_INFO_TYPE_ID_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")


class ConfigStatus(str, Enum):
    """Lifecycle state of a configuration version."""

    DRAFT = "draft"
    APPROVED = "approved"
    RETIRED = "retired"


class InfoType(BaseModel):
    """A detectable class of sensitive data.

    ``patterns`` are regular expressions; ``group`` selects the capture
    group holding the sensitive value so keyword-anchored patterns only
    report the value itself.  A bare match yields ``base_likelihood``; a
    match the named ``validator`` accepts yields ``validated_likelihood``;
    any ``context_keywords`` found within ``context_window`` characters
    before the match raise the likelihood by ``context_boost`` levels.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    category: InfoCategory
    patterns: tuple[str, ...] = Field(min_length=1)
    group: int = Field(default=0, ge=0)
    ignore_case: bool = False
    multiline: bool = False
    validator: str | None = None
    base_likelihood: Likelihood = Likelihood.POSSIBLE
    validated_likelihood: Likelihood = Likelihood.VERY_LIKELY
    context_keywords: tuple[str, ...] = ()
    context_window: int = Field(default=40, ge=0)
    context_boost: int = Field(default=1, ge=0, le=4)
    base_risk_weight: float = Field(default=1.0, ge=0.0, le=10.0)
    quebec_specific: bool = False
    surrogate: str | None = Field(
        default=None,
        description="Placeholder written by REPLACE. Must itself match the "
        "InfoType format so downstream validators keep working.",
    )

    @field_validator("id")
    @classmethod
    def check_id(cls, value: str) -> str:
        if not _INFO_TYPE_ID_RE.match(value):
            msg = f"InfoType id '{value}' must be UPPER_SNAKE_CASE"
            raise ValueError(msg)
        return value

    @field_validator("validator")
    @classmethod
    def check_validator(cls, value: str | None) -> str | None:
        if value is not None and value not in VALIDATORS:
            available = ", ".join(sorted(VALIDATORS))
            msg = f"Unknown validator '{value}'. Available validators: {available}"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def check_patterns(self) -> InfoType:
        """Every pattern must compile and expose the configured group."""
        for pattern in self.patterns:
            try:
                compiled = re.compile(pattern, self.regex_flags)
            except re.error as e:
                msg = f"Pattern {pattern!r} does not compile: {e}"
                raise ValueError(msg) from e
            if self.group > compiled.groups:
                msg = (
                    f"Pattern {pattern!r} has {compiled.groups} group(s), "
                    f"but group {self.group} is configured"
                )
                raise ValueError(msg)
            if compiled.match(""):
                msg = f"Pattern {pattern!r} matches the empty string"
                raise ValueError(msg)
        return self

    @property
    def regex_flags(self) -> int:
        """``re`` flags selected by ``ignore_case`` and ``multiline``."""
        flags = re.IGNORECASE if self.ignore_case else 0
        if self.multiline:
            flags |= re.MULTILINE
        return flags


class RiskThresholds(BaseModel):
    """Upper score bounds for each non-safe tier.

    A score of exactly 0 is ``safe``; ``(0, low]`` is ``low_risk``,
    ``(low, medium]`` is ``medium_risk``, ``(medium, high]`` is
    ``high_risk`` and anything above ``high`` is ``critical_risk``.
    """

    model_config = ConfigDict(frozen=True)

    low: float = 2.0
    medium: float = 5.0
    high: float = 8.0

    @model_validator(mode="after")
    def strictly_increasing(self) -> RiskThresholds:
        if not (0.0 < self.low < self.medium < self.high <= 10.0):
            msg = (
                "Risk thresholds must satisfy 0 < low < medium < high <= 10, "
                f"got low={self.low}, medium={self.medium}, high={self.high}"
            )
            raise ValueError(msg)
        return self


class OverrideRule(BaseModel):
    """Regulatory rule that forces a minimum tier.

    Fires when any finding of the given ``category`` (or ``info_type``)
    has at least ``min_likelihood``.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    category: InfoCategory | None = None
    info_type: str | None = None
    min_likelihood: Likelihood = Likelihood.LIKELY
    min_tier: RiskTier = RiskTier.HIGH_RISK

    @model_validator(mode="after")
    def has_target(self) -> OverrideRule:
        if self.category is None and self.info_type is None:
            msg = f"Override rule '{self.code}' must name a category or an info_type"
            raise ValueError(msg)
        return self


def _default_overrides() -> tuple[OverrideRule, ...]:
    return (
        OverrideRule(
            code="quebec_identifier_override",
            category=InfoCategory.QUEBEC_IDENTIFIER,
            min_likelihood=Likelihood.LIKELY,
            min_tier=RiskTier.HIGH_RISK,
        ),
    )


class RiskConfig(BaseModel):
    """Classifier configuration."""

    model_config = ConfigDict(frozen=True)

    thresholds: RiskThresholds = Field(default_factory=RiskThresholds)
    overrides: tuple[OverrideRule, ...] = Field(default_factory=_default_overrides)
    max_score: float = Field(default=10.0, gt=0.0)


_R = TransformOperation.REDACT
_M = TransformOperation.MASK
_N = TransformOperation.NONE

#: Named compliance levels for TransformPolicy.  ``law25`` is the built-in
#: policy without surrogates; ``minimal_redaction`` is for internal use only.
POLICY_PRESETS: dict[str, dict[str, Any]] = {
    "law25": {
        "default_operation": _R,
        "operations": {
            "QUEBEC_RAMQ_NUMBER": _M,
            "CANADA_SOCIAL_INSURANCE_NUMBER": _M,
            "QUEBEC_DRIVER_LICENSE": _M,
            "CREDIT_CARD_NUMBER": _M,
            "EMAIL_ADDRESS": TransformOperation.HASH,
            "DATE": TransformOperation.DATE_SHIFT,
        },
    },
    "pipeda": {
        "default_operation": _N,
        "operations": {
            "QUEBEC_RAMQ_NUMBER": _R,
            "CANADA_SOCIAL_INSURANCE_NUMBER": _R,
            "PERSON_NAME": _R,
            "PHONE_NUMBER": _R,
            "EMAIL_ADDRESS": _R,
        },
    },
    "full_anonymous": {
        "default_operation": _R,
        "mask_keep_leading": 0,
        "mask_keep_trailing": 0,
    },
    "minimal_redaction": {
        "default_operation": _N,
        "operations": {
            "QUEBEC_RAMQ_NUMBER": _R,
            "CANADA_SOCIAL_INSURANCE_NUMBER": _R,
            "CREDIT_CARD_NUMBER": _R,
        },
    },
}


class TransformPolicy(BaseModel):
    """Which operation applies to which InfoType, and how.

    Attributes:
        default_operation: Operation for InfoTypes not listed in ``operations``.
        operations: Per-InfoType operation.
        mask_char: Character written over masked characters.
        mask_preserve_separators: Keep spaces, dashes and punctuation unmasked.
        mask_keep_leading: Alphanumerics left visible at the start.
        mask_keep_trailing: Alphanumerics left visible at the end.
        mask_min_fraction: Minimum share of alphanumerics always masked,
            whatever the keep settings ask for.
        redact_marker: Template for REDACT; ``{info_type}`` is substituted.
        date_shift_min_days: Smallest absolute shift for DATE_SHIFT.
        date_shift_max_days: Largest absolute shift for DATE_SHIFT.
        reversible: Encrypt originals so authorized roles can reverse.
        reversal_key_id: KMS key id for reversible transforms.
        authorized_roles: Roles allowed to reverse.
        allow_irreversible_fallback: When the KMS fails, produce an
            irreversible record instead of failing the transform.
        preset: Name of the compliance level the policy started from.

    A mapping may name a ``preset`` (see ``POLICY_PRESETS``); its settings
    are the starting point and the remaining keys override them, with
    ``operations`` merged per InfoType.
    """

    model_config = ConfigDict(frozen=True)

    default_operation: TransformOperation = TransformOperation.REDACT
    operations: dict[str, TransformOperation] = Field(default_factory=dict)
    mask_char: str = Field(default="*", min_length=1, max_length=1)
    mask_preserve_separators: bool = True
    mask_keep_leading: int = Field(default=0, ge=0)
    mask_keep_trailing: int = Field(default=0, ge=0)
    mask_min_fraction: float = Field(default=0.6, gt=0.0, le=1.0)
    redact_marker: str = "[{info_type}]"
    date_shift_min_days: int = Field(default=1, ge=1)
    date_shift_max_days: int = Field(default=365, ge=1)
    reversible: bool = False
    reversal_key_id: str | None = None
    authorized_roles: tuple[str, ...] = ()
    allow_irreversible_fallback: bool = False
    preset: str | None = None

    @model_validator(mode="before")
    @classmethod
    def expand_preset(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("preset") is None:
            return data
        data = dict(data)
        name = data["preset"]
        if name not in POLICY_PRESETS:
            msg = f"unknown transform preset {name!r}; expected one of {sorted(POLICY_PRESETS)}"
            raise ValueError(msg)
        base = dict(POLICY_PRESETS[name])
        operations = {**base.get("operations", {}), **(data.pop("operations", None) or {})}
        return {**base, **data, "operations": operations}

    @field_validator("mask_char")
    @classmethod
    def mask_char_not_alphanumeric(cls, value: str) -> str:
        if value.isalnum():
            msg = f"mask_char must not be alphanumeric, got {value!r}"
            raise ValueError(msg)
        return value

    @field_validator("redact_marker")
    @classmethod
    def marker_has_no_digits(cls, value: str) -> str:
        if any(c.isdigit() for c in value):
            msg = f"redact_marker must not contain digits, got {value!r}"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def check_shift_range(self) -> TransformPolicy:
        if self.date_shift_min_days > self.date_shift_max_days:
            msg = (
                f"date_shift_min_days ({self.date_shift_min_days}) exceeds "
                f"date_shift_max_days ({self.date_shift_max_days})"
            )
            raise ValueError(msg)
        if self.reversible and not self.reversal_key_id:
            msg = "reversible transforms require a reversal_key_id"
            raise ValueError(msg)
        return self

    def operation_for(self, info_type: str) -> TransformOperation:
        return self.operations.get(info_type, self.default_operation)

    def covers(self, info_type: str) -> bool:
        """True if findings of *info_type* are rewritten by this policy."""
        return self.operation_for(info_type) != TransformOperation.NONE

    def uses(self, operation: TransformOperation) -> bool:
        return self.default_operation == operation or operation in self.operations.values()

    @classmethod
    def from_preset(cls, name: str, **overrides: Any) -> TransformPolicy:
        """Policy for the named compliance level, e.g. ``"pipeda"``."""
        return cls.model_validate({"preset": name, **overrides})


class RetentionPolicy(BaseModel):
    """How long ledger entries are retained before disposal."""

    model_config = ConfigDict(frozen=True)

    clinical_days: int = Field(default=2557, ge=1)
    non_phi_days: int = Field(default=365, ge=1)
    content_type_days: dict[ContentType, int] = Field(default_factory=dict)
    disposal_record_days: int = Field(default=2557, ge=1)


class Limits(BaseModel):
    """Processing limits per request."""

    model_config = ConfigDict(frozen=True)

    max_findings_per_request: int = Field(default=1000, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_content_length: int = Field(default=1_000_000, ge=1)
    scan_workers: int = Field(
        default=1,
        ge=1,
        description="Threads used to run InfoType matchers in parallel.",
    )


class EngineConfig(BaseModel):
    """Top-level configuration document.

    Only ``version`` and ``info_types`` are required; every other section
    has defaults.
    """

    model_config = ConfigDict(frozen=True)

    version: str = Field(min_length=1)
    status: ConfigStatus = ConfigStatus.DRAFT
    approved_by: str | None = None
    description: str = ""
    min_likelihood: Likelihood = Field(
        default=Likelihood.POSSIBLE,
        description="Findings below this likelihood are discarded.",
    )
    info_types: tuple[InfoType, ...] = Field(min_length=1)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    transform: TransformPolicy = Field(default_factory=TransformPolicy)
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    limits: Limits = Field(default_factory=Limits)

    @model_validator(mode="after")
    def check_references(self) -> EngineConfig:
        """InfoType ids are unique and every reference to one resolves."""
        ids: set[str] = set()
        for info_type in self.info_types:
            if info_type.id in ids:
                msg = f"Duplicate InfoType id '{info_type.id}'"
                raise ValueError(msg)
            ids.add(info_type.id)

        preset = POLICY_PRESETS.get(self.transform.preset or "", {})
        unknown = sorted(set(self.transform.operations) - ids - set(preset.get("operations", {})))
        if unknown:
            msg = f"Transform policy references unknown InfoType(s): {', '.join(unknown)}"
            raise ValueError(msg)

        for rule in self.risk.overrides:
            if rule.info_type is not None and rule.info_type not in ids:
                msg = f"Override rule '{rule.code}' references unknown InfoType '{rule.info_type}'"
                raise ValueError(msg)

        if self.status == ConfigStatus.APPROVED and not self.approved_by:
            msg = "An approved configuration must name approved_by"
            raise ValueError(msg)
        return self

    def info_type(self, info_type_id: str) -> InfoType:
        for info_type in self.info_types:
            if info_type.id == info_type_id:
                return info_type
        raise KeyError(info_type_id)

    def summary(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "status": self.status.value,
            "approved_by": self.approved_by,
            "info_types": [t.id for t in self.info_types],
        }
