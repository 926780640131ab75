"""Tests for configuration loading, validation, versioning and settings."""

from __future__ import annotations

import re
from pathlib import Path

import pytest
import yaml

from phiguard.config.loader import load_config, load_default_config, parse_config, validate_config
from phiguard.config.schema import POLICY_PRESETS, ConfigStatus, EngineConfig, InfoType, TransformPolicy
from phiguard.config.settings import Settings
from phiguard.config.versions import ConfigVersionStore
from phiguard.errors import ConfigurationError
from phiguard.transform.models import TransformOperation

MINIMAL_YAML = """\
version: "test-1"
info_types:
  - id: DIGITS
    category: other
    patterns: ['\\d{4}']
"""

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _minimal(**overrides: object) -> dict:
    data: dict = yaml.safe_load(MINIMAL_YAML)
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoader:
    def test_builtin_config(self) -> None:
        config = load_default_config()
        assert config.status == ConfigStatus.APPROVED
        assert config.approved_by == "privacy-officer"
        assert config.info_type("QUEBEC_RAMQ_NUMBER").quebec_specific is True
        assert config.transform.operation_for("DATE") == TransformOperation.DATE_SHIFT
        assert config.transform.operation_for("MEDICAL_RECORD_NUMBER") == TransformOperation.REDACT

    def test_minimal_defaults(self) -> None:
        config = parse_config(MINIMAL_YAML)
        assert config.status == ConfigStatus.DRAFT
        assert config.risk.thresholds.high == 8.0
        assert config.limits.timeout_seconds == 30.0

    def test_load_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "engine.yaml"
        path.write_text(MINIMAL_YAML, encoding="utf-8")
        assert load_config(path).version == "test-1"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self) -> None:
        with pytest.raises(ConfigurationError, match="Failed to parse YAML"):
            parse_config("version: [unclosed")

    def test_empty_document(self) -> None:
        with pytest.raises(ConfigurationError, match="empty"):
            parse_config("")

    def test_not_a_mapping(self) -> None:
        with pytest.raises(ConfigurationError, match="mapping"):
            parse_config("- just\n- a list\n")

    def test_missing_version_names_field(self) -> None:
        data = _minimal()
        del data["version"]
        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(data)
        assert exc_info.value.field == "version"
        assert exc_info.value.details


# ---------------------------------------------------------------------------
# Schema rules
# ---------------------------------------------------------------------------


class TestSchema:
    def test_pattern_must_compile(self) -> None:
        data = _minimal(info_types=[{"id": "BAD", "category": "other", "patterns": ["(["]}])
        with pytest.raises(ConfigurationError, match="does not compile"):
            validate_config(data)

    def test_group_must_exist(self) -> None:
        data = _minimal(info_types=[{"id": "BAD", "category": "other", "patterns": ["\\d+"], "group": 1}])
        with pytest.raises(ConfigurationError, match="group"):
            validate_config(data)

    def test_empty_match_rejected(self) -> None:
        data = _minimal(info_types=[{"id": "BAD", "category": "other", "patterns": ["\\d*"]}])
        with pytest.raises(ConfigurationError, match="empty string"):
            validate_config(data)

    def test_unknown_validator(self) -> None:
        data = _minimal(info_types=[
            {"id": "BAD", "category": "other", "patterns": ["\\d+"], "validator": "iban"}
        ])
        with pytest.raises(ConfigurationError, match="Unknown validator"):
            validate_config(data)

    def test_id_format(self) -> None:
        data = _minimal(info_types=[{"id": "lower", "category": "other", "patterns": ["\\d+"]}])
        with pytest.raises(ConfigurationError, match="UPPER_SNAKE_CASE"):
            validate_config(data)

    def test_duplicate_ids(self) -> None:
        entry = {"id": "DIGITS", "category": "other", "patterns": ["\\d+"]}
        with pytest.raises(ConfigurationError, match="Duplicate"):
            validate_config(_minimal(info_types=[entry, entry]))

    def test_thresholds_must_increase(self) -> None:
        data = _minimal(risk={"thresholds": {"low": 6, "medium": 5, "high": 8}})
        with pytest.raises(ConfigurationError, match="thresholds"):
            validate_config(data)

    def test_transform_references_known_types(self) -> None:
        data = _minimal(transform={"operations": {"EMAIL_ADDRESS": "HASH"}})
        with pytest.raises(ConfigurationError, match="EMAIL_ADDRESS"):
            validate_config(data)

    def test_approved_needs_approver(self) -> None:
        with pytest.raises(ConfigurationError, match="approved_by"):
            validate_config(_minimal(status="approved"))

    def test_mask_char_not_alphanumeric(self) -> None:
        with pytest.raises(ValueError):
            TransformPolicy(mask_char="X")

    def test_redact_marker_without_digits(self) -> None:
        with pytest.raises(ValueError):
            TransformPolicy(redact_marker="[REDACTED-1]")

    def test_reversible_needs_key_id(self) -> None:
        with pytest.raises(ValueError):
            TransformPolicy(reversible=True)

    def test_frozen(self) -> None:
        config = parse_config(MINIMAL_YAML)
        with pytest.raises(ValueError):
            config.version = "other"  # type: ignore[misc]

    def test_regex_flags(self) -> None:
        plain = InfoType(id="ID", category="other", patterns=(r"ID\d",))
        both = InfoType(id="ID", category="other", patterns=(r"ID\d",), ignore_case=True, multiline=True)
        assert plain.regex_flags == 0
        assert both.regex_flags == re.IGNORECASE | re.MULTILINE


# ---------------------------------------------------------------------------
# Transform presets
# ---------------------------------------------------------------------------


class TestPresets:
    @pytest.mark.parametrize("name", sorted(POLICY_PRESETS))
    def test_every_preset_builds(self, name: str) -> None:
        policy = TransformPolicy.from_preset(name)
        assert policy.preset == name
        assert policy.covers("QUEBEC_RAMQ_NUMBER")

    def test_minimal_redaction_keeps_names(self) -> None:
        policy = TransformPolicy.from_preset("minimal_redaction")
        assert not policy.covers("PERSON_NAME")
        assert policy.operation_for("CREDIT_CARD_NUMBER") == TransformOperation.REDACT

    def test_full_anonymous_redacts_everything(self) -> None:
        policy = TransformPolicy.from_preset("full_anonymous")
        assert policy.operations == {}
        assert policy.operation_for("DATE") == TransformOperation.REDACT
        assert not policy.uses(TransformOperation.HASH)

    def test_overrides_merge_per_info_type(self) -> None:
        policy = TransformPolicy.from_preset("pipeda", operations={"DATE": "REDACT"})
        assert policy.operation_for("DATE") == TransformOperation.REDACT
        assert policy.operation_for("PERSON_NAME") == TransformOperation.REDACT
        assert policy.operation_for("QUEBEC_POSTAL_CODE") == TransformOperation.NONE

    def test_unknown_preset(self) -> None:
        with pytest.raises(ValueError, match="unknown transform preset"):
            TransformPolicy.from_preset("strict")

    def test_preset_in_config_file(self) -> None:
        config = validate_config(_minimal(transform={"preset": "minimal_redaction"}))
        assert config.transform.preset == "minimal_redaction"
        assert not config.transform.covers("DIGITS")

    def test_law25_matches_builtin_masks(self) -> None:
        builtin = load_default_config().transform
        law25 = TransformPolicy.from_preset("law25")
        for info_type, operation in law25.operations.items():
            assert builtin.operation_for(info_type) == operation


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


class TestVersions:
    def _draft(self, version: str = "v1") -> EngineConfig:
        return validate_config(_minimal(version=version))

    def test_no_active_version(self) -> None:
        store = ConfigVersionStore()
        store.publish(self._draft(), changed_by="dev")
        with pytest.raises(ConfigurationError, match="No active"):
            store.active()

    def test_approve_activates(self) -> None:
        store = ConfigVersionStore()
        store.publish(self._draft(), changed_by="dev")
        approved = store.approve("v1", approver="privacy-officer")
        assert approved.status == ConfigStatus.APPROVED
        assert store.active() == approved

    def test_latest_approval_wins(self) -> None:
        store = ConfigVersionStore()
        store.publish(self._draft("v1"), changed_by="dev")
        store.publish(self._draft("v2"), changed_by="dev")
        store.approve("v2", approver="po")
        store.approve("v1", approver="po")
        assert store.active().version == "v1"

    def test_retire_falls_back(self) -> None:
        store = ConfigVersionStore()
        store.publish(self._draft("v1"), changed_by="dev")
        store.publish(self._draft("v2"), changed_by="dev")
        store.approve("v1", approver="po")
        store.approve("v2", approver="po")
        store.retire("v2", changed_by="po", reason="bad pattern")
        assert store.active().version == "v1"
        assert store.get("v2").status == ConfigStatus.RETIRED

    def test_retired_cannot_be_approved(self) -> None:
        store = ConfigVersionStore()
        store.publish(self._draft(), changed_by="dev")
        store.retire("v1", changed_by="po")
        with pytest.raises(ConfigurationError, match="retired"):
            store.approve("v1", approver="po")

    def test_versions_are_never_overwritten(self) -> None:
        store = ConfigVersionStore()
        store.publish(self._draft(), changed_by="dev")
        with pytest.raises(ConfigurationError, match="already exists"):
            store.publish(self._draft(), changed_by="dev")

    def test_history(self) -> None:
        store = ConfigVersionStore()
        store.publish(self._draft(), changed_by="dev")
        store.approve("v1", approver="po", reason="reviewed")
        assert [(c.status, c.changed_by) for c in store.history] == [
            (ConfigStatus.DRAFT, "dev"),
            (ConfigStatus.APPROVED, "po"),
        ]

    def test_unknown_version(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown configuration version"):
            ConfigVersionStore().get("missing")


class TestSettings:
    def test_environment(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("PHIGUARD_HASH_SALT", "pepper")
        monkeypatch.setenv("PHIGUARD_LEDGER_PATH", str(tmp_path / "ledger.jsonl"))
        monkeypatch.setenv("PHIGUARD_LOG_FORMAT", "json")
        settings = Settings()
        assert settings.hash_salt.get_secret_value() == "pepper"
        assert settings.ledger_path == tmp_path / "ledger.jsonl"
        assert settings.log_format == "json"
        assert "pepper" not in repr(settings)

    def test_log_format_checked(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PHIGUARD_LOG_FORMAT", "xml")
        with pytest.raises(ValueError):
            Settings()
