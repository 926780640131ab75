"""Tests for the InfoType registry and the scanner.

Covers:
  - Detection of Quebec identifiers, dates, contact and payment details
  - Likelihood from validators and context keywords
  - Positional data (codepoint, byte, line and column offsets)
  - Determinism and merge-order independence
  - Misconfigured InfoTypes and timeouts
"""

from __future__ import annotations

import threading
import time

import pytest

from phiguard.config.schema import EngineConfig, InfoType
from phiguard.errors import ConfigurationError, ScanTimeoutError
from phiguard.scan.models import InfoCategory, Likelihood
from phiguard.scan.registry import InfoTypeRegistry, compile_matcher
from phiguard.scan.scanner import merge_findings, scan, scan_info_type

from tests.conftest import CLINICAL_NOTE, RAMQ_NOTE


def _types(config: EngineConfig, *ids: str) -> list[InfoType]:
    return [config.info_type(i) for i in ids]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_from_config(self, config: EngineConfig) -> None:
        registry = InfoTypeRegistry.from_config(config)
        assert len(registry) == len(config.info_types)
        assert "QUEBEC_RAMQ_NUMBER" in registry
        assert registry.version == config.version

    def test_unknown_id(self, config: EngineConfig) -> None:
        registry = InfoTypeRegistry.from_config(config)
        with pytest.raises(ConfigurationError, match="NOT_A_TYPE"):
            registry.get("NOT_A_TYPE")

    def test_duplicate_ids_rejected(self, config: EngineConfig) -> None:
        ramq = config.info_type("QUEBEC_RAMQ_NUMBER")
        with pytest.raises(ConfigurationError, match="Duplicate"):
            InfoTypeRegistry([ramq, ramq])

    def test_subset_and_weights(self, config: EngineConfig) -> None:
        registry = InfoTypeRegistry.from_config(config).subset(["DATE", "QUEBEC_RAMQ_NUMBER"])
        assert len(registry) == 2
        assert registry.weights() == {"DATE": 1.25, "QUEBEC_RAMQ_NUMBER": 7.0}

    def test_every_builtin_type_compiles(self, config: EngineConfig) -> None:
        InfoTypeRegistry.from_config(config).validate()

    def test_broken_pattern_is_configuration_error(self) -> None:
        broken = InfoType.model_construct(
            id="BROKEN", category=InfoCategory.OTHER, patterns=("([",), group=0,
            ignore_case=False, validator=None, context_keywords=(),
        )
        with pytest.raises(ConfigurationError, match="does not compile"):
            compile_matcher(broken)

    def test_missing_group_is_configuration_error(self) -> None:
        broken = InfoType.model_construct(
            id="NO_GROUP", category=InfoCategory.OTHER, patterns=(r"\d+",), group=2,
            ignore_case=False, validator=None, context_keywords=(),
        )
        with pytest.raises(ConfigurationError, match="no group 2"):
            compile_matcher(broken)

    def test_unknown_validator_is_configuration_error(self) -> None:
        broken = InfoType.model_construct(
            id="BAD_VALIDATOR", category=InfoCategory.OTHER, patterns=(r"\d+",), group=0,
            ignore_case=False, validator="iban", context_keywords=(),
        )
        with pytest.raises(ConfigurationError, match="unknown validator"):
            compile_matcher(broken)


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class TestDetection:
    def test_ramq_and_date(self, config: EngineConfig) -> None:
        findings = scan(RAMQ_NOTE, config.info_types)
        assert [f.info_type for f in findings] == ["QUEBEC_RAMQ_NUMBER", "DATE"]

        ramq, dob = findings
        assert ramq.quote == "ABCD 1234 5678 09"
        assert (ramq.start, ramq.end) == (14, 31)
        assert ramq.quebec_specific is True
        assert ramq.category == InfoCategory.QUEBEC_IDENTIFIER
        assert dob.quote == "1990-01-01"
        assert dob.likelihood == Likelihood.LIKELY

    def test_keyword_raises_unvalidated_ramq(self, config: EngineConfig) -> None:
        """Month 34 fails validation; the RAMQ keyword lifts LIKELY to VERY_LIKELY."""
        ramq = config.info_type("QUEBEC_RAMQ_NUMBER")
        with_keyword = scan_info_type(RAMQ_NOTE, ramq)
        without_keyword = scan_info_type("Card: ABCD 1234 5678 09", ramq)
        assert with_keyword[0].likelihood == Likelihood.VERY_LIKELY
        assert without_keyword[0].likelihood == Likelihood.LIKELY
        assert with_keyword[0].confidence_score == 1.0
        assert without_keyword[0].confidence_score == 0.8

    def test_validator_upgrades_sin(self, config: EngineConfig) -> None:
        sin = config.info_type("CANADA_SOCIAL_INSURANCE_NUMBER")
        valid = scan_info_type("ref 130 692 544", sin)
        invalid = scan_info_type("ref 130 692 545", sin)
        assert valid[0].likelihood == Likelihood.VERY_LIKELY
        assert invalid[0].likelihood == Likelihood.POSSIBLE

    def test_min_likelihood_filters(self, config: EngineConfig) -> None:
        sin = config.info_type("CANADA_SOCIAL_INSURANCE_NUMBER")
        assert scan_info_type("ref 130 692 545", sin, min_likelihood=Likelihood.LIKELY) == []

    def test_unlikely_icd_code_dropped_without_context(self, config: EngineConfig) -> None:
        icd = config.info_type("ICD_10_CA_CODE")
        assert scan_info_type("Room F32 is free", icd) == []
        found = scan_info_type("Dx F32.1 confirmed", icd)
        assert found[0].likelihood == Likelihood.LIKELY

    def test_keyword_anchored_value_only(self, config: EngineConfig) -> None:
        mrn = config.info_type("MEDICAL_RECORD_NUMBER")
        found = scan_info_type("MRN: A1234567.", mrn)
        assert [f.quote for f in found] == ["A1234567"]

    def test_clinical_note(self, config: EngineConfig) -> None:
        types = {f.info_type for f in scan(CLINICAL_NOTE, config.info_types)}
        assert types == {
            "PERSON_NAME",
            "QUEBEC_RAMQ_NUMBER",
            "CANADA_SOCIAL_INSURANCE_NUMBER",
            "MEDICAL_RECORD_NUMBER",
            "PHONE_NUMBER",
            "EMAIL_ADDRESS",
            "ICD_10_CA_CODE",
            "DATE",
            "QUEBEC_POSTAL_CODE",
        }

    def test_no_findings(self, config: EngineConfig) -> None:
        assert scan("Routine follow-up, no concerns.", config.info_types) == []

    def test_credit_card(self, config: EngineConfig) -> None:
        found = scan("Carte de crédit 4111 1111 1111 1111", config.info_types)
        assert [(f.info_type, f.quote) for f in found] == [("CREDIT_CARD_NUMBER", "4111 1111 1111 1111")]
        assert found[0].category == InfoCategory.FINANCIAL_INFO
        assert found[0].likelihood == Likelihood.VERY_LIKELY

    def test_credit_card_needs_luhn(self, config: EngineConfig) -> None:
        card = config.info_type("CREDIT_CARD_NUMBER")
        assert scan_info_type("ref 4111 1111 1111 1112", card) == []
        assert len(scan_info_type("ref 4111-1111-1111-1111", card)) == 1
        assert len(scan_info_type("ref 4111111111111111", card)) == 1

    def test_multiline_anchors_each_line(self) -> None:
        per_line = InfoType(id="ID", category=InfoCategory.OTHER, patterns=(r"^ID\d{3}",), multiline=True)
        first_only = InfoType(id="ID", category=InfoCategory.OTHER, patterns=(r"^ID\d{3}",))
        text = "ID123\nID456"
        assert [f.quote for f in scan_info_type(text, per_line)] == ["ID123", "ID456"]
        assert [f.quote for f in scan_info_type(text, first_only)] == ["ID123"]


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------


class TestPositions:
    def test_byte_offsets_differ_for_accented_text(self, config: EngineConfig) -> None:
        text = "Élise tél 514-555-0199"
        found = scan_info_type(text, config.info_type("PHONE_NUMBER"))
        assert len(found) == 1
        span = found[0].span
        assert (span.start, span.end) == (10, 22)
        assert (span.byte_start, span.byte_end) == (12, 24)
        assert text.encode("utf-8")[span.byte_start:span.byte_end].decode("utf-8") == "514-555-0199"
        assert found[0].likelihood == Likelihood.VERY_LIKELY

    def test_line_and_column(self, config: EngineConfig) -> None:
        found = scan_info_type("line one\nMRN: 12345678", config.info_type("MEDICAL_RECORD_NUMBER"))
        assert found[0].span.line == 2
        assert found[0].span.column == 6

    def test_spans_within_one_type_never_overlap(self) -> None:
        digits = InfoType(
            id="DIGITS", category=InfoCategory.OTHER, patterns=(r"\d{3}", r"\d{5}"),
        )
        found = scan_info_type("12345", digits)
        assert [(f.start, f.end) for f in found] == [(0, 5)]

    def test_persisted_form_masks_quote(self, config: EngineConfig) -> None:
        finding = scan(RAMQ_NOTE, config.info_types)[0]
        data = finding.to_dict()
        assert data["quote"] == "**** **** **** **"
        assert "ABCD" not in str(data)


# ---------------------------------------------------------------------------
# Determinism and concurrency
# ---------------------------------------------------------------------------


class TestDeterminism:
    def test_same_input_same_findings(self, config: EngineConfig) -> None:
        assert scan(CLINICAL_NOTE, config.info_types) == scan(CLINICAL_NOTE, config.info_types)

    def test_type_order_does_not_matter(self, config: EngineConfig) -> None:
        forward = scan(CLINICAL_NOTE, config.info_types)
        backward = scan(CLINICAL_NOTE, list(reversed(config.info_types)))
        assert forward == backward

    def test_merge_order_does_not_matter(self, config: EngineConfig) -> None:
        groups = [scan_info_type(CLINICAL_NOTE, t) for t in config.info_types]
        assert merge_findings(groups) == merge_findings(reversed(groups))

    def test_merged_output_sorted(self, config: EngineConfig) -> None:
        findings = scan(CLINICAL_NOTE, config.info_types)
        assert findings == sorted(findings, key=lambda f: (f.start, f.end, f.info_type))

    def test_parallel_matches_sequential(self, config: EngineConfig) -> None:
        sequential = scan(CLINICAL_NOTE, config.info_types, workers=1)
        parallel = scan(CLINICAL_NOTE, config.info_types, workers=4, timeout=30)
        assert parallel == sequential


class TestFailures:
    def test_broken_type_fails_whole_scan(self, config: EngineConfig) -> None:
        broken = InfoType.model_construct(
            id="BROKEN", category=InfoCategory.OTHER, patterns=("([",), group=0,
            ignore_case=False, validator=None, context_keywords=(),
        )
        with pytest.raises(ConfigurationError):
            scan(RAMQ_NOTE, [*config.info_types, broken])

    def test_expired_deadline(self, config: EngineConfig) -> None:
        with pytest.raises(ScanTimeoutError):
            scan(RAMQ_NOTE, config.info_types, timeout=-1.0)

    def test_parallel_failure_does_not_wait_for_slow_types(
        self, config: EngineConfig, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        release = threading.Event()
        real = scan_info_type

        def slow_or_broken(text: str, info_type: InfoType, **kwargs: object) -> list:
            if info_type.id == "CANADA_SOCIAL_INSURANCE_NUMBER":
                release.wait(10)
            if info_type.id == "QUEBEC_RAMQ_NUMBER":
                raise ConfigurationError("matcher failed", field="patterns")
            return real(text, info_type, **kwargs)  # type: ignore[arg-type]

        monkeypatch.setattr("phiguard.scan.scanner.scan_info_type", slow_or_broken)
        types = _types(config, "CANADA_SOCIAL_INSURANCE_NUMBER", "QUEBEC_RAMQ_NUMBER")
        started = time.monotonic()
        try:
            with pytest.raises(ConfigurationError, match="matcher failed"):
                scan(RAMQ_NOTE, types, workers=4, timeout=30)
            assert time.monotonic() - started < 5
        finally:
            release.set()
