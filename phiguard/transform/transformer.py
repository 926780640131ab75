"""Transformer — produces de-identified text from findings and a policy.

Findings that overlap are resolved first: the highest-confidence finding
of each overlapping cluster wins and its operation is applied over the
whole cluster, so no fragment of a losing finding survives.  Replacement
strings are then written right-to-left by descending span start, keeping
the offsets of earlier spans valid while the string is rewritten.  Given
the InfoTypes to check, the output is re-scanned and any match created by
the rewrite itself is folded back in, up to ``MAX_PASSES`` times.

When a reversible transform is requested, the original span values are
serialized, encrypted with the key named by ``reversal_key_id`` and kept
in the DeidentificationRecord as ciphertext.  ``reverse()`` restores the
original text for principals holding one of the ``authorized_roles``.
"""

from __future__ import annotations

import json
import logging
import random
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable, Mapping, Sequence

from phiguard.config.schema import InfoType, TransformPolicy
from phiguard.errors import (
    AuthorizationError,
    ConfigurationError,
    DeidentificationError,
    KeyManagementError,
    ValidationError,
)
from phiguard.scan.models import Finding, Likelihood, content_sha256
from phiguard.scan.scanner import OffsetIndex, scan
from phiguard.transform.keys import KeyManagementService
from phiguard.transform.models import DeidentificationRecord, TransformedSpan, TransformOperation
from phiguard.transform.operations import DateShifter, hash_value, mask, redact

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "__unidentified__"
MAX_PASSES = 4


@dataclass(frozen=True)
class _Edit:
    """One planned rewrite of ``text[start:end]``."""

    start: int
    end: int
    info_type: str
    operation: TransformOperation
    replacement: str


# -----------------------------------------------------------------------
# Overlap resolution
# -----------------------------------------------------------------------


def _winner_key(finding: Finding) -> tuple[float, int, int, str]:
    return (-finding.confidence_score, -(finding.end - finding.start), finding.start, finding.info_type)


def resolve_overlaps(findings: Iterable[Finding], policy: TransformPolicy) -> list[tuple[Finding, int, int]]:
    """Group overlapping covered findings and pick one winner per group.

    Args:
        findings: Findings in any order.
        policy: Findings whose operation is NONE are ignored.

    Returns:
        ``(winner, start, end)`` per cluster, ordered by start, where
        ``start``/``end`` is the union span of the cluster.
    """
    covered = sorted((f for f in findings if policy.covers(f.info_type)), key=Finding.sort_key)
    clusters: list[list[Finding]] = []
    cluster_end = -1
    for finding in covered:
        if clusters and finding.start < cluster_end:
            clusters[-1].append(finding)
            cluster_end = max(cluster_end, finding.end)
        else:
            clusters.append([finding])
            cluster_end = finding.end

    resolved = []
    for cluster in clusters:
        winner = min(cluster, key=_winner_key)
        resolved.append((winner, cluster[0].start, max(f.end for f in cluster)))
    return resolved


# -----------------------------------------------------------------------
# Transformation
# -----------------------------------------------------------------------


def transform(
    text: str,
    findings: Sequence[Finding],
    policy: TransformPolicy,
    *,
    scan_id: str = "",
    subject_id: str | None = None,
    hash_salt: bytes | str = b"",
    surrogates: Mapping[str, str] | None = None,
    reversible: bool | None = None,
    kms: KeyManagementService | None = None,
    rng: random.Random | None = None,
    now: datetime | None = None,
    info_types: Iterable[InfoType] | None = None,
    min_likelihood: Likelihood = Likelihood.POSSIBLE,
    max_passes: int = MAX_PASSES,
) -> tuple[str, DeidentificationRecord]:
    """De-identify *text*.

    Rewriting can make new matches appear where a replacement now touches
    neighbouring text (``[PHONE_NUMBER]Patiente: ...``).  When *info_types*
    is given, the output is re-scanned for the covered InfoTypes after each
    rewrite; every new match is mapped back onto *text*, added to the
    findings and the rewrite repeated until the output is clean.

    Args:
        text: The original text the findings were located in.
        findings: Findings from scanning *text*.
        policy: Operation per InfoType and operation parameters.
        scan_id: Owning ScanRequest id.
        subject_id: Subject the dates refer to; one offset per subject.
        hash_salt: Per-deployment salt for HASH.
        surrogates: REPLACE placeholder per InfoType id.
        reversible: Override ``policy.reversible`` for this call.
        kms: Key store for reversible transforms.
        rng: Random source for DATE_SHIFT offsets.
        now: Record timestamp.
        info_types: InfoTypes to re-scan the output with.
        min_likelihood: Floor for re-scan matches.
        max_passes: Upper bound on rewrite passes.

    Returns:
        ``(deidentified_text, record)``.

    Raises:
        ConfigurationError: If a reversible transform has no key id or KMS,
            or HASH is applied without a salt.
        DeidentificationError: If covered PHI is still found in the output
            after *max_passes* rewrites.
        KeyManagementError: If the key store fails and the policy does
            not allow an irreversible fallback.
    """
    salt = hash_salt.encode("utf-8") if isinstance(hash_salt, str) else hash_salt
    surrogates = surrogates or {}
    shifter = DateShifter(policy.date_shift_min_days, policy.date_shift_max_days, rng)
    subject = subject_id or DEFAULT_SUBJECT
    covered = [t for t in info_types if policy.covers(t.id)] if info_types is not None else []
    index = OffsetIndex(text)

    working = list(findings)
    for attempt in range(1, max(max_passes, 1) + 1):
        warnings: list[str] = []
        edits = _plan(text, working, policy, salt, surrogates, shifter, subject, warnings)
        output = text
        for edit in sorted(edits, key=lambda e: e.start, reverse=True):
            output = output[:edit.start] + edit.replacement + output[edit.end:]
        spans = _spans(edits)

        leaks = _leaks(output, spans, covered, min_likelihood)
        if not leaks:
            break
        logger.debug("Pass %d over %s left %d matches in the output", attempt, scan_id, len(leaks))
        for leak in leaks:
            start = _to_source(leak.start, spans, is_end=False)
            end = _to_source(leak.end, spans, is_end=True)
            working.append(replace(leak, span=index.span(start, end), quote=text[start:end], scan_id=scan_id))
    else:
        types = sorted({f.info_type for f in leaks})
        raise DeidentificationError(
            f"Covered PHI remains after {max_passes} de-identification passes: {', '.join(types)}",
            scan_id=scan_id or None,
            details=[{"info_type": f.info_type, "start": f.start, "end": f.end} for f in leaks],
        )

    wants_reversal = policy.reversible if reversible is None else reversible
    encrypted: bytes | None = None
    key_id: str | None = None
    if wants_reversal and edits:
        key_id = policy.reversal_key_id
        if not key_id:
            raise ConfigurationError(
                "Reversible transform requested but the policy has no reversal_key_id",
                field="transform.reversal_key_id",
            )
        if kms is None:
            raise ConfigurationError(
                "Reversible transform requested but no key management service is configured",
                field="kms",
            )
        originals = [
            {"output_start": s.output_start, "output_end": s.output_end, "value": text[s.source_start:s.source_end]}
            for s in spans
        ]
        try:
            key = kms.get_key(key_id)
            encrypted = kms.encrypt(key, json.dumps(originals, ensure_ascii=False).encode("utf-8"))
        except KeyManagementError as e:
            if not policy.allow_irreversible_fallback:
                raise KeyManagementError(str(e), scan_id=scan_id or None) from e
            logger.warning("Reversal key %s unavailable for %s; falling back to irreversible", key_id, scan_id)
            warnings.append("reversal_key_unavailable: record is irreversible")
            encrypted = None
            key_id = None

    rewritten = sum(e.end - e.start for e in edits)
    record = DeidentificationRecord(
        scan_id=scan_id,
        original_hash=content_sha256(text),
        deidentified_hash=content_sha256(output),
        original_length=len(text),
        deidentified_length=len(output),
        spans=tuple(spans),
        operation_counts=dict(sorted(Counter(e.operation.value for e in edits).items())),
        reversible=encrypted is not None,
        reversal_key_id=key_id if encrypted is not None else None,
        authorized_roles=policy.authorized_roles if encrypted is not None else (),
        encrypted_originals=encrypted,
        information_loss=round(rewritten / len(text), 4) if text else 0.0,
        warnings=tuple(warnings),
        created_at=now or datetime.now(timezone.utc),
    )
    logger.debug(
        "Transformed %s: %d spans, operations %s", scan_id, len(spans), record.operation_counts
    )
    return output, record


def _plan(
    text: str,
    findings: Sequence[Finding],
    policy: TransformPolicy,
    salt: bytes,
    surrogates: Mapping[str, str],
    shifter: DateShifter,
    subject: str,
    warnings: list[str],
) -> list[_Edit]:
    edits: list[_Edit] = []
    for winner, start, end in resolve_overlaps(findings, policy):
        value = text[start:end]
        operation = policy.operation_for(winner.info_type)
        replacement = _apply(
            operation, value, winner.info_type, policy,
            salt=salt, surrogates=surrogates, shifter=shifter, subject=subject,
            warnings=warnings,
        )
        if replacement is None:
            operation = TransformOperation.REDACT
            replacement = redact(winner.info_type, policy.redact_marker)
        edits.append(_Edit(start, end, winner.info_type, operation, replacement))
    return edits


def _spans(edits: Sequence[_Edit]) -> list[TransformedSpan]:
    """Source and output offsets of each edit, in ascending order."""
    spans: list[TransformedSpan] = []
    delta = 0
    for edit in edits:
        out_start = edit.start + delta
        spans.append(TransformedSpan(
            info_type=edit.info_type,
            operation=edit.operation,
            source_start=edit.start,
            source_end=edit.end,
            output_start=out_start,
            output_end=out_start + len(edit.replacement),
        ))
        delta += len(edit.replacement) - (edit.end - edit.start)
    return spans


def _to_source(position: int, spans: Sequence[TransformedSpan], *, is_end: bool) -> int:
    """Map an output offset back onto the original text.

    An offset inside a rewritten span widens to that span's source bounds.
    """
    delta = 0
    for s in spans:
        if position <= s.output_start:
            break
        if position < s.output_end:
            return s.source_end if is_end else s.source_start
        delta += (s.output_end - s.output_start) - (s.source_end - s.source_start)
    return position - delta


def _leaks(
    output: str,
    spans: Sequence[TransformedSpan],
    covered: Sequence[InfoType],
    min_likelihood: Likelihood,
) -> list[Finding]:
    if not covered:
        return []
    surrogates = [s for s in spans if s.is_surrogate]
    found = scan(output, covered, min_likelihood=min_likelihood)
    return [
        f for f in found
        if not any(f.start < s.output_end and s.output_start < f.end for s in surrogates)
    ]


def _apply(
    operation: TransformOperation,
    value: str,
    info_type: str,
    policy: TransformPolicy,
    *,
    salt: bytes,
    surrogates: Mapping[str, str],
    shifter: DateShifter,
    subject: str,
    warnings: list[str],
) -> str | None:
    """Replacement for one span, or None to fall back to REDACT."""
    if operation == TransformOperation.REDACT:
        return redact(info_type, policy.redact_marker)
    if operation == TransformOperation.MASK:
        return mask(
            value,
            mask_char=policy.mask_char,
            preserve_separators=policy.mask_preserve_separators,
            keep_leading=policy.mask_keep_leading,
            keep_trailing=policy.mask_keep_trailing,
            min_fraction=policy.mask_min_fraction,
        )
    if operation == TransformOperation.HASH:
        if not salt:
            raise ConfigurationError("HASH requires a non-empty hash_salt", field="hash_salt")
        return hash_value(value, salt)
    if operation == TransformOperation.REPLACE:
        surrogate = surrogates.get(info_type)
        if surrogate is None:
            warnings.append(f"no surrogate for {info_type}: redacted instead")
        return surrogate
    if operation == TransformOperation.DATE_SHIFT:
        shifted = shifter.shift(value, subject)
        if shifted is None:
            warnings.append(f"unparseable date for {info_type}: redacted instead")
        return shifted
    raise ConfigurationError(f"Unsupported operation {operation.value}", field="transform.operations")


# -----------------------------------------------------------------------
# Reversal
# -----------------------------------------------------------------------


def reverse(
    deidentified_text: str,
    record: DeidentificationRecord,
    kms: KeyManagementService,
    *,
    role: str,
) -> str:
    """Restore the original text from a reversible record.

    Args:
        deidentified_text: Output of the transform that produced *record*.
        record: The reversible DeidentificationRecord.
        kms: Key store holding ``record.reversal_key_id``.
        role: Role of the principal asking for reversal.

    Returns:
        The original text.

    Raises:
        AuthorizationError: If *role* is not in ``record.authorized_roles``.
        ValidationError: If the record is irreversible or does not belong
            to *deidentified_text*.
        KeyManagementError: If the key cannot be fetched or does not
            decrypt the originals.
    """
    if not record.reversible or record.encrypted_originals is None or not record.reversal_key_id:
        raise ValidationError(f"Record for {record.scan_id} is not reversible", field="reversible")
    if role not in record.authorized_roles:
        raise AuthorizationError(
            f"Role '{role}' may not reverse {record.scan_id}", field="authorized_roles"
        )
    if content_sha256(deidentified_text) != record.deidentified_hash:
        raise ValidationError(
            "Text does not match the record's de-identified hash", field="deidentified_text"
        )

    key = kms.get_key(record.reversal_key_id)
    originals = json.loads(kms.decrypt(key, record.encrypted_originals).decode("utf-8"))

    restored = deidentified_text
    for item in sorted(originals, key=lambda o: o["output_start"], reverse=True):
        restored = restored[:item["output_start"]] + item["value"] + restored[item["output_end"]:]

    if content_sha256(restored) != record.original_hash:
        raise ValidationError("Reversal did not reproduce the original text", field="original_hash")
    logger.info("Reversed de-identification of %s for role %s", record.scan_id, role)
    return restored


# -----------------------------------------------------------------------
# Residual verification
# -----------------------------------------------------------------------


def residual_findings(
    deidentified_text: str,
    record: DeidentificationRecord,
    info_types: Iterable[InfoType],
    policy: TransformPolicy,
    *,
    min_likelihood: Likelihood = Likelihood.POSSIBLE,
) -> list[Finding]:
    """Re-scan de-identified output for InfoTypes the policy covers.

    Findings inside REPLACE and DATE_SHIFT output are expected, since those
    operations write well-formed surrogates on purpose, and are excluded.

    Returns:
        Findings that survived de-identification; empty when clean.
    """
    covered = [t for t in info_types if policy.covers(t.id)]
    return _leaks(deidentified_text, record.spans, covered, min_likelihood)
