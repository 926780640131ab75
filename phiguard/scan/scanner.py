"""Scanner — runs InfoType matchers over text and emits positional findings.

Scanning is a pure function of the text and the InfoTypes: no I/O and no
shared mutable state, so independent requests scan concurrently and a
single text may be scanned by one thread per InfoType.  Results from the
per-InfoType matchers are merged by a deterministic sort on span, so the
merge order never affects what the classifier sees.
"""

from __future__ import annotations

import bisect
import logging
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Iterable

from phiguard.config.schema import InfoType
from phiguard.errors import ScanTimeoutError
from phiguard.scan.models import Finding, Likelihood, Span
from phiguard.scan.registry import CompiledMatcher, compile_matcher

logger = logging.getLogger(__name__)


class OffsetIndex:
    """Maps codepoint offsets to byte offsets and line/column numbers."""

    def __init__(self, text: str) -> None:
        self._text = text
        self._ascii = text.isascii()
        self._line_starts = [0]
        for i, c in enumerate(text):
            if c == "\n":
                self._line_starts.append(i + 1)

    def byte_offset(self, index: int) -> int:
        if self._ascii:
            return index
        return len(self._text[:index].encode("utf-8"))

    def line_col(self, index: int) -> tuple[int, int]:
        line = bisect.bisect_right(self._line_starts, index) - 1
        return line + 1, index - self._line_starts[line] + 1

    def span(self, start: int, end: int) -> Span:
        line, column = self.line_col(start)
        return Span(
            start=start,
            end=end,
            byte_start=self.byte_offset(start),
            byte_end=self.byte_offset(end),
            line=line,
            column=column,
        )


def _select_spans(matcher: CompiledMatcher, text: str) -> list[tuple[int, int]]:
    """Non-overlapping value spans for one InfoType, leftmost-longest first."""
    group = matcher.info_type.group
    candidates: list[tuple[int, int]] = []
    for regex in matcher.patterns:
        for m in regex.finditer(text):
            start, end = m.span(group)
            if start < 0 or end <= start:
                continue
            candidates.append((start, end))

    candidates.sort(key=lambda se: (se[0], -(se[1] - se[0])))
    selected: list[tuple[int, int]] = []
    for start, end in candidates:
        if selected and start < selected[-1][1]:
            continue
        selected.append((start, end))
    return selected


def _likelihood(matcher: CompiledMatcher, text: str, start: int, end: int) -> Likelihood:
    """Likelihood from match strength: validator, then keyword context."""
    info_type = matcher.info_type
    likelihood = info_type.base_likelihood
    if matcher.validator is not None and matcher.validator(text[start:end]):
        if info_type.validated_likelihood.rank > likelihood.rank:
            likelihood = info_type.validated_likelihood
    if matcher.context is not None and info_type.context_boost:
        window = text[max(0, start - info_type.context_window):start]
        if matcher.context.search(window):
            likelihood = likelihood.raised(info_type.context_boost)
    return likelihood


def scan_info_type(
    text: str,
    info_type: InfoType,
    *,
    min_likelihood: Likelihood = Likelihood.POSSIBLE,
    _offsets: OffsetIndex | None = None,
) -> list[Finding]:
    """Run a single InfoType's matcher over *text*.

    Args:
        text: The text to scan.
        info_type: The InfoType to look for.
        min_likelihood: Findings below this likelihood are dropped.

    Returns:
        Findings sorted by start offset; spans never overlap.

    Raises:
        ConfigurationError: If the InfoType's matcher is misconfigured.
    """
    matcher = compile_matcher(info_type)
    offsets = _offsets or OffsetIndex(text)
    findings: list[Finding] = []
    for start, end in _select_spans(matcher, text):
        likelihood = _likelihood(matcher, text, start, end)
        if not likelihood.meets(min_likelihood):
            continue
        findings.append(Finding(
            info_type=info_type.id,
            category=info_type.category,
            likelihood=likelihood,
            confidence_score=likelihood.confidence,
            span=offsets.span(start, end),
            quote=text[start:end],
            quebec_specific=info_type.quebec_specific,
        ))
    return findings


def merge_findings(groups: Iterable[Iterable[Finding]]) -> list[Finding]:
    """Merge per-InfoType results into one list ordered by span.

    The order of *groups* does not matter: the result is sorted by
    ``(start, end, info_type)``.
    """
    merged = [f for group in groups for f in group]
    merged.sort(key=Finding.sort_key)
    return merged


def scan(
    text: str,
    info_types: Iterable[InfoType],
    *,
    min_likelihood: Likelihood = Likelihood.POSSIBLE,
    workers: int = 1,
    timeout: float | None = None,
) -> list[Finding]:
    """Detect every InfoType in *text*.

    Every matcher is compiled before any scanning starts, so a broken
    InfoType fails the whole scan instead of being skipped.

    Args:
        text: The text to scan.
        info_types: InfoTypes to detect.
        min_likelihood: Findings below this likelihood are dropped.
        workers: Threads used to run matchers in parallel; 1 scans inline.
        timeout: Seconds allowed for the whole scan.

    Returns:
        All findings, sorted by ``(start, end, info_type)``.

    Raises:
        ConfigurationError: If any InfoType is misconfigured.
        ScanTimeoutError: If the scan exceeds *timeout*.
    """
    types = sorted(set(info_types), key=lambda t: t.id)
    for info_type in types:
        compile_matcher(info_type)

    offsets = OffsetIndex(text)
    started = time.monotonic()

    if workers <= 1 or len(types) <= 1:
        groups: list[list[Finding]] = []
        for info_type in types:
            if timeout is not None and time.monotonic() - started > timeout:
                raise ScanTimeoutError(
                    f"Scan exceeded {timeout}s after {len(groups)} of {len(types)} InfoTypes",
                    field="content",
                )
            groups.append(scan_info_type(
                text, info_type, min_likelihood=min_likelihood, _offsets=offsets
            ))
    else:
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="phiguard-scan")
        try:
            futures = [
                executor.submit(
                    scan_info_type, text, t, min_likelihood=min_likelihood, _offsets=offsets
                )
                for t in types
            ]
            done, pending = wait(futures, timeout=timeout, return_when=FIRST_EXCEPTION)
            for future in pending:
                future.cancel()
            for future in futures:
                error = future.exception() if future in done else None
                if error is not None:
                    raise error
            if pending:
                raise ScanTimeoutError(
                    f"Scan exceeded {timeout}s with {len(pending)} InfoTypes unfinished",
                    field="content",
                )
            groups = [f.result() for f in futures]
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    findings = merge_findings(groups)
    logger.debug(
        "Scanned %d chars with %d InfoTypes: %d findings in %.1f ms",
        len(text), len(types), len(findings), (time.monotonic() - started) * 1000,
    )
    return findings
