"""Span rewriting primitives: REDACT, MASK, REPLACE, HASH and DATE_SHIFT.

Each function takes the original span value and returns its replacement.
None of them look at the surrounding text; overlap resolution and the
right-to-left rewrite live in the transformer.
"""

from __future__ import annotations

import hashlib
import hmac
import math
import random
from datetime import timedelta

from phiguard.scan.validators import format_date, parse_date

HASH_PREFIX = "HASH_"
HASH_LENGTH = 16


def redact(info_type: str, marker: str = "[{info_type}]") -> str:
    """Fixed marker naming the InfoType; length correspondence is lost."""
    return marker.replace("{info_type}", info_type)


def mask(
    value: str,
    *,
    mask_char: str = "*",
    preserve_separators: bool = True,
    keep_leading: int = 0,
    keep_trailing: int = 0,
    min_fraction: float = 0.6,
) -> str:
    """Overwrite characters of *value* with *mask_char*, preserving length.

    Only alphanumerics are maskable when *preserve_separators* is set, so
    ``"ABCD 1234"`` becomes ``"**** ****"``.  Leading and trailing
    characters are left visible as requested, but never so many that fewer
    than ``ceil(min_fraction × maskable)`` characters end up masked.

    Args:
        value: Span value to mask.
        mask_char: Replacement character.
        preserve_separators: Leave non-alphanumerics untouched.
        keep_leading: Maskable characters to keep visible at the start.
        keep_trailing: Maskable characters to keep visible at the end.
        min_fraction: Minimum share of maskable characters always masked.

    Returns:
        The masked value, same length as *value*.
    """
    if preserve_separators:
        positions = [i for i, c in enumerate(value) if c.isalnum()]
    else:
        positions = list(range(len(value)))

    total = len(positions)
    visible_budget = total - math.ceil(total * min_fraction)
    lead = min(keep_leading, visible_budget)
    trail = min(keep_trailing, visible_budget - lead)
    masked = set(positions[lead:total - trail])

    return "".join(mask_char if i in masked else c for i, c in enumerate(value))


def hash_value(value: str, salt: bytes) -> str:
    """Deterministic salted one-way token for *value*.

    The same value always hashes to the same token within a deployment
    (same salt), so de-identified datasets can still be joined on it.
    """
    digest = hmac.new(salt, value.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{HASH_PREFIX}{digest[:HASH_LENGTH]}"


def shift_date(value: str, days: int) -> str | None:
    """Shift a date string by *days*, keeping the way it was written.

    Returns:
        The shifted date, or None if *value* is not a parseable date.
    """
    parsed = parse_date(value)
    if parsed is None:
        return None
    original, shape = parsed
    try:
        shifted = original + timedelta(days=days)
    except OverflowError:
        return None
    return format_date(shifted, shape)


class DateShifter:
    """Hands out one random offset per subject.

    Every date referencing the same subject is shifted by the same number
    of days, which keeps intervals between them intact.  A new shifter is
    created for every transformation, so offsets differ between scans.

    Args:
        min_days: Smallest absolute offset.
        max_days: Largest absolute offset.
        rng: Random source; pass a seeded one for reproducible tests.
    """

    def __init__(self, min_days: int, max_days: int, rng: random.Random | None = None) -> None:
        self._min_days = min_days
        self._max_days = max_days
        self._rng = rng or random.SystemRandom()
        self._offsets: dict[str, int] = {}

    def offset_for(self, subject_id: str) -> int:
        if subject_id not in self._offsets:
            magnitude = self._rng.randint(self._min_days, self._max_days)
            self._offsets[subject_id] = magnitude * self._rng.choice((-1, 1))
        return self._offsets[subject_id]

    def shift(self, value: str, subject_id: str) -> str | None:
        return shift_date(value, self.offset_for(subject_id))
