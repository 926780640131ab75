"""Format validators used to upgrade a pattern match's likelihood.

A validator receives the matched value and returns True when the value is
structurally valid for its InfoType (checksum, calendar date, numbering
plan).  Validators are referenced by name from the InfoType configuration;
an unknown name is a configuration error.

Date parsing and formatting also live here because the DATE_SHIFT
transformation must write a shifted date back in the same shape it found.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Callable

# -----------------------------------------------------------------------
# Checksums and numbering plans
# -----------------------------------------------------------------------


def _digits(value: str) -> str:
    return re.sub(r"[^0-9]", "", value)


def luhn_check(digits: str) -> bool:
    """Validate a digit string using the Luhn algorithm.

    Canadian Social Insurance Numbers use the same checksum as payment
    cards.

    Args:
        digits: A string of digits (no spaces or dashes).

    Returns:
        True if the digit string passes the Luhn checksum.
    """
    if not digits or not digits.isdigit():
        return False

    total = 0
    for i, d in enumerate(reversed(digits)):
        n = int(d)
        if i % 2 == 1:
            n *= 2
            if n > 9:
                n -= 9
        total += n
    return total % 10 == 0


def validate_sin(value: str) -> bool:
    """Canadian SIN: nine digits, Luhn-valid, never starting with 0 or 8."""
    digits = _digits(value)
    if len(digits) != 9 or digits[0] in ("0", "8"):
        return False
    return luhn_check(digits)


def validate_ramq(value: str) -> bool:
    """Quebec health insurance number (NAM).

    Four letters (surname and given-name initials) then eight digits that
    encode the birth date: ``YY MM DD`` where the month is offset by 50
    for women, followed by two administrative digits.  An optional
    two-digit card sequence may follow.
    """
    compact = re.sub(r"[\s-]", "", value)
    if len(compact) not in (12, 14):
        return False
    letters, digits = compact[:4], compact[4:]
    if not letters.isalpha() or not digits.isdigit():
        return False
    month = int(digits[2:4])
    day = int(digits[4:6])
    if month > 50:
        month -= 50
    return 1 <= month <= 12 and 1 <= day <= 31


def validate_nanp_phone(value: str) -> bool:
    """North American numbering plan: area and exchange codes start 2–9."""
    digits = _digits(value)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return False
    return digits[0] not in "01" and digits[3] not in "01"


def validate_date(value: str) -> bool:
    """True if *value* parses as a real calendar date."""
    return parse_date(value) is not None


# -----------------------------------------------------------------------
# Date parsing / formatting
# -----------------------------------------------------------------------

_MONTHS_EN = (
    "january", "february", "march", "april", "may", "june", "july",
    "august", "september", "october", "november", "december",
)
_MONTHS_FR = (
    "janvier", "février", "mars", "avril", "mai", "juin", "juillet",
    "août", "septembre", "octobre", "novembre", "décembre",
)
_MONTH_LOOKUP: dict[str, tuple[int, str]] = {
    **{name: (i + 1, "en") for i, name in enumerate(_MONTHS_EN)},
    **{name: (i + 1, "fr") for i, name in enumerate(_MONTHS_FR)},
}

_YMD_RE = re.compile(r"^(\d{4})([-/.])(\d{1,2})\2(\d{1,2})$")
_DMY_RE = re.compile(r"^(\d{1,2})([-/.])(\d{1,2})\2(\d{4})$")
_NAME_FIRST_RE = re.compile(r"^([^\W\d_]+)\s+(\d{1,2})(,?)\s+(\d{4})$")
_DAY_FIRST_RE = re.compile(r"^(\d{1,2})\s+([^\W\d_]+)\s+(\d{4})$")


@dataclass(frozen=True)
class DateShape:
    """How a date was written, so it can be written back the same way.

    Attributes:
        order: ``"ymd"``, ``"dmy"``, ``"mdy"``, ``"name_first"`` or ``"day_first"``.
        separator: Separator for numeric forms.
        padded: Whether numeric month/day were zero-padded.
        language: ``"en"`` or ``"fr"`` for month-name forms.
        capitalized: Month name started with an upper-case letter.
        comma: A comma followed the day in ``name_first`` form.
    """

    order: str
    separator: str = ""
    padded: bool = True
    language: str = "en"
    capitalized: bool = True
    comma: bool = False


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date(value: str) -> tuple[date, DateShape] | None:
    """Parse a date in one of the supported clinical formats.

    Numeric day/month/year forms are read day-first (Canadian convention)
    and fall back to month-first only when day-first is not a valid date.

    Args:
        value: The candidate date text.

    Returns:
        The parsed date and its shape, or None if *value* is not a date.
    """
    text = value.strip()

    m = _YMD_RE.match(text)
    if m:
        parsed = _safe_date(int(m.group(1)), int(m.group(3)), int(m.group(4)))
        if parsed is None:
            return None
        padded = len(m.group(3)) == 2 or len(m.group(4)) == 2
        return parsed, DateShape(order="ymd", separator=m.group(2), padded=padded)

    m = _DMY_RE.match(text)
    if m:
        first, second, year = int(m.group(1)), int(m.group(3)), int(m.group(4))
        padded = len(m.group(1)) == 2 or len(m.group(3)) == 2
        parsed = _safe_date(year, second, first)
        if parsed is not None:
            return parsed, DateShape(order="dmy", separator=m.group(2), padded=padded)
        parsed = _safe_date(year, first, second)
        if parsed is not None:
            return parsed, DateShape(order="mdy", separator=m.group(2), padded=padded)
        return None

    m = _NAME_FIRST_RE.match(text)
    if m and m.group(1).lower() in _MONTH_LOOKUP:
        month, language = _MONTH_LOOKUP[m.group(1).lower()]
        parsed = _safe_date(int(m.group(4)), month, int(m.group(2)))
        if parsed is None:
            return None
        return parsed, DateShape(
            order="name_first",
            language=language,
            capitalized=m.group(1)[0].isupper(),
            comma=bool(m.group(3)),
        )

    m = _DAY_FIRST_RE.match(text)
    if m and m.group(2).lower() in _MONTH_LOOKUP:
        month, language = _MONTH_LOOKUP[m.group(2).lower()]
        parsed = _safe_date(int(m.group(3)), month, int(m.group(1)))
        if parsed is None:
            return None
        return parsed, DateShape(
            order="day_first",
            language=language,
            capitalized=m.group(2)[0].isupper(),
        )

    return None


def format_date(value: date, shape: DateShape) -> str:
    """Render *value* in the given shape."""
    if shape.order in ("ymd", "dmy", "mdy"):
        width = 2 if shape.padded else 1
        month = f"{value.month:0{width}d}"
        day = f"{value.day:0{width}d}"
        sep = shape.separator
        if shape.order == "ymd":
            return f"{value.year:04d}{sep}{month}{sep}{day}"
        if shape.order == "dmy":
            return f"{day}{sep}{month}{sep}{value.year:04d}"
        return f"{month}{sep}{day}{sep}{value.year:04d}"

    names = _MONTHS_FR if shape.language == "fr" else _MONTHS_EN
    name = names[value.month - 1]
    if shape.capitalized:
        name = name.capitalize()
    if shape.order == "name_first":
        comma = "," if shape.comma else ""
        return f"{name} {value.day}{comma} {value.year}"
    return f"{value.day} {name} {value.year}"


# -----------------------------------------------------------------------
# Validator registry
# -----------------------------------------------------------------------

VALIDATORS: dict[str, Callable[[str], bool]] = {
    "luhn": lambda value: luhn_check(_digits(value)),
    "sin": validate_sin,
    "ramq": validate_ramq,
    "nanp_phone": validate_nanp_phone,
    "date": validate_date,
}


def get_validator(name: str) -> Callable[[str], bool]:
    """Look up a validator by name.

    Raises:
        KeyError: If no validator is registered under *name*.
    """
    return VALIDATORS[name]
