"""
Date extraction for bank-statement cells.

Bank exports mix German dotted dates, ISO dates and US slash dates, and some
banks only put the booking date inside the free-text purpose field. The
normalizer therefore searches for embedded date substrings before falling back
to whole-value format parsing and finally to dateutil's free-text parser.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Iterable, Mapping, NamedTuple

from dateutil import parser as dateutil_parser

from pocketbook.column_mapping import ColumnMapping


class DateFormatHint(str, Enum):
    AUTO = "auto"
    DD_MM_YY = "dd.MM.yy"
    DD_MM_YYYY = "dd.MM.yyyy"
    MM_DD_YYYY = "MM/dd/yyyy"
    YYYY_MM_DD = "yyyy-MM-dd"


class DatePattern(NamedTuple):
    name: str
    regex: re.Pattern[str]
    order: str  # field order of the capture groups: "dmy", "ymd" or "mdy"


DD_MM_YY = DatePattern("dd.MM.yy", re.compile(r"(?<![\d.])(\d{1,2})\.(\d{1,2})\.(\d{2})(?!\d)"), "dmy")
DD_MM_YYYY = DatePattern("dd.MM.yyyy", re.compile(r"(?<![\d.])(\d{1,2})\.(\d{1,2})\.(\d{4})(?!\d)"), "dmy")
ISO = DatePattern("yyyy-MM-dd", re.compile(r"(?<!\d)(\d{4})-(\d{1,2})-(\d{1,2})(?!\d)"), "ymd")
US_SLASH = DatePattern("MM/dd/yyyy", re.compile(r"(?<!\d)(\d{1,2})/(\d{1,2})/(\d{4})(?!\d)"), "mdy")
DD_MM_YYYY_DASH = DatePattern("dd-MM-yyyy", re.compile(r"(?<!\d)(\d{1,2})-(\d{1,2})-(\d{4})(?!\d)"), "dmy")

EMBEDDED_PATTERNS = (DD_MM_YY, DD_MM_YYYY, ISO, US_SLASH, DD_MM_YYYY_DASH)
HINT_PATTERNS = {
    DateFormatHint.DD_MM_YY: DD_MM_YY,
    DateFormatHint.DD_MM_YYYY: DD_MM_YYYY,
    DateFormatHint.MM_DD_YYYY: US_SLASH,
    DateFormatHint.YYYY_MM_DD: ISO,
}
FALLBACK_FORMATS = (
    "%Y.%m.%d",
    "%d/%m/%Y",
    "%Y-%m-%d %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%m-%d-%Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
)
TWO_DIGIT_YEAR_PIVOT = 50

# Two distinct defaults: a component missing from the text shows up as a difference.
_PROBE_DEFAULTS = (datetime(1904, 1, 1), datetime(1905, 12, 28))


@dataclass(frozen=True)
class DateResolution:
    value: date | None
    source_column: str | None = None
    had_text: bool = False


def parse_hint(value: str | DateFormatHint | None) -> DateFormatHint:
    if isinstance(value, DateFormatHint):
        return value
    if not value:
        return DateFormatHint.AUTO
    try:
        return DateFormatHint(value.strip())
    except ValueError as exc:
        raise ValueError(f"Unsupported date format: {value}") from exc


def normalize_date(raw: str | None, hint: DateFormatHint = DateFormatHint.AUTO) -> date | None:
    text = (raw or "").strip()
    if not text:
        return None

    if hint is not DateFormatHint.AUTO:
        return extract_embedded_date(text, (HINT_PATTERNS[hint],))

    embedded = extract_embedded_date(text, EMBEDDED_PATTERNS)
    if embedded is not None:
        return embedded

    for fmt in FALLBACK_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    return parse_free_text_date(text)


def extract_embedded_date(text: str, patterns: Iterable[DatePattern]) -> date | None:
    for pattern in patterns:
        for match in pattern.regex.finditer(text):
            value = _build_date(match.groups(), pattern.order)
            if value is not None:
                return value
    return None


def expand_two_digit_year(year: int) -> int:
    if year >= 100:
        return year
    return 2000 + year if year < TWO_DIGIT_YEAR_PIVOT else 1900 + year


def parse_free_text_date(text: str) -> date | None:
    """Parse with dateutil, rejecting text that leaves day, month or year to a default."""
    results = []
    for default in _PROBE_DEFAULTS:
        try:
            results.append(dateutil_parser.parse(text, default=default))
        except (ValueError, OverflowError):
            return None
    if results[0] != results[1]:
        return None
    return results[0].date()


def resolve_row_date(
    row: Mapping[str, str],
    mapping: ColumnMapping,
    hint: DateFormatHint = DateFormatHint.AUTO,
) -> DateResolution:
    """
    Find the date for one row, falling back across columns.

    Order: the mapped date column, the mapped description column, then every
    unmapped column in header order. The column that supplied the date is
    returned so callers can show where a date came from.
    """
    had_text = False
    candidates: list[str] = []
    for column in (mapping.column_for("date"), mapping.column_for("description")):
        if column and column not in candidates:
            candidates.append(column)
    mapped = mapping.mapped_columns()
    candidates.extend(column for column in row if column not in mapped)

    date_column = mapping.column_for("date")
    for column in candidates:
        text = (row.get(column) or "").strip()
        if not text:
            continue
        if column == date_column:
            had_text = True
        value = normalize_date(text, hint)
        if value is not None:
            return DateResolution(value=value, source_column=column, had_text=True)
    return DateResolution(value=None, source_column=None, had_text=had_text)


def _build_date(groups: tuple[str, ...], order: str) -> date | None:
    parts = dict(zip(order, (int(group) for group in groups)))
    try:
        return date(expand_two_digit_year(parts["y"]), parts["m"], parts["d"])
    except ValueError:
        return None
