from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import Sequence

NOT_MAPPED = "NOT_MAPPED"
MAPPING_FIELDS = ("amount", "description", "category", "date")

# Checked in MAPPING_FIELDS order; German bank exports use Betrag/Datum/Verwendungszweck.
FIELD_PATTERNS: dict[str, re.Pattern[str]] = {
    "amount": re.compile(r"betrag|amount|sum|total|value|wert(?!stellung)|euro|umsatz", re.IGNORECASE),
    "description": re.compile(
        r"beschreibung|description|text|verwendungszweck|memo|details|payee|merchant",
        re.IGNORECASE,
    ),
    "category": re.compile(r"kategorie|category", re.IGNORECASE),
    "date": re.compile(r"datum|date|buchungsdatum|valuta|buchungstag", re.IGNORECASE),
}
# Date-like headers ("Value Date", "Total Date") are never taken as amounts.
EXCLUDED_PATTERNS: dict[str, re.Pattern[str]] = {"amount": FIELD_PATTERNS["date"]}


@dataclass(frozen=True)
class ColumnMapping:
    amount: str = NOT_MAPPED
    description: str = NOT_MAPPED
    category: str = NOT_MAPPED
    date: str = NOT_MAPPED

    def column_for(self, field: str) -> str | None:
        """Return the header feeding ``field``, or None when it is not mapped."""
        value = getattr(self, _check_field(field))
        return None if value == NOT_MAPPED else value

    def has_mapped_field(self) -> bool:
        return any(self.column_for(field) for field in MAPPING_FIELDS)

    def mapped_columns(self) -> set[str]:
        return {column for column in (self.column_for(field) for field in MAPPING_FIELDS) if column}

    def with_field(self, field: str, column: str | None, headers: Sequence[str]) -> "ColumnMapping":
        field = _check_field(field)
        value = column or NOT_MAPPED
        if value != NOT_MAPPED and value not in headers:
            raise ValueError(f"Unknown column '{value}' for {field}.")
        return replace(self, **{field: value})

    def as_dict(self) -> dict[str, str]:
        return {field: getattr(self, field) for field in MAPPING_FIELDS}


def detect_column_mapping(headers: Sequence[str]) -> ColumnMapping:
    claimed: set[str] = set()
    detected: dict[str, str] = {}
    for field in MAPPING_FIELDS:
        pattern = FIELD_PATTERNS[field]
        excluded = EXCLUDED_PATTERNS.get(field)
        match = next(
            (
                header
                for header in headers
                if header not in claimed
                and pattern.search(header)
                and not (excluded and excluded.search(header))
            ),
            None,
        )
        if match is not None:
            claimed.add(match)
            detected[field] = match
    return ColumnMapping(**detected)


def _check_field(field: str) -> str:
    if field not in MAPPING_FIELDS:
        raise ValueError(f"Unsupported mapping field: {field}")
    return field
