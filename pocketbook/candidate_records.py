from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from pocketbook.amount_normalizer import normalize_amount
from pocketbook.column_mapping import ColumnMapping
from pocketbook.csv_parser import RawRow, RawTable
from pocketbook.date_normalizer import DateFormatHint, resolve_row_date

DEFAULT_CATEGORY = "Other"
KNOWN_CATEGORIES = (
    "Food",
    "Transportation",
    "Entertainment",
    "Housing",
    "Utilities",
    "Healthcare",
    "Shopping",
    "Other",
)
SUBCATEGORIES: dict[str, tuple[str, ...]] = {
    "Food": ("Groceries", "Restaurant", "Fast Food", "Coffee"),
    "Transportation": ("Fuel", "Public Transit", "Taxi", "Car Maintenance"),
}


@dataclass(frozen=True)
class CandidateRecord:
    source_row_index: int
    amount: Decimal | None
    description: str
    category: str
    date: date | None
    category_details: tuple[str, ...] | None = None
    date_source: str | None = None
    raw_amount: str | None = None
    raw_date: str | None = None
    date_had_text: bool = False


def build_candidate_records(
    table: RawTable,
    mapping: ColumnMapping,
    hint: DateFormatHint = DateFormatHint.AUTO,
) -> tuple[CandidateRecord, ...]:
    return tuple(
        build_candidate_record(index, row, mapping, hint)
        for index, row in enumerate(table.rows)
    )


def build_candidate_record(
    index: int,
    row: RawRow,
    mapping: ColumnMapping,
    hint: DateFormatHint = DateFormatHint.AUTO,
) -> CandidateRecord:
    raw_amount = _cell(row, mapping.column_for("amount"))
    raw_date = _cell(row, mapping.column_for("date"))
    description = _cell(row, mapping.column_for("description")) or ""
    category, details = map_category(_cell(row, mapping.column_for("category")))
    resolution = resolve_row_date(row, mapping, hint)

    return CandidateRecord(
        source_row_index=index,
        amount=normalize_amount(raw_amount),
        description=description,
        category=category,
        category_details=details,
        date=resolution.value,
        date_source=resolution.source_column,
        raw_amount=raw_amount,
        raw_date=raw_date,
        date_had_text=resolution.had_text,
    )


def map_category(raw: str | None) -> tuple[str, tuple[str, ...] | None]:
    """
    Match a bank category cell to one of the app categories.

    Returns ``(category, category_details)``; details carry the matched
    subcategory, or the original label when nothing matched.
    """
    text = (raw or "").strip()
    if not text:
        return DEFAULT_CATEGORY, None

    if text.startswith("[") and text.endswith("]"):
        decoded = _decode_category_list(text)
        if decoded:
            return decoded[0].split(":", 1)[0].strip() or DEFAULT_CATEGORY, (decoded[0],)

    lowered = text.lower()
    for category in KNOWN_CATEGORIES:
        if category.lower() in lowered:
            return category, None
        for subcategory in SUBCATEGORIES.get(category, ()):
            if subcategory.lower() in lowered:
                return category, (f"{category}: {subcategory}",)

    return DEFAULT_CATEGORY, (f"{DEFAULT_CATEGORY}: {text}",)


def _decode_category_list(text: str) -> list[str]:
    try:
        parsed = json.loads(text.replace("'", '"'))
    except ValueError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item).strip() for item in parsed if str(item).strip()]


def _cell(row: RawRow, column: str | None) -> str | None:
    if column is None:
        return None
    value = (row.get(column) or "").strip()
    return value or None
