from __future__ import annotations

from enum import Enum
from typing import Iterable

from pocketbook.candidate_records import CandidateRecord

MISSING_AMOUNT = "Missing amount"
INVALID_AMOUNT = "Invalid amount"
MISSING_DATE = "Missing date"
INVALID_DATE = "Invalid date"


class AmountMode(str, Enum):
    SIGNED = "signed"
    POSITIVE = "positive"


def validate_records(
    records: Iterable[CandidateRecord],
    amount_mode: AmountMode = AmountMode.SIGNED,
) -> dict[int, list[str]]:
    errors: dict[int, list[str]] = {}
    for record in records:
        row_errors = validate_record(record, amount_mode)
        if row_errors:
            errors[record.source_row_index] = row_errors
    return errors


def validate_record(record: CandidateRecord, amount_mode: AmountMode = AmountMode.SIGNED) -> list[str]:
    row_errors: list[str] = []

    if record.amount is None:
        row_errors.append(INVALID_AMOUNT if record.raw_amount else MISSING_AMOUNT)
    elif amount_mode is AmountMode.POSITIVE and record.amount <= 0:
        row_errors.append(INVALID_AMOUNT)

    if record.date is None:
        row_errors.append(INVALID_DATE if record.date_had_text else MISSING_DATE)

    return row_errors
