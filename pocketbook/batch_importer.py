from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Mapping, Protocol, Sequence

from sqlalchemy import insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from pocketbook.candidate_records import DEFAULT_CATEGORY, CandidateRecord
from pocketbook.database import expenses
from pocketbook.errors import AuthRequired, BatchPersistError, NoValidRecords

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


class ExpenseStore(Protocol):
    def insert_expenses(self, rows: Sequence[Mapping[str, Any]], batch_index: int = 0) -> None:
        ...


@dataclass
class SqlExpenseStore:
    """Persists each batch in its own transaction; a failed batch rolls back alone."""

    engine: Engine

    def insert_expenses(self, rows: Sequence[Mapping[str, Any]], batch_index: int = 0) -> None:
        values = [
            {**row, "date": date.fromisoformat(row["date"])}
            for row in rows
        ]
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(expenses), values)
        except SQLAlchemyError as exc:
            raise BatchPersistError(batch_index, str(exc)) from exc


@dataclass(frozen=True)
class ImportOutcome:
    success_count: int
    error_count: int
    validation_errors: Mapping[int, list[str]] = field(default_factory=dict)
    batch_failures: tuple[BatchPersistError, ...] = ()

    @property
    def message(self) -> str:
        if self.error_count:
            return f"Imported {self.success_count} expenses with {self.error_count} errors"
        return f"Imported {self.success_count} expenses"


def to_expense_row(record: CandidateRecord, user_id: int) -> dict[str, Any]:
    if record.amount is None or record.date is None:
        raise ValueError(f"Row {record.source_row_index} is not importable.")
    return {
        "user_id": user_id,
        "amount": record.amount,
        "description": record.description or None,
        "category": record.category or DEFAULT_CATEGORY,
        "category_details": list(record.category_details) if record.category_details else None,
        "date": record.date.isoformat(),
    }


def partition(rows: Sequence[Any], batch_size: int) -> list[Sequence[Any]]:
    if batch_size <= 0:
        raise ValueError("batch_size must be greater than zero.")
    return [rows[start : start + batch_size] for start in range(0, len(rows), batch_size)]


def plan_batches(
    records: Sequence[CandidateRecord],
    validation_errors: Mapping[int, list[str]],
    user_id: int | None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[Sequence[dict[str, Any]]]:
    """Check the preconditions and split the valid rows; nothing is written yet."""
    if user_id is None:
        raise AuthRequired("You must be logged in to import expenses.")

    rows = [
        to_expense_row(record, user_id)
        for record in records
        if record.source_row_index not in validation_errors
    ]
    if not rows:
        raise NoValidRecords("No valid records to import.")
    return partition(rows, batch_size)


def persist_batches(
    batches: Sequence[Sequence[dict[str, Any]]],
    validation_errors: Mapping[int, list[str]],
    user_id: int,
    store: ExpenseStore,
) -> ImportOutcome:
    success_count = 0
    error_count = 0
    failures: list[BatchPersistError] = []
    for batch_index, batch in enumerate(batches):
        try:
            store.insert_expenses(batch, batch_index=batch_index)
        except Exception as exc:
            # Any store failure fails this batch only; later batches still run.
            failure = exc if isinstance(exc, BatchPersistError) else BatchPersistError(batch_index, str(exc))
            failure.batch_index = batch_index
            logger.warning(
                "Import batch failed",
                extra={"user_id": user_id, "batch_index": batch_index, "batch_size": len(batch)},
                exc_info=exc,
            )
            error_count += len(batch)
            failures.append(failure)
        else:
            success_count += len(batch)

    outcome = ImportOutcome(
        success_count=success_count,
        error_count=error_count,
        validation_errors=dict(validation_errors),
        batch_failures=tuple(failures),
    )
    logger.info(
        "Import finished",
        extra={"user_id": user_id, "success_count": success_count, "error_count": error_count},
    )
    return outcome


def import_records(
    records: Sequence[CandidateRecord],
    validation_errors: Mapping[int, list[str]],
    user_id: int | None,
    store: ExpenseStore,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> ImportOutcome:
    batches = plan_batches(records, validation_errors, user_id, batch_size)
    return persist_batches(batches, validation_errors, user_id, store)
