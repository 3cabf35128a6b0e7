import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, insert, select
from sqlalchemy.pool import StaticPool

from pocketbook.batch_importer import SqlExpenseStore, import_records, partition, to_expense_row
from pocketbook.candidate_records import CandidateRecord
from pocketbook.database import expenses, metadata, users
from pocketbook.errors import AuthRequired, BatchPersistError, NoValidRecords


def make_records(count: int) -> list[CandidateRecord]:
    return [
        CandidateRecord(
            source_row_index=index,
            amount=Decimal("-1.50"),
            description=f"Row {index}",
            category="Other",
            date=date(2025, 1, 1),
        )
        for index in range(count)
    ]


class RecordingStore:
    def __init__(self, failing_batches: set[int] | None = None) -> None:
        self.failing_batches = failing_batches or set()
        self.batches: list[list[dict]] = []

    def insert_expenses(self, rows, batch_index: int = 0) -> None:
        self.batches.append(list(rows))
        if batch_index in self.failing_batches:
            raise BatchPersistError(batch_index, "store unavailable")


class ImportRecordsTests(unittest.TestCase):
    def test_partitions_into_fixed_size_batches(self) -> None:
        store = RecordingStore()

        outcome = import_records(make_records(120), {}, user_id=7, store=store, batch_size=50)

        self.assertEqual([len(batch) for batch in store.batches], [50, 50, 20])
        self.assertEqual(outcome.success_count, 120)
        self.assertEqual(outcome.error_count, 0)
        self.assertEqual(outcome.message, "Imported 120 expenses")

    def test_failed_batch_does_not_stop_later_batches(self) -> None:
        store = RecordingStore(failing_batches={1})

        outcome = import_records(make_records(120), {}, user_id=7, store=store, batch_size=50)

        self.assertEqual(len(store.batches), 3)
        self.assertEqual(outcome.success_count, 70)
        self.assertEqual(outcome.error_count, 50)
        self.assertEqual([failure.batch_index for failure in outcome.batch_failures], [1])

    def test_failed_batch_index_two_leaves_first_hundred(self) -> None:
        store = RecordingStore(failing_batches={2})

        outcome = import_records(make_records(120), {}, user_id=7, store=store, batch_size=50)

        self.assertEqual(len(store.batches), 3)
        self.assertEqual(outcome.success_count, 100)
        self.assertEqual(outcome.error_count, 20)
        self.assertEqual(outcome.message, "Imported 100 expenses with 20 errors")

    def test_unexpected_store_error_fails_only_its_batch(self) -> None:
        attempted: list[int] = []

        class FlakyStore:
            def insert_expenses(self, rows, batch_index: int = 0) -> None:
                attempted.append(batch_index)
                if batch_index == 1:
                    raise ConnectionError("connection reset")

        outcome = import_records(make_records(3), {}, user_id=7, store=FlakyStore(), batch_size=1)

        self.assertEqual(attempted, [0, 1, 2])
        self.assertEqual(outcome.success_count, 2)
        self.assertEqual(outcome.error_count, 1)
        (failure,) = outcome.batch_failures
        self.assertIsInstance(failure, BatchPersistError)
        self.assertEqual(failure.batch_index, 1)
        self.assertIn("connection reset", str(failure))

    def test_rows_with_validation_errors_are_excluded(self) -> None:
        store = RecordingStore()
        errors = {1: ["Invalid date"], 3: ["Missing amount"]}

        outcome = import_records(make_records(5), errors, user_id=7, store=store)

        imported = [row["description"] for batch in store.batches for row in batch]
        self.assertEqual(imported, ["Row 0", "Row 2", "Row 4"])
        self.assertEqual(outcome.success_count, 3)
        self.assertEqual(outcome.validation_errors, errors)

    def test_requires_user_before_any_insert(self) -> None:
        store = RecordingStore()

        with self.assertRaises(AuthRequired):
            import_records(make_records(3), {}, user_id=None, store=store)
        self.assertEqual(store.batches, [])

    def test_requires_valid_records_before_any_insert(self) -> None:
        store = RecordingStore()

        with self.assertRaises(NoValidRecords):
            import_records(make_records(2), {0: ["Invalid amount"], 1: ["Invalid date"]}, user_id=7, store=store)
        self.assertEqual(store.batches, [])

    def test_to_expense_row_shape(self) -> None:
        record = CandidateRecord(
            source_row_index=0,
            amount=Decimal("12.00"),
            description="",
            category="Food",
            date=date(2025, 3, 1),
            category_details=("Food: Coffee",),
        )

        self.assertEqual(
            to_expense_row(record, 4),
            {
                "user_id": 4,
                "amount": Decimal("12.00"),
                "description": None,
                "category": "Food",
                "category_details": ["Food: Coffee"],
                "date": "2025-03-01",
            },
        )

    def test_partition_rejects_non_positive_size(self) -> None:
        with self.assertRaises(ValueError):
            partition([1, 2], 0)


class SqlExpenseStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        metadata.create_all(self.engine)
        with self.engine.begin() as conn:
            conn.execute(insert(users).values(id=1, email="a@example.com", hashed_password="x"))

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_inserts_rows_with_iso_dates(self) -> None:
        store = SqlExpenseStore(self.engine)

        outcome = import_records(make_records(3), {}, user_id=1, store=store, batch_size=2)

        with self.engine.begin() as conn:
            rows = conn.execute(select(expenses).order_by(expenses.c.id)).mappings().all()
        self.assertEqual(outcome.success_count, 3)
        self.assertEqual(len(rows), 3)
        self.assertEqual(rows[0]["date"], date(2025, 1, 1))
        self.assertEqual(rows[0]["amount"], Decimal("-1.50"))

    def test_database_error_becomes_batch_error(self) -> None:
        store = SqlExpenseStore(self.engine)
        bad_row = {"user_id": 1, "amount": None, "description": None, "category": "Other",
                   "category_details": None, "date": "2025-01-01"}

        with self.assertRaises(BatchPersistError) as ctx:
            store.insert_expenses([bad_row], batch_index=4)

        self.assertEqual(ctx.exception.batch_index, 4)


if __name__ == "__main__":
    unittest.main()
