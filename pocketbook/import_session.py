"""
CSV import session state machine.

A session moves upload -> mapping -> preview -> importing -> done. Each step
is an immutable value holding exactly the data that step needs, so candidate
records from an old mapping can never leak into a newer preview: leaving the
preview step drops them and entering it rebuilds them from scratch.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Mapping, Union

from pocketbook.batch_importer import DEFAULT_BATCH_SIZE, ExpenseStore, ImportOutcome, persist_batches, plan_batches
from pocketbook.candidate_records import CandidateRecord, build_candidate_records
from pocketbook.column_mapping import ColumnMapping, detect_column_mapping
from pocketbook.csv_parser import RawTable, parse_raw_table
from pocketbook.date_normalizer import DateFormatHint
from pocketbook.errors import InvalidTransition, SessionBusy
from pocketbook.row_validator import AmountMode, validate_records

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadStep:
    step = "upload"


@dataclass(frozen=True)
class MappingStep:
    table: RawTable
    mapping: ColumnMapping
    date_format: DateFormatHint = DateFormatHint.AUTO
    step = "mapping"


@dataclass(frozen=True)
class PreviewStep:
    table: RawTable
    mapping: ColumnMapping
    date_format: DateFormatHint
    records: tuple[CandidateRecord, ...]
    errors: dict[int, list[str]]
    step = "preview"

    @property
    def valid_count(self) -> int:
        return len(self.records) - len(self.errors)


@dataclass(frozen=True)
class ImportingStep:
    preview: PreviewStep
    step = "importing"


@dataclass(frozen=True)
class DoneStep:
    outcome: ImportOutcome
    step = "done"


SessionState = Union[UploadStep, MappingStep, PreviewStep, ImportingStep, DoneStep]


def compute_preview(
    table: RawTable,
    mapping: ColumnMapping,
    date_format: DateFormatHint,
    amount_mode: AmountMode = AmountMode.SIGNED,
) -> tuple[tuple[CandidateRecord, ...], dict[int, list[str]]]:
    records = build_candidate_records(table, mapping, date_format)
    return records, validate_records(records, amount_mode)


class ImportSession:
    def __init__(
        self,
        user_id: int,
        session_id: str | None = None,
        amount_mode: AmountMode = AmountMode.SIGNED,
        max_bytes: int | None = None,
    ) -> None:
        self.user_id = user_id
        self.session_id = session_id or uuid.uuid4().hex
        self.amount_mode = amount_mode
        self.max_bytes = max_bytes
        self.state: SessionState = UploadStep()
        self.touched_at = time.monotonic()
        self._lock = threading.Lock()

    @property
    def step(self) -> str:
        return self.state.step

    def upload(self, contents: str) -> MappingStep:
        with self._lock:
            self._ensure_not_importing()
            if not isinstance(self.state, UploadStep):
                raise InvalidTransition(f"Cannot upload a file during the {self.step} step; restart the import first.")
            table = parse_raw_table(contents, max_bytes=self.max_bytes)
            mapping = detect_column_mapping(table.headers)
            logger.info(
                "Detected column mapping",
                extra={"session_id": self.session_id, "mapping": mapping.as_dict()},
            )
            return self._enter(MappingStep(table=table, mapping=mapping))

    def set_column(self, field_name: str, column: str | None) -> MappingStep:
        return self.update_mapping({field_name: column})

    def set_date_format(self, date_format: DateFormatHint) -> MappingStep:
        return self.update_mapping({}, date_format)

    def update_mapping(
        self,
        columns: Mapping[str, str | None],
        date_format: DateFormatHint | None = None,
    ) -> MappingStep:
        """Apply every column change and the date format together, or none of them."""
        with self._lock:
            current = self._require(MappingStep, "change the column mapping")
            mapping = current.mapping
            for field_name, column in columns.items():
                mapping = mapping.with_field(field_name, column, current.table.headers)
            return self._enter(MappingStep(current.table, mapping, date_format or current.date_format))

    def preview(self) -> PreviewStep:
        with self._lock:
            current = self._require(MappingStep, "preview the import")
            if not current.mapping.has_mapped_field():
                raise InvalidTransition("Please map at least one column.")
            records, errors = compute_preview(
                current.table, current.mapping, current.date_format, self.amount_mode
            )
            logger.info(
                "Built import preview",
                extra={"session_id": self.session_id, "row_count": len(records), "error_count": len(errors)},
            )
            return self._enter(
                PreviewStep(
                    table=current.table,
                    mapping=current.mapping,
                    date_format=current.date_format,
                    records=records,
                    errors=errors,
                )
            )

    def back(self) -> MappingStep:
        with self._lock:
            current = self._require(PreviewStep, "go back to the mapping")
            return self._enter(MappingStep(current.table, current.mapping, current.date_format))

    def restart(self) -> UploadStep:
        with self._lock:
            self._ensure_not_importing()
            return self._enter(UploadStep())

    def confirm_import(
        self,
        user_id: int | None,
        store: ExpenseStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> ImportOutcome:
        with self._lock:
            preview = self._require(PreviewStep, "import")
            # AuthRequired and NoValidRecords surface here, with the session still in preview.
            batches = plan_batches(preview.records, preview.errors, user_id, batch_size)
            self._enter(ImportingStep(preview))

        # Batches run outside the lock so status reads are not blocked.
        outcome = persist_batches(batches, preview.errors, user_id, store)

        with self._lock:
            self._enter(DoneStep(outcome))
        return outcome

    def _require(self, expected: type, action: str) -> SessionState:
        self._ensure_not_importing()
        if not isinstance(self.state, expected):
            raise InvalidTransition(f"Cannot {action} during the {self.step} step.")
        return self.state

    def _ensure_not_importing(self) -> None:
        if isinstance(self.state, ImportingStep):
            raise SessionBusy("An import is already running for this session.")

    def _enter(self, state: SessionState) -> SessionState:
        self.state = state
        self.touched_at = time.monotonic()
        return state


@dataclass
class ImportSessionRegistry:
    amount_mode: AmountMode = AmountMode.SIGNED
    max_bytes: int | None = None
    _sessions: dict[str, ImportSession] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def create(self, user_id: int) -> ImportSession:
        session = ImportSession(user_id, amount_mode=self.amount_mode, max_bytes=self.max_bytes)
        with self._lock:
            self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str, user_id: int) -> ImportSession | None:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or session.user_id != user_id:
            return None
        return session

    def remove(self, session_id: str, user_id: int) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.user_id != user_id:
                return False
            if isinstance(session.state, ImportingStep):
                raise SessionBusy("An import is already running for this session.")
            del self._sessions[session_id]
            return True

    def purge_expired(self, max_age_seconds: float, now: float | None = None) -> int:
        now = time.monotonic() if now is None else now
        with self._lock:
            expired = [
                session_id
                for session_id, session in self._sessions.items()
                if not isinstance(session.state, ImportingStep)
                and now - session.touched_at > max_age_seconds
            ]
            for session_id in expired:
                del self._sessions[session_id]
        if expired:
            logger.info("Purged expired import sessions", extra={"count": len(expired)})
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
