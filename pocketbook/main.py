import asyncio
import contextlib
import logging
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from pocketbook.batch_importer import ImportOutcome, SqlExpenseStore
from pocketbook.column_mapping import MAPPING_FIELDS
from pocketbook.csv_parser import decode_csv_bytes
from pocketbook.database import create_db_engine, expenses, metadata, users
from pocketbook.date_normalizer import parse_hint
from pocketbook.errors import ErrorKind, ParseError, PipelineError
from pocketbook.import_session import DoneStep, ImportSession, ImportSessionRegistry, MappingStep, PreviewStep
from pocketbook.logging_config import configure_logging
from pocketbook.row_validator import AmountMode
from pocketbook.settings import load_settings

settings = load_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)

app = FastAPI(title="Pocketbook")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = create_db_engine(settings.database_url)
import_sessions = ImportSessionRegistry(
    amount_mode=AmountMode(settings.import_amount_mode),
    max_bytes=settings.import_max_bytes,
)

DEFAULT_CATEGORY = "Other"
ERROR_STATUS_CODES = {
    ErrorKind.PARSE_ERROR: 400,
    ErrorKind.AUTH_REQUIRED: 401,
    ErrorKind.NO_VALID_RECORDS: 400,
    ErrorKind.BATCH_PERSIST_ERROR: 502,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.SESSION_BUSY: 409,
}


async def sweep_import_sessions() -> None:
    while True:
        await asyncio.sleep(settings.import_sweep_interval_seconds)
        import_sessions.purge_expired(settings.import_session_ttl_seconds)


@app.on_event("startup")
async def on_startup() -> None:
    metadata.create_all(engine)
    app.state.session_sweeper = asyncio.create_task(sweep_import_sessions())


@app.on_event("shutdown")
async def on_shutdown() -> None:
    sweeper = getattr(app.state, "session_sweeper", None)
    if sweeper is None:
        return
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    app.state.session_sweeper = None


@app.exception_handler(PipelineError)
async def handle_pipeline_error(request: Request, exc: PipelineError) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS_CODES.get(exc.kind, 400),
        content={"detail": str(exc), "kind": exc.kind.value},
    )


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class ExpensePayload(BaseModel):
    amount: Decimal
    description: str | None = None
    category: str | None = None
    category_details: list[str] | None = None
    date: date

    @classmethod
    def validate_payload(cls, payload: "ExpensePayload") -> "ExpensePayload":
        if payload.amount == 0:
            raise ValueError("Amount must be non-zero.")
        payload.description = payload.description.strip() if payload.description else None
        payload.category = (payload.category or "").strip() or DEFAULT_CATEGORY
        if payload.category_details is not None:
            payload.category_details = [item.strip() for item in payload.category_details if item.strip()] or None
        return payload


class ExpenseResponse(ExpensePayload):
    id: int
    user_id: int
    category: str
    created_at: datetime | None = None


class CategoryTotal(BaseModel):
    category: str
    total: Decimal


class MonthTotal(BaseModel):
    month: str
    income_total: Decimal
    expense_total: Decimal


class ExpenseSummaryResponse(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    income_total: Decimal
    expense_total: Decimal
    net: Decimal
    transaction_count: int
    by_category: list[CategoryTotal]
    by_month: list[MonthTotal]


class ImportMappingPayload(BaseModel):
    amount: str | None = None
    description: str | None = None
    category: str | None = None
    date: str | None = None
    date_format: str | None = None


class ImportPreviewRow(BaseModel):
    row_index: int
    date: date | None
    amount: Decimal | None = None
    description: str
    category: str
    category_details: list[str] | None = None
    date_source: str | None = None
    status: str
    errors: list[str]


class ImportOutcomeResponse(BaseModel):
    success_count: int
    error_count: int
    failed_batches: list[int]
    skipped_row_count: int
    message: str


class ImportSessionResponse(BaseModel):
    session_id: str
    step: str
    headers: list[str] = []
    mapping: dict[str, str] | None = None
    date_format: str | None = None
    total_count: int | None = None
    valid_count: int | None = None
    error_count: int | None = None
    errors: dict[int, list[str]] | None = None
    rows: list[ImportPreviewRow] | None = None
    outcome: ImportOutcomeResponse | None = None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def get_import_session(session_id: str, user_id: int) -> ImportSession:
    session = import_sessions.get(session_id, user_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Import session not found.")
    return session


def expense_response(row) -> ExpenseResponse:
    return ExpenseResponse(
        id=row["id"],
        user_id=row["user_id"],
        amount=row["amount"],
        description=row["description"],
        category=row["category"],
        category_details=row["category_details"],
        date=row["date"],
        created_at=row["created_at"],
    )


def outcome_response(outcome: ImportOutcome) -> ImportOutcomeResponse:
    return ImportOutcomeResponse(
        success_count=outcome.success_count,
        error_count=outcome.error_count,
        failed_batches=[failure.batch_index for failure in outcome.batch_failures],
        skipped_row_count=len(outcome.validation_errors),
        message=outcome.message,
    )


def session_response(session: ImportSession) -> ImportSessionResponse:
    state = session.state
    response = ImportSessionResponse(session_id=session.session_id, step=session.step)
    if isinstance(state, (MappingStep, PreviewStep)):
        response.headers = list(state.table.headers)
        response.mapping = state.mapping.as_dict()
        response.date_format = state.date_format.value
    if isinstance(state, PreviewStep):
        response.total_count = len(state.records)
        response.valid_count = state.valid_count
        response.error_count = len(state.errors)
        response.errors = state.errors
        response.rows = [
            ImportPreviewRow(
                row_index=record.source_row_index,
                date=record.date,
                amount=record.amount,
                description=record.description,
                category=record.category,
                category_details=list(record.category_details) if record.category_details else None,
                date_source=record.date_source,
                status="error" if record.source_row_index in state.errors else "valid",
                errors=state.errors.get(record.source_row_index, []),
            )
            for record in state.records[: settings.import_preview_limit]
        ]
    if isinstance(state, DoneStep):
        response.outcome = outcome_response(state.outcome)
    return response


def summarize_expenses(rows, start_date: date | None, end_date: date | None) -> ExpenseSummaryResponse:
    income_total = Decimal("0")
    expense_total = Decimal("0")
    by_category: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    by_month: dict[str, list[Decimal]] = defaultdict(lambda: [Decimal("0"), Decimal("0")])
    for row in rows:
        amount = Decimal(str(row["amount"]))
        month_key = row["date"].strftime("%Y-%m")
        if amount > 0:
            income_total += amount
            by_month[month_key][0] += amount
        else:
            expense_total += -amount
            by_month[month_key][1] += -amount
            by_category[row["category"] or DEFAULT_CATEGORY] += -amount
    return ExpenseSummaryResponse(
        start_date=start_date,
        end_date=end_date,
        income_total=income_total,
        expense_total=expense_total,
        net=income_total - expense_total,
        transaction_count=len(rows),
        by_category=[
            CategoryTotal(category=name, total=total)
            for name, total in sorted(by_category.items(), key=lambda item: (-item[1], item[0]))
        ],
        by_month=[
            MonthTotal(month=month, income_total=totals[0], expense_total=totals[1])
            for month, totals in sorted(by_month.items())
        ],
    )


def expense_conditions(user_id: int, start_date: date | None, end_date: date | None, category: str | None):
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must be on or before end_date.")
    conditions = [expenses.c.user_id == user_id]
    if start_date is not None:
        conditions.append(expenses.c.date >= start_date)
    if end_date is not None:
        conditions.append(expenses.c.date <= end_date)
    if category:
        conditions.append(expenses.c.category == category.strip())
    return conditions


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(email=email, hashed_password=hashed_password)
        .returning(users.c.id, users.c.email, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.get("/expenses", response_model=list[ExpenseResponse])
def list_expenses(
    start_date: date | None = None,
    end_date: date | None = None,
    category: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ExpenseResponse]:
    user_id = get_user_id(x_user_id)
    conditions = expense_conditions(user_id, start_date, end_date, category)
    with engine.begin() as conn:
        rows = conn.execute(
            select(expenses).where(*conditions).order_by(expenses.c.date.desc(), expenses.c.id.desc())
        ).mappings().all()
    return [expense_response(row) for row in rows]


@app.get("/expenses/summary", response_model=ExpenseSummaryResponse)
def expense_summary(
    start_date: date | None = None,
    end_date: date | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExpenseSummaryResponse:
    user_id = get_user_id(x_user_id)
    conditions = expense_conditions(user_id, start_date, end_date, None)
    with engine.begin() as conn:
        rows = conn.execute(
            select(expenses.c.amount, expenses.c.category, expenses.c.date).where(*conditions)
        ).mappings().all()
    return summarize_expenses(rows, start_date, end_date)


@app.post("/expenses", response_model=ExpenseResponse)
def create_expense(
    payload: ExpensePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ExpenseResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ExpensePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(expenses)
        .values(user_id=user_id, **payload.model_dump())
        .returning(*expenses.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create expense.")
    return expense_response(row)


@app.get("/expenses/{expense_id}", response_model=ExpenseResponse)
def get_expense(expense_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> ExpenseResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(expenses).where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Expense not found.")
    return expense_response(row)


@app.put("/expenses/{expense_id}", response_model=ExpenseResponse)
def update_expense(
    expense_id: int,
    payload: ExpensePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ExpenseResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ExpensePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        update(expenses)
        .where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
        .values(**payload.model_dump())
        .returning(*expenses.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Expense not found.")
    return expense_response(row)


@app.delete("/expenses/{expense_id}")
def delete_expense(expense_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = expenses.delete().where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Expense not found.")
    return {"status": "deleted"}


async def read_csv_upload(file: UploadFile) -> str:
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="CSV file required.")

    contents = await file.read()
    if len(contents) > settings.import_max_bytes:
        raise HTTPException(status_code=413, detail="CSV file is too large.")
    return decode_csv_bytes(contents)


@app.post("/imports", response_model=ImportSessionResponse)
async def start_import(
    file: UploadFile = File(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ImportSessionResponse:
    user_id = get_user_id(x_user_id)
    contents = await read_csv_upload(file)

    session = import_sessions.create(user_id)
    try:
        await run_in_threadpool(session.upload, contents)
    except ParseError:
        import_sessions.remove(session.session_id, user_id)
        logger.info("Rejected CSV upload", extra={"user_id": user_id, "upload_name": file.filename})
        raise
    return session_response(session)


@app.post("/imports/{session_id}/file", response_model=ImportSessionResponse)
async def upload_import_file(
    session_id: str,
    file: UploadFile = File(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ImportSessionResponse:
    user_id = get_user_id(x_user_id)
    session = get_import_session(session_id, user_id)
    contents = await read_csv_upload(file)
    await run_in_threadpool(session.upload, contents)
    return session_response(session)


@app.get("/imports/{session_id}", response_model=ImportSessionResponse)
def get_import(session_id: str, x_user_id: str | None = Header(None, alias="x-user-id")) -> ImportSessionResponse:
    user_id = get_user_id(x_user_id)
    return session_response(get_import_session(session_id, user_id))


@app.put("/imports/{session_id}/mapping", response_model=ImportSessionResponse)
def update_import_mapping(
    session_id: str,
    payload: ImportMappingPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ImportSessionResponse:
    user_id = get_user_id(x_user_id)
    session = get_import_session(session_id, user_id)
    columns = {
        field_name: getattr(payload, field_name)
        for field_name in MAPPING_FIELDS
        if field_name in payload.model_fields_set
    }
    try:
        date_format = parse_hint(payload.date_format) if "date_format" in payload.model_fields_set else None
        session.update_mapping(columns, date_format)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return session_response(session)


@app.post("/imports/{session_id}/preview", response_model=ImportSessionResponse)
def preview_import(session_id: str, x_user_id: str | None = Header(None, alias="x-user-id")) -> ImportSessionResponse:
    user_id = get_user_id(x_user_id)
    session = get_import_session(session_id, user_id)
    session.preview()
    return session_response(session)


@app.post("/imports/{session_id}/back", response_model=ImportSessionResponse)
def back_to_mapping(session_id: str, x_user_id: str | None = Header(None, alias="x-user-id")) -> ImportSessionResponse:
    user_id = get_user_id(x_user_id)
    session = get_import_session(session_id, user_id)
    session.back()
    return session_response(session)


@app.post("/imports/{session_id}/restart", response_model=ImportSessionResponse)
def restart_import(session_id: str, x_user_id: str | None = Header(None, alias="x-user-id")) -> ImportSessionResponse:
    user_id = get_user_id(x_user_id)
    session = get_import_session(session_id, user_id)
    session.restart()
    return session_response(session)


@app.post("/imports/{session_id}/commit", response_model=ImportOutcomeResponse)
def commit_import(session_id: str, x_user_id: str | None = Header(None, alias="x-user-id")) -> ImportOutcomeResponse:
    user_id = get_user_id(x_user_id)
    session = get_import_session(session_id, user_id)
    outcome = session.confirm_import(
        user_id,
        SqlExpenseStore(engine),
        batch_size=settings.import_batch_size,
    )
    return outcome_response(outcome)


@app.delete("/imports/{session_id}")
def delete_import(session_id: str, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    if not import_sessions.remove(session_id, user_id):
        raise HTTPException(status_code=404, detail="Import session not found.")
    return {"status": "deleted"}
