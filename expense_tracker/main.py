import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timezone
from typing import Union

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, FiniteFloat
from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from expense_tracker.config import Settings, configure_logging
from expense_tracker.db import build_engine, init_db, transactions, users
from expense_tracker.reporting import ExportRow, render_csv
from expense_tracker.security import (
    InvalidSessionToken,
    hash_password,
    issue_session_token,
    password_too_long,
    read_session_token,
    verify_password,
)

logger = logging.getLogger("expense_tracker.api")

EXPENSE_CATEGORIES = [
    "Food & Dining",
    "Transportation",
    "Shopping",
    "Entertainment",
    "Bills & Utilities",
    "Healthcare",
    "Education",
    "Travel",
    "Groceries",
    "Other",
]

INCOME_CATEGORIES = [
    "Salary",
    "Freelance",
    "Investments",
    "Business",
    "Other Income",
]

DateInput = Union[datetime, date]


class CredentialsPayload(BaseModel):
    username: str | None = None
    password: str | None = None


class SessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int = Field(alias="userId")
    username: str
    token: str


class TransactionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int | str | None = Field(None, alias="userId")
    title: str | None = None
    amount: FiniteFloat | None = None
    type: str | None = None
    category: str | None = None
    date: DateInput | None = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    user_id: int = Field(alias="userId")
    title: str | None = None
    amount: float
    type: str | None = None
    category: str | None = None
    date: datetime


class CategoryTotalResponse(BaseModel):
    category: str | None = None
    total: float


class CategoriesResponse(BaseModel):
    expense: list[str]
    income: list[str]


def to_stored_datetime(value: DateInput | None) -> datetime:
    """Naive UTC datetime for the store; a bare date means its midnight."""
    if value is None:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    return datetime.combine(value, time())


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def transaction_response(row) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        amount=row["amount"],
        type=row["type"],
        category=row["category"],
        date=row["date"],
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    engine = build_engine(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting expense tracker API (environment: %s)", settings.environment)
        init_db(engine)
        yield
        engine.dispose()

    app = FastAPI(title="Expense Tracker API", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def store_failure(exc: SQLAlchemyError, status_code: int, fallback: str) -> HTTPException:
        logger.error("Store error: %s", exc, exc_info=exc)
        if settings.is_development:
            return HTTPException(status_code=status_code, detail=str(getattr(exc, "orig", None) or exc))
        return HTTPException(status_code=status_code, detail=fallback)

    def authorize(raw_user_id: int | str | None, authorization: str | None) -> int:
        if raw_user_id is None or raw_user_id == "":
            raise HTTPException(status_code=400, detail="User ID is required")
        try:
            user_id = int(raw_user_id)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="Invalid user identity") from exc

        token = bearer_token(authorization)
        if not token:
            raise HTTPException(
                status_code=401,
                detail="Missing session token",
                headers={"WWW-Authenticate": "Bearer"},
            )
        try:
            session_user_id = read_session_token(token, settings.session_secret)
        except InvalidSessionToken as exc:
            logger.info("Rejected session token for user %s: %s", user_id, exc)
            raise HTTPException(
                status_code=401,
                detail="Invalid session token",
                headers={"WWW-Authenticate": "Bearer"},
            ) from exc
        if session_user_id != user_id:
            logger.warning("Session for user %s used to access user %s", session_user_id, user_id)
            raise HTTPException(status_code=403, detail="Session does not match user")
        return user_id

    def open_session(user_id: int, username: str) -> SessionResponse:
        token = issue_session_token(
            user_id,
            username,
            settings.session_secret,
            settings.session_ttl_minutes,
        )
        return SessionResponse(user_id=user_id, username=username, token=token)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path"))
            problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
        return JSONResponse(status_code=400, content={"message": "; ".join(problems) or "Invalid request"})

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        content = {"message": "Internal Server Error"}
        if settings.is_development:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/categories", response_model=CategoriesResponse)
    def list_categories() -> CategoriesResponse:
        return CategoriesResponse(expense=EXPENSE_CATEGORIES, income=INCOME_CATEGORIES)

    @app.post("/api/users/register", response_model=SessionResponse, status_code=201)
    def register(payload: CredentialsPayload) -> SessionResponse:
        if not payload.username or not payload.password:
            raise HTTPException(status_code=400, detail="Username and password are required")
        if password_too_long(payload.password):
            raise HTTPException(status_code=400, detail="Password must be at most 72 bytes")

        stmt = (
            insert(users)
            .values(username=payload.username, password_hash=hash_password(payload.password))
            .returning(users.c.id, users.c.username)
        )
        try:
            with engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except IntegrityError as exc:
            raise HTTPException(status_code=400, detail="Username already exists") from exc
        except SQLAlchemyError as exc:
            raise store_failure(exc, 400, "Failed to create user") from exc

        if not row:
            raise HTTPException(status_code=500, detail="Failed to create user")
        logger.info("Registered user %s (%s)", row["id"], row["username"])
        return open_session(row["id"], row["username"])

    @app.post("/api/users/login", response_model=SessionResponse)
    def login(payload: CredentialsPayload) -> SessionResponse:
        row = None
        if payload.username:
            try:
                with engine.begin() as conn:
                    row = conn.execute(
                        select(users).where(users.c.username == payload.username)
                    ).mappings().first()
            except SQLAlchemyError as exc:
                raise store_failure(exc, 500, "Failed to log in") from exc

        stored_hash = row["password_hash"] if row else None
        if not verify_password(payload.password or "", stored_hash):
            logger.info("Failed login for username %r", payload.username)
            raise HTTPException(status_code=401, detail="Invalid credentials")
        return open_session(row["id"], row["username"])

    @app.get("/api/transactions", response_model=list[TransactionResponse])
    def list_transactions(
        user_id: str | None = Query(None, alias="userId"),
        authorization: str | None = Header(None),
    ) -> list[TransactionResponse]:
        owner_id = authorize(user_id, authorization)
        stmt = (
            select(transactions)
            .where(transactions.c.user_id == owner_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        )
        try:
            with engine.begin() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            raise store_failure(exc, 500, "Failed to load transactions") from exc
        return [transaction_response(row) for row in rows]

    @app.post("/api/transactions", response_model=TransactionResponse, status_code=201)
    def create_transaction(
        payload: TransactionPayload,
        authorization: str | None = Header(None),
    ) -> TransactionResponse:
        owner_id = authorize(payload.user_id, authorization)
        if payload.amount is None:
            raise HTTPException(status_code=400, detail="Amount is required")

        stmt = (
            insert(transactions)
            .values(
                user_id=owner_id,
                title=payload.title,
                amount=payload.amount,
                type=payload.type,
                category=payload.category,
                date=to_stored_datetime(payload.date),
            )
            .returning(*transactions.c)
        )
        try:
            with engine.begin() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise store_failure(exc, 400, "Failed to create transaction") from exc

        if not row:
            raise HTTPException(status_code=500, detail="Failed to create transaction")
        return transaction_response(row)

    @app.get("/api/transactions/export")
    def export_transactions(
        user_id: str | None = Query(None, alias="userId"),
        authorization: str | None = Header(None),
    ) -> Response:
        owner_id = authorize(user_id, authorization)
        stmt = (
            select(transactions)
            .where(transactions.c.user_id == owner_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        )
        try:
            with engine.begin() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            raise store_failure(exc, 500, "Failed to export transactions") from exc

        content = render_csv(
            ExportRow(
                amount=row["amount"],
                date=row["date"],
                title=row["title"],
                category=row["category"],
            )
            for row in rows
        )
        return Response(
            content=content,
            media_type="text/csv",
            headers={"Content-Disposition": "attachment; filename=transactions.csv"},
        )

    @app.get("/api/transactions/summary", response_model=list[CategoryTotalResponse])
    def transaction_summary(
        user_id: str | None = Query(None, alias="userId"),
        authorization: str | None = Header(None),
    ) -> list[CategoryTotalResponse]:
        owner_id = authorize(user_id, authorization)
        total_expr = func.coalesce(func.sum(transactions.c.amount), 0).label("total")
        stmt = (
            select(transactions.c.category, total_expr)
            .where(transactions.c.user_id == owner_id)
            .group_by(transactions.c.category)
        )
        try:
            with engine.begin() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            raise store_failure(exc, 500, "Failed to summarize transactions") from exc
        return [CategoryTotalResponse(category=row["category"], total=row["total"]) for row in rows]

    @app.delete("/api/transactions/{transaction_id}", status_code=204)
    def delete_transaction(
        transaction_id: int,
        user_id: str | None = Query(None, alias="userId"),
        authorization: str | None = Header(None),
    ) -> Response:
        owner_id = authorize(user_id, authorization)
        stmt = transactions.delete().where(
            transactions.c.id == transaction_id,
            transactions.c.user_id == owner_id,
        )
        try:
            with engine.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise store_failure(exc, 400, "Failed to delete transaction") from exc
        return Response(status_code=204)

    return app


def run() -> None:
    settings = Settings.from_env()
    logger.info("Server is running on port %s", settings.port)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
