"""Pytest configuration and fixtures.

Provides fixtures for:
- Database mocking with SQLite in-memory
- A fake clock for the burst limiter and plan cache
- An in-memory record store for context aggregation
- A mocked Claude client
- Admission gate, context aggregator and pipeline wired to the test database
- FastAPI async test client
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "text")

from collections.abc import AsyncGenerator, Callable, Generator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy.types import JSON, String

from app.core.config import Settings
from app.core.database import Base, DatabaseManager, db_manager
from app.integrations.claude import ClaudeClient, CompletionResult
from app.models import BrandRecord, RecordCategory, SubjectPlan, UsageCounter
from app.schemas.subject import OwnerKey, Subject
from app.services.admission import (
    AdmissionGate,
    BurstLimiter,
    QuotaService,
    SqlUsageStore,
)
from app.services.context_aggregator import ContextAggregator, ContextLimits
from app.services.pipeline import GenerationPipeline
from app.services.record_store import StoreUnavailableError

# Frozen "now" for quota periods: mid-month so renewal is the 1st of next month
FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# SQLite Type Compatibility
# ---------------------------------------------------------------------------


def _adapt_postgres_types_for_sqlite() -> None:
    """Adapt PostgreSQL-specific column types and defaults to work with SQLite.

    Tests use SQLite in memory while production uses PostgreSQL.
    """
    postgres_defaults = ("gen_random_uuid()", "::jsonb", "now()")
    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, UUID):
                column.type = String(36)
            elif isinstance(column.type, JSONB):
                column.type = JSON()

            if column.server_default is not None:
                default_text = str(getattr(column.server_default, "arg", column.server_default))
                if any(pg_default in default_text for pg_default in postgres_defaults):
                    column.server_default = None


# ---------------------------------------------------------------------------
# Settings Fixtures
# ---------------------------------------------------------------------------


def get_test_settings() -> Settings:
    """Get test settings with SQLite database."""
    return Settings(
        app_name="Test App",
        app_version="0.0.1",
        debug=True,
        environment="test",
        database_url="sqlite+aiosqlite:///:memory:",
        log_level="DEBUG",
        log_format="text",
    )


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    return get_test_settings()


# ---------------------------------------------------------------------------
# Database Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory SQLite database per test.

    StaticPool keeps the single connection alive so every session sees the
    same database.
    """
    _adapt_postgres_types_for_sqlite()

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
async def file_session_factory(
    tmp_path: Path,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """File-backed SQLite where every session opens its own connection.

    Lets concurrent transactions contend for the database lock the way
    separate pool connections do against PostgreSQL.
    """
    _adapt_postgres_types_for_sqlite()

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'quota.db'}",
        connect_args={"timeout": 30},
        poolclass=NullPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    await engine.dispose()


@pytest.fixture
def async_session_factory(
    async_engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db_session(
    async_session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def mock_db_manager(
    async_engine: AsyncEngine,
    async_session_factory: async_sessionmaker[AsyncSession],
) -> Generator[DatabaseManager, None, None]:
    """Point the global database manager at the test database."""
    original_engine = db_manager._engine
    original_factory = db_manager._session_factory

    db_manager._engine = async_engine
    db_manager._session_factory = async_session_factory

    yield db_manager

    db_manager._engine = original_engine
    db_manager._session_factory = original_factory


# ---------------------------------------------------------------------------
# Data Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def seed_record(
    async_session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Insert a brand record.

    Usage:
        await seed_record("persona", "user-1", {"frustrations": "..."})
    """

    async def _seed(
        category: str,
        user_id: str,
        data: dict[str, Any],
        workspace_id: str | None = None,
        is_primary: bool = False,
        created_at: datetime | None = None,
    ) -> BrandRecord:
        async with async_session_factory() as session:
            record = BrandRecord(
                category=category,
                user_id=user_id,
                workspace_id=workspace_id,
                data=data,
                is_primary=is_primary,
            )
            if created_at is not None:
                record.created_at = created_at
            session.add(record)
            await session.commit()
            return record

    return _seed


@pytest.fixture
def seed_plan(
    async_session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Assign a plan tier to an owner."""

    async def _seed(owner_id: str, plan: str) -> None:
        async with async_session_factory() as session:
            session.add(SubjectPlan(owner_id=owner_id, plan=plan))
            await session.commit()

    return _seed


@pytest.fixture
def seed_usage(
    async_session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Set a usage counter for an owner in a period (defaults to October 2026)."""

    async def _seed(owner_id: str, category: str, count: int, period: str = "2026-10") -> None:
        async with async_session_factory() as session:
            session.add(
                UsageCounter(owner_id=owner_id, category=category, period=period, count=count)
            )
            await session.commit()

    return _seed


# ---------------------------------------------------------------------------
# Record Store
# ---------------------------------------------------------------------------


class InMemoryRecordStore:
    """RecordStore over a plain list, insertion order standing in for created_at."""

    def __init__(self) -> None:
        self.rows: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None

    def add(
        self,
        category: RecordCategory | str,
        data: dict[str, Any],
        user_id: str = "user-1",
        workspace_id: str | None = None,
        is_primary: bool = False,
    ) -> None:
        self.rows.append(
            {
                "category": RecordCategory(category),
                "user_id": user_id,
                "workspace_id": workspace_id,
                "data": data,
                "is_primary": is_primary,
                "seq": len(self.rows),
            }
        )

    def _matching(self, category: RecordCategory, owner: OwnerKey) -> list[dict[str, Any]]:
        if self.fail_with is not None:
            raise StoreUnavailableError(f"read {category.value}", self.fail_with)
        return [
            row
            for row in self.rows
            if row["category"] == category and row[owner.column] == owner.value
        ]

    async def get_latest(
        self,
        category: RecordCategory,
        owner: OwnerKey,
        prefer_primary: bool = False,
    ) -> dict[str, Any] | None:
        rows = self._matching(category, owner)
        if not rows:
            return None
        if prefer_primary:
            best = max(rows, key=lambda row: (row["is_primary"], row["seq"]))
        else:
            best = max(rows, key=lambda row: row["seq"])
        return dict(best["data"])

    async def list_all(
        self, category: RecordCategory, owner: OwnerKey
    ) -> list[dict[str, Any]]:
        return [dict(row["data"]) for row in self._matching(category, owner)]


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Claude Fixtures
# ---------------------------------------------------------------------------


def completion(text: str) -> CompletionResult:
    """Build a CompletionResult for a mocked provider answer."""
    return CompletionResult(
        text=text,
        stop_reason="end_turn",
        input_tokens=100,
        output_tokens=50,
        duration_ms=12.0,
        request_id="req_test",
    )


@pytest.fixture
def mock_claude() -> MagicMock:
    """Claude client whose ``complete`` is an AsyncMock."""
    client = MagicMock(spec=ClaudeClient)
    client.available = True
    client.model = "claude-test"
    client.complete = AsyncMock(return_value=completion('{"content": "ok"}'))
    return client


# ---------------------------------------------------------------------------
# Service Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def subject() -> Subject:
    return Subject(user_id="user-1")


@pytest.fixture
def workspace_subject() -> Subject:
    return Subject(user_id="user-1", workspace_id="ws-1")


@pytest.fixture
def quota_service(
    async_session_factory: async_sessionmaker[AsyncSession], clock: FakeClock
) -> QuotaService:
    return QuotaService(
        SqlUsageStore(async_session_factory),
        plan_cache_ttl=60.0,
        clock=clock,
        now=lambda: FIXED_NOW,
    )


@pytest.fixture
def admission_gate(clock: FakeClock, quota_service: QuotaService) -> AdmissionGate:
    return AdmissionGate(
        burst=BurstLimiter(max_requests=20, window_seconds=60.0, clock=clock),
        quota=quota_service,
    )


@pytest.fixture
def aggregator(record_store: InMemoryRecordStore) -> ContextAggregator:
    return ContextAggregator(
        record_store,
        limits=ContextLimits(max_field_chars=1500, max_section_chars=4000, max_total_chars=12000),
    )


@pytest.fixture
def pipeline(
    admission_gate: AdmissionGate,
    aggregator: ContextAggregator,
    mock_claude: MagicMock,
    async_session_factory: async_sessionmaker[AsyncSession],
) -> GenerationPipeline:
    return GenerationPipeline(
        gate=admission_gate,
        aggregator=aggregator,
        client=mock_claude,
        session_factory=async_session_factory,
        step_timeout=5.0,
        rules="RULES",
    )


# ---------------------------------------------------------------------------
# FastAPI Test Client Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def app(
    mock_db_manager: DatabaseManager,
    admission_gate: AdmissionGate,
    pipeline: GenerationPipeline,
):
    """FastAPI app with the test pipeline on its state.

    ASGITransport does not run the lifespan, so state is set here.
    """
    from app.main import create_app

    application = create_app()
    application.state.admission_gate = admission_gate
    application.state.pipeline = pipeline
    return application


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-User-Id": "user-1"},
    ) as ac:
        yield ac


@pytest.fixture
def make_completion() -> Callable[[str], CompletionResult]:
    """Factory for mocked provider answers."""
    return completion
