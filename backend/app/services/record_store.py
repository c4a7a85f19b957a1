"""Record store client used by the context aggregator.

The aggregator only needs two reads per category: the newest record and
every record. ``SqlRecordStore`` answers them from the brand_records table,
opening its own short session per call so reads can run concurrently.
"""

from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import session_scope
from app.core.logging import get_logger
from app.models.brand_record import RecordCategory
from app.repositories.brand_record import BrandRecordRepository
from app.schemas.subject import OwnerKey

logger = get_logger(__name__)

# Errors meaning the database could not be used
STORE_ERRORS = (SQLAlchemyError, OSError)


class StoreUnavailableError(Exception):
    """Raised when the record store cannot be reached or errors out."""

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"Record store unavailable during {operation}")


class RecordStore(Protocol):
    """Read access to brand records by owner key."""

    async def get_latest(
        self,
        category: RecordCategory,
        owner: OwnerKey,
        prefer_primary: bool = False,
    ) -> dict[str, Any] | None: ...

    async def list_all(
        self, category: RecordCategory, owner: OwnerKey
    ) -> list[dict[str, Any]]: ...


class SqlRecordStore:
    """RecordStore backed by SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_latest(
        self,
        category: RecordCategory,
        owner: OwnerKey,
        prefer_primary: bool = False,
    ) -> dict[str, Any] | None:
        try:
            async with session_scope(
                self._session_factory, table=BrandRecordRepository.TABLE_NAME
            ) as session:
                record = await BrandRecordRepository(session).get_latest(
                    category, owner, prefer_primary=prefer_primary
                )
                return dict(record.data or {}) if record is not None else None
        except STORE_ERRORS as e:
            raise StoreUnavailableError(f"read {category.value}", e) from e

    async def list_all(
        self, category: RecordCategory, owner: OwnerKey
    ) -> list[dict[str, Any]]:
        try:
            async with session_scope(
                self._session_factory, table=BrandRecordRepository.TABLE_NAME
            ) as session:
                records = await BrandRecordRepository(session).list_by_owner(
                    category, owner
                )
                return [dict(record.data or {}) for record in records]
        except STORE_ERRORS as e:
            raise StoreUnavailableError(f"list {category.value}", e) from e
