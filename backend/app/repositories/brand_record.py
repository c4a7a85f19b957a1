"""BrandRecordRepository for brand profile records.

Handles all database operations for BrandRecord entities.
Follows the layered architecture pattern: API -> Service -> Repository -> Database.

ERROR LOGGING REQUIREMENTS:
- Log method entry/exit at DEBUG level with parameters (sanitized)
- Log all exceptions with context
- Include owner keys and categories in all logs
- Add timing logs for operations >1 second
"""

import time
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from app.core.logging import db_logger, get_logger
from app.models.brand_record import BrandRecord, RecordCategory
from app.schemas.subject import OwnerKey

logger = get_logger(__name__)


def _owner_clause(owner: OwnerKey) -> ColumnElement[bool]:
    if owner.column == "workspace_id":
        return BrandRecord.workspace_id == owner.value
    if owner.column == "user_id":
        return BrandRecord.user_id == owner.value
    raise ValueError(f"Unknown owner column: {owner.column}")


class BrandRecordRepository:
    """Repository for reading and writing brand profile records.

    All methods accept an AsyncSession and handle database operations
    with logging as required.
    """

    TABLE_NAME = "brand_records"
    SLOW_OPERATION_THRESHOLD_MS = 1000  # 1 second

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _check_slow(self, query: str, start_time: float) -> float:
        duration_ms = (time.monotonic() - start_time) * 1000
        if duration_ms > self.SLOW_OPERATION_THRESHOLD_MS:
            db_logger.slow_query(
                query=query,
                duration_ms=duration_ms,
                table=self.TABLE_NAME,
            )
        return duration_ms

    async def get_latest(
        self,
        category: RecordCategory,
        owner: OwnerKey,
        prefer_primary: bool = False,
    ) -> BrandRecord | None:
        """Get the newest record of a category for an owner.

        Args:
            category: Record category to read
            owner: Owner column and value to filter on
            prefer_primary: Rank rows flagged is_primary before newer ones

        Returns:
            BrandRecord if the owner has one, None otherwise

        Raises:
            SQLAlchemyError: On database errors
        """
        start_time = time.monotonic()
        order_by = [BrandRecord.created_at.desc(), BrandRecord.id.desc()]
        if prefer_primary:
            order_by.insert(0, BrandRecord.is_primary.desc())

        try:
            result = await self.session.execute(
                select(BrandRecord)
                .where(BrandRecord.category == category.value, _owner_clause(owner))
                .order_by(*order_by)
                .limit(1)
            )
            record = result.scalar_one_or_none()

            duration_ms = self._check_slow(
                f"SELECT latest FROM brand_records WHERE category={category.value}",
                start_time,
            )
            logger.debug(
                "Brand record fetch completed",
                extra={
                    "category": category.value,
                    "owner_column": owner.column,
                    "owner_id": owner.value,
                    "found": record is not None,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            return record

        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch brand record",
                extra={
                    "category": category.value,
                    "owner_column": owner.column,
                    "owner_id": owner.value,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
                exc_info=True,
            )
            raise

    async def list_by_owner(
        self,
        category: RecordCategory,
        owner: OwnerKey,
    ) -> list[BrandRecord]:
        """Get every record of a category for an owner, oldest first.

        Raises:
            SQLAlchemyError: On database errors
        """
        start_time = time.monotonic()

        try:
            result = await self.session.execute(
                select(BrandRecord)
                .where(BrandRecord.category == category.value, _owner_clause(owner))
                .order_by(BrandRecord.created_at.asc(), BrandRecord.id.asc())
            )
            records = list(result.scalars().all())

            duration_ms = self._check_slow(
                f"SELECT all FROM brand_records WHERE category={category.value}",
                start_time,
            )
            logger.debug(
                "Brand record list completed",
                extra={
                    "category": category.value,
                    "owner_column": owner.column,
                    "owner_id": owner.value,
                    "count": len(records),
                    "duration_ms": round(duration_ms, 2),
                },
            )
            return records

        except SQLAlchemyError as e:
            logger.error(
                "Failed to list brand records",
                extra={
                    "category": category.value,
                    "owner_column": owner.column,
                    "owner_id": owner.value,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
                exc_info=True,
            )
            raise

    async def create(
        self,
        category: RecordCategory,
        user_id: str,
        data: dict[str, Any],
        workspace_id: str | None = None,
        is_primary: bool = False,
        created_at: datetime | None = None,
    ) -> BrandRecord:
        """Create a brand record.

        Raises:
            SQLAlchemyError: On database errors
        """
        try:
            record = BrandRecord(
                category=category.value,
                user_id=user_id,
                workspace_id=workspace_id,
                data=data,
                is_primary=is_primary,
            )
            if created_at is not None:
                record.created_at = created_at
                record.updated_at = created_at
            self.session.add(record)
            await self.session.flush()

            logger.info(
                "Brand record created",
                extra={
                    "brand_record_id": record.id,
                    "category": category.value,
                    "user_id": user_id,
                    "workspace_id": workspace_id,
                },
            )
            return record

        except SQLAlchemyError as e:
            db_logger.transaction_failure(
                e,
                table=self.TABLE_NAME,
                context=f"Creating {category.value} record for user_id={user_id}",
            )
            raise
