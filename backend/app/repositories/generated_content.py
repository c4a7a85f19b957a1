"""GeneratedContentRepository for results applied by the caller.

Writes are keyed by a caller-chosen id, so repeating a write leaves the
same row behind.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import db_logger, get_logger
from app.models.generated_content import GeneratedContent

logger = get_logger(__name__)


class GeneratedContentOwnershipError(Exception):
    """Raised when a write targets an id owned by someone else."""

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Record {record_id} belongs to another owner")


class GeneratedContentRepository:
    """Repository for persisted pipeline results."""

    TABLE_NAME = "generated_contents"

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, record_id: str) -> GeneratedContent | None:
        result = await self.session.execute(
            select(GeneratedContent).where(GeneratedContent.id == record_id)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        record_id: str,
        user_id: str,
        workspace_id: str | None,
        step: str,
        content: str,
        format: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> tuple[GeneratedContent, bool]:
        """Create or overwrite the record stored under ``record_id``.

        Returns:
            Tuple of (record, created)

        Raises:
            GeneratedContentOwnershipError: If the id is taken by another owner
            SQLAlchemyError: On database errors
        """
        try:
            record = await self.get_by_id(record_id)
            created = record is None

            if record is None:
                record = GeneratedContent(
                    id=record_id,
                    user_id=user_id,
                    workspace_id=workspace_id,
                )
                self.session.add(record)
            elif record.user_id != user_id and (
                workspace_id is None or record.workspace_id != workspace_id
            ):
                raise GeneratedContentOwnershipError(record_id)

            record.step = step
            record.format = format
            record.content = content
            record.payload = payload or {}
            await self.session.flush()

            logger.info(
                "Generated content saved",
                extra={
                    "record_id": record_id,
                    "user_id": user_id,
                    "workspace_id": workspace_id,
                    "step": step,
                    "created": created,
                },
            )
            return record, created

        except SQLAlchemyError as e:
            db_logger.transaction_failure(
                e,
                table=self.TABLE_NAME,
                context=f"Saving generated content {record_id}",
            )
            raise
