"""Repositories for plan tiers and monthly usage counters.

ERROR LOGGING REQUIREMENTS:
- Log all exceptions with owner and category context
- Log counter changes at DEBUG level
"""

from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import db_logger, get_logger
from app.models.subject_plan import SubjectPlan
from app.models.usage_counter import UsageCounter

logger = get_logger(__name__)


class SubjectPlanRepository:
    """Reads and assigns plan tiers."""

    TABLE_NAME = "subject_plans"

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_plan(self, owner_id: str) -> str | None:
        """Return the plan name of an owner, or None without a plan row."""
        result = await self.session.execute(
            select(SubjectPlan.plan).where(SubjectPlan.owner_id == owner_id)
        )
        return result.scalar_one_or_none()

    async def set_plan(self, owner_id: str, plan: str) -> SubjectPlan:
        """Create or change the plan row of an owner."""
        try:
            result = await self.session.execute(
                select(SubjectPlan).where(SubjectPlan.owner_id == owner_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = SubjectPlan(owner_id=owner_id, plan=plan)
                self.session.add(row)
            else:
                row.plan = plan
            await self.session.flush()
            logger.info(
                "Plan assigned",
                extra={"owner_id": owner_id, "plan": plan},
            )
            return row

        except SQLAlchemyError as e:
            db_logger.transaction_failure(
                e,
                table=self.TABLE_NAME,
                context=f"Assigning plan {plan} to owner_id={owner_id}",
            )
            raise


class UsageCounterRepository:
    """Monthly usage counters keyed by (owner, category, period)."""

    TABLE_NAME = "usage_counters"

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _insert(self):  # type: ignore[no-untyped-def]
        dialect = self.session.bind.dialect.name if self.session.bind else "postgresql"
        if dialect == "sqlite":
            return sqlite.insert(UsageCounter)
        return postgresql.insert(UsageCounter)

    async def increment_if_below(
        self,
        owner_id: str,
        category: str,
        period: str,
        limit: int,
    ) -> int | None:
        """Consume one unit if the counter is still below ``limit``.

        Insert-or-increment runs as one statement; the conditional update
        leaves the row untouched once the ceiling is reached, in which case
        nothing is returned.

        Args:
            owner_id: User or workspace the usage is billed to
            category: Quota category
            period: Month as YYYY-MM
            limit: Ceiling for the month (must be >= 1)

        Returns:
            The new count, or None when the ceiling was already reached

        Raises:
            SQLAlchemyError: On database errors
        """
        now = datetime.now(UTC)
        stmt = self._insert().values(
            owner_id=owner_id,
            category=category,
            period=period,
            count=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                UsageCounter.owner_id,
                UsageCounter.category,
                UsageCounter.period,
            ],
            set_={"count": UsageCounter.count + 1, "updated_at": now},
            where=UsageCounter.count < limit,
        ).returning(UsageCounter.count)

        try:
            result = await self.session.execute(stmt)
            count = result.scalar_one_or_none()
            logger.debug(
                "Usage counter increment",
                extra={
                    "owner_id": owner_id,
                    "category": category,
                    "period": period,
                    "limit": limit,
                    "count": count,
                },
            )
            return count

        except SQLAlchemyError as e:
            db_logger.transaction_failure(
                e,
                table=self.TABLE_NAME,
                context=f"Incrementing {category} for owner_id={owner_id}",
            )
            raise

    async def get_counts(self, owner_id: str, period: str) -> dict[str, int]:
        """Return category -> count for one owner and month."""
        result = await self.session.execute(
            select(UsageCounter.category, UsageCounter.count).where(
                UsageCounter.owner_id == owner_id,
                UsageCounter.period == period,
            )
        )
        return {category: count for category, count in result.all()}
