"""UsageCounter model for monthly quota accounting.

One row per (owner, category, month). The count only grows within a month;
the next month starts a new row. The unique constraint is the conflict
target of the atomic increment.
"""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class UsageCounter(Base):
    """Monthly usage counter.

    Attributes:
        id: UUID primary key
        owner_id: User or workspace id the usage is billed to
        category: Quota category (content, audit, ...) or "total" for the
            all-category counter
        period: Calendar month in UTC, formatted YYYY-MM
        count: Actions consumed in that month
        created_at: First use in the month
        updated_at: Latest use in the month
    """

    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint(
            "owner_id", "category", "period", name="uq_usage_counters_owner_category_period"
        ),
    )

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
        server_default=text("gen_random_uuid()"),
    )

    owner_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )

    category: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    period: Mapped[str] = mapped_column(
        String(7),
        nullable=False,
    )

    count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        server_default=text("now()"),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        server_default=text("now()"),
        onupdate=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageCounter(owner_id={self.owner_id!r}, category={self.category!r}, "
            f"period={self.period!r}, count={self.count!r})>"
        )
