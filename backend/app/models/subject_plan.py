"""SubjectPlan model holding the plan tier of a quota owner.

The owner is the workspace id for workspace-scoped subjects, else the user
id. A missing row means the owner is on the free tier.
"""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import DateTime, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class SubjectPlan(Base):
    """Plan tier assignment.

    Attributes:
        id: UUID primary key
        owner_id: User or workspace id (unique)
        plan: Tier name (free, outil, studio, pilot)
        created_at: Timestamp when the row was created
        updated_at: Timestamp when the tier last changed
    """

    __tablename__ = "subject_plans"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
        server_default=text("gen_random_uuid()"),
    )

    owner_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
    )

    plan: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="free",
        server_default=text("'free'"),
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
        return f"<SubjectPlan(owner_id={self.owner_id!r}, plan={self.plan!r})>"
