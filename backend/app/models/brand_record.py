"""BrandRecord model storing one piece of a subject's brand profile.

Every category of profile data (story, persona, offers, audits, ...) lives
in the same table:
- category: which kind of profile data the row carries
- user_id / workspace_id: owner keys; workspace-scoped rows carry both
- data: the category payload as JSONB
- is_primary: marks the preferred row when a category holds several
- Timestamps drive "latest" selection
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Index, String, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class RecordCategory(str, Enum):
    """Kinds of brand profile data a subject can store."""

    STORY = "story"
    PERSONA = "persona"
    BRAND_VOICE = "brand_voice"
    PROPOSITION = "proposition"
    STRATEGY = "strategy"
    EDITORIAL_LINE = "editorial_line"
    PROFILE = "profile"
    OFFER = "offer"
    AUDIT = "audit"
    VOICE_PROFILE = "voice_profile"


# Personal data that never moves into a shared workspace.
IDENTITY_ONLY_CATEGORIES: frozenset[RecordCategory] = frozenset(
    {RecordCategory.PROFILE, RecordCategory.VOICE_PROFILE}
)


class BrandRecord(Base):
    """Brand profile record.

    Attributes:
        id: UUID primary key
        category: RecordCategory value
        user_id: Primary identity that owns the record
        workspace_id: Collective scope the record belongs to, if any
        data: JSONB category payload
        is_primary: Whether this row is the preferred one of its category
        created_at: Timestamp when the record was created
        updated_at: Timestamp when the record was last updated

    Example data structure (category "persona"):
        {
            "description": "Freelance coaches launching their first offer",
            "frustrations": "No time to post, feel invisible",
            "desires": "A steady flow of qualified leads",
            "channels": ["instagram", "linkedin"]
        }
    """

    __tablename__ = "brand_records"
    __table_args__ = (
        Index("ix_brand_records_user_category", "user_id", "category"),
        Index("ix_brand_records_workspace_category", "workspace_id", "category"),
    )

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
        server_default=text("gen_random_uuid()"),
    )

    category: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    workspace_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    data: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )

    is_primary: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
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
        return f"<BrandRecord(id={self.id!r}, category={self.category!r}, user_id={self.user_id!r})>"
