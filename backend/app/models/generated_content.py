"""GeneratedContent model for results a caller chose to keep.

A pipeline step never writes on its own. When the caller applies a result,
it is stored under a caller-chosen id so repeating the write is harmless:
- step and format describe where the content came from
- content is the main text; payload keeps the full structured result
- Timestamps for auditing
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class GeneratedContent(Base):
    """Persisted pipeline result.

    Attributes:
        id: Caller-chosen id (idempotency key)
        user_id: Author of the result
        workspace_id: Workspace the result belongs to, if any
        step: Pipeline step that produced it (generate, adjust, recycle, ...)
        format: Content format (post, reel, carrousel, newsletter, ...)
        content: Main text of the result
        payload: JSONB copy of the whole step output
        created_at: Timestamp of the first write
        updated_at: Timestamp of the latest write

    Example payload structure (step "generate"):
        {
            "content": "Three years ago I almost quit...",
            "accroche": "I almost quit.",
            "format": "post",
            "pillar": "behind the scenes",
            "objective": "trust"
        }
    """

    __tablename__ = "generated_contents"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )

    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )

    workspace_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    step: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    format: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )

    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
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
        return f"<GeneratedContent(id={self.id!r}, step={self.step!r}, format={self.format!r})>"
