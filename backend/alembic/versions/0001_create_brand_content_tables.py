"""Create brand_records, subject_plans, usage_counters and generated_contents.

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Create the brand profile, quota and result tables."""
    op.create_table(
        "brand_records",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=False),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("workspace_id", sa.String(length=255), nullable=True),
        sa.Column(
            "data",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            "is_primary",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_brand_records_user_category",
        "brand_records",
        ["user_id", "category"],
        unique=False,
    )
    op.create_index(
        "ix_brand_records_workspace_category",
        "brand_records",
        ["workspace_id", "category"],
        unique=False,
    )

    op.create_table(
        "subject_plans",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=False),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column(
            "plan",
            sa.String(length=50),
            server_default=sa.text("'free'"),
            nullable=False,
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_subject_plans_owner_id"),
        "subject_plans",
        ["owner_id"],
        unique=True,
    )

    op.create_table(
        "usage_counters",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=False),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column("count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "owner_id",
            "category",
            "period",
            name="uq_usage_counters_owner_category_period",
        ),
    )
    op.create_index(
        op.f("ix_usage_counters_owner_id"),
        "usage_counters",
        ["owner_id"],
        unique=False,
    )

    op.create_table(
        "generated_contents",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("workspace_id", sa.String(length=255), nullable=True),
        sa.Column("step", sa.String(length=50), nullable=False),
        sa.Column("format", sa.String(length=50), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_generated_contents_user_id"),
        "generated_contents",
        ["user_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_generated_contents_workspace_id"),
        "generated_contents",
        ["workspace_id"],
        unique=False,
    )


def downgrade() -> None:
    """Drop the brand profile, quota and result tables."""
    op.drop_index(op.f("ix_generated_contents_workspace_id"), table_name="generated_contents")
    op.drop_index(op.f("ix_generated_contents_user_id"), table_name="generated_contents")
    op.drop_table("generated_contents")
    op.drop_index(op.f("ix_usage_counters_owner_id"), table_name="usage_counters")
    op.drop_table("usage_counters")
    op.drop_index(op.f("ix_subject_plans_owner_id"), table_name="subject_plans")
    op.drop_table("subject_plans")
    op.drop_index("ix_brand_records_workspace_category", table_name="brand_records")
    op.drop_index("ix_brand_records_user_category", table_name="brand_records")
    op.drop_table("brand_records")
