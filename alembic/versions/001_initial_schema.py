"""Initial schema with delayed_jobs table

Revision ID: 001
Revises: 
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "delayed_jobs",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("handler", JSON_TYPE, nullable=False),
        sa.Column("result", JSON_TYPE, nullable=True),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column("unique_key", sa.String(20), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        # Stored as text so no database enum type is needed
        sa.Column("state", sa.String(20), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("unique_key", name="uq_delayed_jobs_unique_key"),
    )

    # Create indexes
    op.create_index("ix_delayed_jobs_locked_by", "delayed_jobs", ["locked_by"])
    op.create_index(
        "ix_delayed_jobs_poll",
        "delayed_jobs",
        ["state", "priority", "run_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_delayed_jobs_poll", table_name="delayed_jobs")
    op.drop_index("ix_delayed_jobs_locked_by", table_name="delayed_jobs")
    op.drop_table("delayed_jobs")
