"""Persisted sync-run status, sync metadata and per-feed statistics.

Revision ID: 002
Revises: 001
Create Date: 2026-10-06
"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "sync_runs",
        sa.Column("sync_id", sa.String, primary_key=True),
        sa.Column("status", sa.String, nullable=False, server_default="pending"),
        sa.Column("progress", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("message", sa.String, nullable=True),
        sa.Column("error", sa.String, nullable=True),
        sa.Column("metrics", sa.Text, server_default="{}"),
        sa.Column("started_at", sa.DateTime),
        sa.Column("updated_at", sa.DateTime),
        sa.Column("finished_at", sa.DateTime, nullable=True),
        sa.Column("expires_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_sync_runs_status", "sync_runs", ["status"])

    op.create_table(
        "sync_metadata",
        sa.Column("key", sa.String, primary_key=True),
        sa.Column("value", sa.Text, nullable=False),
        sa.Column("updated_at", sa.DateTime),
    )

    op.create_table(
        "feed_stats",
        sa.Column("feed_id", sa.Integer, sa.ForeignKey("feeds.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("total_count", sa.Integer, server_default=sa.text("0")),
        sa.Column("unread_count", sa.Integer, server_default=sa.text("0")),
        sa.Column("starred_count", sa.Integer, server_default=sa.text("0")),
        sa.Column("refreshed_at", sa.DateTime),
    )


def downgrade() -> None:
    op.drop_table("feed_stats")
    op.drop_table("sync_metadata")
    op.drop_index("ix_sync_runs_status", table_name="sync_runs")
    op.drop_table("sync_runs")
