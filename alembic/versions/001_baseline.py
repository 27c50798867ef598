"""Baseline: feeds, folders, articles, sync queue, usage, deletions, tunables.

Revision ID: 001
Revises:
Create Date: 2026-09-28
"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "folders",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("provider_id", sa.String, unique=True, nullable=False),
        sa.Column("name", sa.String, server_default=""),
        sa.Column("updated_at", sa.DateTime),
    )

    op.create_table(
        "feeds",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("provider_id", sa.String, unique=True, nullable=False),
        sa.Column("title", sa.String, server_default=""),
        sa.Column("url", sa.String, server_default=""),
        sa.Column("folder_id", sa.Integer, sa.ForeignKey("folders.id"), nullable=True),
        sa.Column("unread_count", sa.Integer, server_default=sa.text("0")),
        sa.Column("is_partial_feed", sa.Boolean, server_default=sa.text("0")),
        sa.Column("last_synced_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime),
    )

    op.create_table(
        "articles",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("feed_id", sa.Integer, sa.ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider_id", sa.String, unique=True, nullable=False),
        sa.Column("title", sa.String, server_default=""),
        sa.Column("author", sa.String, server_default=""),
        sa.Column("url", sa.String, server_default=""),
        sa.Column("content", sa.Text, server_default=""),
        sa.Column("full_content", sa.Text, nullable=True),
        sa.Column("is_read", sa.Boolean, server_default=sa.text("0")),
        sa.Column("is_starred", sa.Boolean, server_default=sa.text("0")),
        sa.Column("published_at", sa.DateTime, nullable=True),
        sa.Column("parsed_at", sa.DateTime, nullable=True),
        sa.Column("parse_failed", sa.Boolean, server_default=sa.text("0")),
        sa.Column("parse_attempts", sa.Integer, server_default=sa.text("0")),
        sa.Column("last_local_update", sa.DateTime, nullable=True),
        sa.Column("last_sync_update", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime),
    )
    op.create_index("ix_articles_feed_id", "articles", ["feed_id"])

    op.create_table(
        "sync_queue",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("article_id", sa.Integer, sa.ForeignKey("articles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider_id", sa.String, nullable=False),
        sa.Column("action_type", sa.String, nullable=False),
        sa.Column("action_group", sa.String, nullable=False),
        sa.Column("action_timestamp", sa.DateTime),
        sa.Column("sync_attempts", sa.Integer, server_default=sa.text("0")),
        sa.Column("last_attempt_at", sa.DateTime, nullable=True),
        sa.UniqueConstraint("article_id", "action_group"),
    )

    op.create_table(
        "api_usage",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("service", sa.String, nullable=False),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("zone1_usage", sa.Integer, server_default=sa.text("0")),
        sa.Column("zone1_limit", sa.Integer, nullable=False),
        sa.Column("zone2_usage", sa.Integer, server_default=sa.text("0")),
        sa.Column("zone2_limit", sa.Integer, nullable=False),
        sa.Column("reset_after", sa.Integer, nullable=True),
        sa.Column("updated_at", sa.DateTime),
        sa.UniqueConstraint("service", "date"),
    )

    op.create_table(
        "deleted_articles",
        sa.Column("provider_id", sa.String, primary_key=True),
        sa.Column("deleted_at", sa.DateTime, nullable=False),
        sa.Column("was_read", sa.Boolean, server_default=sa.text("1")),
        sa.Column("feed_id", sa.Integer, nullable=True),
    )
    op.create_index("ix_deleted_articles_deleted_at", "deleted_articles", ["deleted_at"])

    op.create_table(
        "system_config",
        sa.Column("key", sa.String, primary_key=True),
        sa.Column("value", sa.Text, nullable=False),
        sa.Column("updated_at", sa.DateTime),
    )


def downgrade() -> None:
    op.drop_table("system_config")
    op.drop_index("ix_deleted_articles_deleted_at", table_name="deleted_articles")
    op.drop_table("deleted_articles")
    op.drop_table("api_usage")
    op.drop_table("sync_queue")
    op.drop_index("ix_articles_feed_id", table_name="articles")
    op.drop_table("articles")
    op.drop_table("feeds")
    op.drop_table("folders")
