import json
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo on the way back anyway."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class Folder(Base):
    __tablename__ = "folders"

    id = Column(Integer, primary_key=True)
    provider_id = Column(String, unique=True, nullable=False)
    name = Column(String, default="")
    updated_at = Column(DateTime, default=utcnow)

    feeds = relationship("Feed", back_populates="folder")


class Feed(Base):
    __tablename__ = "feeds"

    id = Column(Integer, primary_key=True)
    provider_id = Column(String, unique=True, nullable=False)
    title = Column(String, default="")
    url = Column(String, default="")
    folder_id = Column(Integer, ForeignKey("folders.id"), nullable=True)
    unread_count = Column(Integer, default=0)
    is_partial_feed = Column(Boolean, default=False)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    folder = relationship("Folder", back_populates="feeds")
    articles = relationship("Article", back_populates="feed", cascade="all, delete-orphan")


class Article(Base):
    __tablename__ = "articles"

    id = Column(Integer, primary_key=True)
    feed_id = Column(Integer, ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_id = Column(String, unique=True, nullable=False)
    title = Column(String, default="")
    author = Column(String, default="")
    url = Column(String, default="")
    content = Column(Text, default="")
    full_content = Column(Text, nullable=True)
    is_read = Column(Boolean, default=False)
    is_starred = Column(Boolean, default=False)
    published_at = Column(DateTime, nullable=True)
    parsed_at = Column(DateTime, nullable=True)
    parse_failed = Column(Boolean, default=False)
    parse_attempts = Column(Integer, default=0)
    last_local_update = Column(DateTime, nullable=True)
    last_sync_update = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    feed = relationship("Feed", back_populates="articles")
    queue_entries = relationship("SyncQueueEntry", back_populates="article", cascade="all, delete-orphan")


class SyncQueueEntry(Base):
    __tablename__ = "sync_queue"
    __table_args__ = (UniqueConstraint("article_id", "action_group"),)

    id = Column(Integer, primary_key=True)
    article_id = Column(Integer, ForeignKey("articles.id", ondelete="CASCADE"), nullable=False)
    provider_id = Column(String, nullable=False)
    action_type = Column(String, nullable=False)  # read, unread, star, unstar
    action_group = Column(String, nullable=False)  # read, star
    action_timestamp = Column(DateTime, default=utcnow)
    sync_attempts = Column(Integer, default=0)
    last_attempt_at = Column(DateTime, nullable=True)

    article = relationship("Article", back_populates="queue_entries")


class ApiUsage(Base):
    __tablename__ = "api_usage"
    __table_args__ = (UniqueConstraint("service", "date"),)

    id = Column(Integer, primary_key=True)
    service = Column(String, nullable=False)
    date = Column(Date, nullable=False)
    zone1_usage = Column(Integer, default=0)
    zone1_limit = Column(Integer, nullable=False)
    zone2_usage = Column(Integer, default=0)
    zone2_limit = Column(Integer, nullable=False)
    reset_after = Column(Integer, nullable=True)  # seconds, from provider headers
    updated_at = Column(DateTime, default=utcnow)


class DeletedArticle(Base):
    __tablename__ = "deleted_articles"

    provider_id = Column(String, primary_key=True)
    deleted_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    was_read = Column(Boolean, default=True)
    feed_id = Column(Integer, nullable=True)


class SystemConfig(Base):
    __tablename__ = "system_config"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=utcnow)


class SyncRun(Base):
    __tablename__ = "sync_runs"

    sync_id = Column(String, primary_key=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, running, completed, failed
    progress = Column(Integer, nullable=False, default=0)
    message = Column(String, nullable=True)
    error = Column(String, nullable=True)
    metrics = Column(Text, default="{}")  # JSON
    started_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    finished_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    @property
    def metrics_dict(self) -> dict:
        return json.loads(self.metrics) if self.metrics else {}


class SyncMetadata(Base):
    __tablename__ = "sync_metadata"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=utcnow)


class FeedStats(Base):
    """Per-feed counts derived from local articles, rebuilt after each sync."""

    __tablename__ = "feed_stats"

    feed_id = Column(Integer, ForeignKey("feeds.id", ondelete="CASCADE"), primary_key=True)
    total_count = Column(Integer, default=0)
    unread_count = Column(Integer, default=0)
    starred_count = Column(Integer, default=0)
    refreshed_at = Column(DateTime, default=utcnow)
