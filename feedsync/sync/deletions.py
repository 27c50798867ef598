"""Deletion tracking: keeps locally purged read articles from being re-imported.

A record is written only when a read, unstarred article is purged locally.
The orchestrator consults the records before inserting any incoming item.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from feedsync.db.models import Article, DeletedArticle, SyncQueueEntry, utcnow
from feedsync.tunables import load_tunables

logger = logging.getLogger(__name__)

LOOKUP_CHUNK = 500


@dataclass
class PurgeResult:
    articles_deleted: int = 0
    deletions_recorded: int = 0
    errors: list[str] = field(default_factory=list)


class DeletionTracker:
    def __init__(self, session_factory, retention_days: int | None = None):
        self.session_factory = session_factory
        self.retention_days = retention_days

    def record_deletion(self, provider_id: str, was_read: bool, feed_id: int | None) -> bool:
        """Insert-or-ignore. Returns True when a new record was written."""
        stmt = (
            sqlite_insert(DeletedArticle)
            .values(provider_id=provider_id, was_read=was_read, feed_id=feed_id, deleted_at=utcnow())
            .on_conflict_do_nothing(index_elements=["provider_id"])
        )
        session = self.session_factory()
        try:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def is_deleted(self, provider_id: str) -> bool:
        session = self.session_factory()
        try:
            return session.get(DeletedArticle, provider_id) is not None
        finally:
            session.close()

    def deleted_among(self, provider_ids: list[str]) -> set[str]:
        """Subset of ``provider_ids`` that have deletion records."""
        found: set[str] = set()
        if not provider_ids:
            return found
        session = self.session_factory()
        try:
            for i in range(0, len(provider_ids), LOOKUP_CHUNK):
                chunk = provider_ids[i : i + LOOKUP_CHUNK]
                rows = session.query(DeletedArticle.provider_id).filter(DeletedArticle.provider_id.in_(chunk)).all()
                found.update(row[0] for row in rows)
            return found
        finally:
            session.close()

    def cleanup(self, retention_days: int | None = None) -> int:
        """Drop records older than the retention window. Returns count removed."""
        session = self.session_factory()
        try:
            days = retention_days or self.retention_days or load_tunables(session).deletion_tracking_retention_days
            cutoff = utcnow() - timedelta(days=days)
            removed = (
                session.query(DeletedArticle)
                .filter(DeletedArticle.deleted_at < cutoff)
                .delete(synchronize_session=False)
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if removed:
            logger.info("Removed %d deletion records older than %d days", removed, days)
        return removed

    def purge_read_articles(self) -> PurgeResult:
        """Delete read, unstarred articles locally, recording each deletion first.

        Articles with a pending queue entry are kept until the entry is pushed,
        otherwise the user's intent would be lost with the row.
        """
        result = PurgeResult()
        session = self.session_factory()
        try:
            tunables = load_tunables(session)
            if not tunables.cleanup_read_articles_enabled:
                return result

            pending = select(SyncQueueEntry.article_id)
            candidates = (
                session.query(Article.id, Article.provider_id, Article.feed_id)
                .filter(
                    Article.is_read.is_(True),
                    Article.is_starred.is_(False),
                    Article.id.notin_(pending),
                )
                .limit(tunables.max_articles_per_cleanup_batch)
                .all()
            )
            if not candidates:
                return result

            now = utcnow()
            records = [
                {"provider_id": provider_id, "was_read": True, "feed_id": feed_id, "deleted_at": now}
                for _, provider_id, feed_id in candidates
            ]
            stmt = sqlite_insert(DeletedArticle).on_conflict_do_nothing(index_elements=["provider_id"])
            tracked = session.execute(stmt, records)
            result.deletions_recorded = max(tracked.rowcount, 0)

            ids = [article_id for article_id, _, _ in candidates]
            for i in range(0, len(ids), LOOKUP_CHUNK):
                chunk = ids[i : i + LOOKUP_CHUNK]
                result.articles_deleted += (
                    session.query(Article).filter(Article.id.in_(chunk)).delete(synchronize_session=False)
                )
            session.commit()
        except Exception as e:
            session.rollback()
            logger.exception("Read-article purge failed")
            result.errors.append(type(e).__name__)
            return result
        finally:
            session.close()

        logger.info(
            "Purged %d read articles, recorded %d deletions", result.articles_deleted, result.deletions_recorded
        )
        return result
