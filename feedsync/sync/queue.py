"""Local -> provider propagation of read/star changes.

User actions are applied to the local article first, then recorded here. At
most one entry exists per (article, action group): marking read then unread
leaves only the ``unread`` entry. ``drain`` pushes due entries in batches
grouped by action type and counts failures per entry.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from feedsync.config import PROVIDER_SERVICE, QUEUE_BATCH_SIZE, QUEUE_MAX_ATTEMPTS, QUEUE_RETENTION_DAYS
from feedsync.db.models import Article, SyncQueueEntry, utcnow
from feedsync.errors import AuthError, PersistenceError, RateLimitExceeded, SyncError, public_message
from feedsync.provider.client import READ_STATE, STARRED_STATE, ReaderClient
from feedsync.usage.tracker import UsageTracker

logger = logging.getLogger(__name__)

ACTION_GROUPS = {"read": "read", "unread": "read", "star": "star", "unstar": "star"}

# action_type -> (edit-tag add, edit-tag remove)
TAG_EDITS = {
    "read": (READ_STATE, None),
    "unread": (None, READ_STATE),
    "star": (STARRED_STATE, None),
    "unstar": (None, STARRED_STATE),
}

# Wait before retrying an entry, indexed by attempts already made.
BACKOFF = (timedelta(0), timedelta(minutes=1), timedelta(minutes=5), timedelta(minutes=30))


@dataclass
class DrainResult:
    pushed: int = 0
    failed: int = 0
    skipped: int = 0
    rate_limited: bool = False
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "pushed": self.pushed,
            "failed": self.failed,
            "skipped": self.skipped,
            "rate_limited": self.rate_limited,
            "errors": self.errors,
        }


def backoff_for(attempts: int) -> timedelta:
    return BACKOFF[min(attempts, len(BACKOFF) - 1)]


class MutationQueue:
    def __init__(
        self,
        session_factory,
        client: ReaderClient,
        usage: UsageTracker,
        batch_size: int = QUEUE_BATCH_SIZE,
        max_attempts: int = QUEUE_MAX_ATTEMPTS,
        retention_days: int = QUEUE_RETENTION_DAYS,
        service: str = PROVIDER_SERVICE,
    ):
        self.session_factory = session_factory
        self.client = client
        self.usage = usage
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.retention_days = retention_days
        self.service = service

    def record_action(self, article_id: int, action_type: str) -> Article:
        """Apply a read/star change locally, then queue it for the provider."""
        if action_type not in ACTION_GROUPS:
            raise ValueError(f"Unknown action: {action_type}")

        session = self.session_factory()
        try:
            article = session.get(Article, article_id)
            if article is None:
                raise KeyError(article_id)
            if ACTION_GROUPS[action_type] == "read":
                article.is_read = action_type == "read"
            else:
                article.is_starred = action_type == "star"
            article.last_local_update = utcnow()
            self._replace_entry(session, article, action_type)
            session.commit()
            session.refresh(article)
            session.expunge(article)
            return article
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Datastore write failed while recording an action") from e
        finally:
            session.close()

    def enqueue(self, article_id: int, provider_id: str, action_type: str) -> None:
        """Queue a change without touching the local article."""
        if action_type not in ACTION_GROUPS:
            raise ValueError(f"Unknown action: {action_type}")
        session = self.session_factory()
        try:
            article = session.get(Article, article_id)
            if article is None:
                raise KeyError(article_id)
            self._replace_entry(session, article, action_type, provider_id)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Datastore write failed while queueing an action") from e
        finally:
            session.close()

    def _replace_entry(self, session, article: Article, action_type: str, provider_id: str | None = None) -> None:
        group = ACTION_GROUPS[action_type]
        session.query(SyncQueueEntry).filter(
            SyncQueueEntry.article_id == article.id, SyncQueueEntry.action_group == group
        ).delete(synchronize_session=False)
        session.add(
            SyncQueueEntry(
                article_id=article.id,
                provider_id=provider_id or article.provider_id,
                action_type=action_type,
                action_group=group,
                action_timestamp=utcnow(),
                sync_attempts=0,
            )
        )

    def _due_entries(self, session, now) -> list[SyncQueueEntry]:
        entries = (
            session.query(SyncQueueEntry)
            .filter(SyncQueueEntry.sync_attempts < self.max_attempts)
            .order_by(SyncQueueEntry.action_timestamp)
            .all()
        )
        return [
            e
            for e in entries
            if e.last_attempt_at is None or e.last_attempt_at + backoff_for(e.sync_attempts) <= now
        ]

    def drain(self) -> DrainResult:
        """Push due entries to the provider. Auth failures propagate."""
        result = DrainResult()
        session = self.session_factory()
        try:
            now = utcnow()
            entries = self._due_entries(session, now)
            pending = session.query(SyncQueueEntry).filter(SyncQueueEntry.sync_attempts < self.max_attempts).count()
            result.skipped = pending - len(entries)
            batches = []
            for action_type in TAG_EDITS:
                group = [(e.id, e.article_id, e.provider_id) for e in entries if e.action_type == action_type]
                for i in range(0, len(group), self.batch_size):
                    batches.append((action_type, group[i : i + self.batch_size]))
        finally:
            session.close()

        if not batches:
            return result
        if not self.usage.check_limit(self.service, "zone2").allowed:
            logger.warning("Queue drain skipped: %s zone2 budget exhausted", self.service)
            result.rate_limited = True
            return result

        started = time.monotonic()
        for action_type, batch in batches:
            entry_ids = [entry_id for entry_id, _, _ in batch]
            add, remove = TAG_EDITS[action_type]
            try:
                self.client.edit_tag([provider_id for _, _, provider_id in batch], add=add, remove=remove)
            except RateLimitExceeded:
                logger.warning("Queue drain stopped: %s zone2 budget exhausted", self.service)
                result.rate_limited = True
                break
            except AuthError:
                raise
            except SyncError as e:
                logger.warning("Failed to push %d %s change(s): %s", len(batch), action_type, public_message(e))
                self._mark_failed(entry_ids)
                result.failed += len(batch)
                result.errors.append(public_message(e))
                continue
            self._mark_pushed(entry_ids, [article_id for _, article_id, _ in batch], now)
            result.pushed += len(batch)

        logger.info(
            "Queue drain: %d pushed, %d failed in %.1fs", result.pushed, result.failed, time.monotonic() - started
        )
        return result

    def _mark_pushed(self, entry_ids: list[int], article_ids: list[int], collected_at) -> None:
        """Drop pushed entries and mark their articles in step with the provider.

        Articles changed again after the entries were collected keep winning
        over the next sync until their newer entry is pushed.
        """
        session = self.session_factory()
        try:
            session.query(SyncQueueEntry).filter(SyncQueueEntry.id.in_(entry_ids)).delete(synchronize_session=False)
            session.execute(
                update(Article)
                .where(Article.id.in_(article_ids), Article.last_local_update <= collected_at)
                .values(last_sync_update=utcnow())
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Datastore write failed while clearing pushed changes") from e
        finally:
            session.close()

    def _mark_failed(self, entry_ids: list[int]) -> None:
        stmt = (
            update(SyncQueueEntry)
            .where(SyncQueueEntry.id.in_(entry_ids))
            .values(sync_attempts=SyncQueueEntry.sync_attempts + 1, last_attempt_at=utcnow())
        )
        session = self.session_factory()
        try:
            session.execute(stmt)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Datastore write failed while recording a push failure") from e
        finally:
            session.close()

    def purge_failed(self) -> list[dict]:
        """Remove entries that exhausted their attempts and outlived retention.

        Returns one diagnostic dict per removed entry so callers can log them.
        """
        cutoff = utcnow() - timedelta(days=self.retention_days)
        session = self.session_factory()
        try:
            doomed = (
                session.query(SyncQueueEntry)
                .filter(
                    SyncQueueEntry.sync_attempts >= self.max_attempts,
                    SyncQueueEntry.action_timestamp < cutoff,
                )
                .all()
            )
            diagnostics = [
                {
                    "article_id": e.article_id,
                    "provider_id": e.provider_id,
                    "action_type": e.action_type,
                    "sync_attempts": e.sync_attempts,
                    "action_timestamp": e.action_timestamp.isoformat() if e.action_timestamp else None,
                }
                for e in doomed
            ]
            for entry in doomed:
                session.delete(entry)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Datastore write failed while purging the queue") from e
        finally:
            session.close()

        for d in diagnostics:
            logger.warning(
                "Dropped queued %s for %s after %d attempt(s)", d["action_type"], d["provider_id"], d["sync_attempts"]
            )
        return diagnostics

    def stats(self) -> dict:
        session = self.session_factory()
        try:
            total = session.query(SyncQueueEntry).count()
            failed = session.query(SyncQueueEntry).filter(SyncQueueEntry.sync_attempts >= self.max_attempts).count()
            retrying = (
                session.query(SyncQueueEntry)
                .filter(SyncQueueEntry.sync_attempts > 0, SyncQueueEntry.sync_attempts < self.max_attempts)
                .count()
            )
            oldest = session.query(SyncQueueEntry.action_timestamp).order_by(SyncQueueEntry.action_timestamp).first()
            by_action = {}
            for action_type in TAG_EDITS:
                by_action[action_type] = (
                    session.query(SyncQueueEntry).filter(SyncQueueEntry.action_type == action_type).count()
                )
        finally:
            session.close()
        return {
            "total": total,
            "pending": total - failed,
            "retrying": retrying,
            "failed": failed,
            "by_action": by_action,
            "oldest": oldest[0].isoformat() if oldest and oldest[0] else None,
        }
