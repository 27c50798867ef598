"""Provider -> local ingestion workflow.

One run walks: token -> subscriptions -> unread counts -> folders/feeds ->
stream contents -> deletion filter -> article upserts -> feed stats -> sync
metadata. Every write is an upsert keyed by a provider id, so a failed run
leaves already-committed batches in place and a retry converges on the same
state.
"""

import html
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from feedsync.auth.vault import TokenVault
from feedsync.config import (
    FULL_SYNC_INTERVAL_DAYS,
    PROVIDER_SERVICE,
    SYNC_BATCH_SIZE,
    SYNC_BUDGET_SECONDS,
    SYNC_MAX_ARTICLES,
)
from feedsync.db.models import Article, Feed, FeedStats, Folder, SyncMetadata, SyncQueueEntry, utcnow
from feedsync.errors import DataConflict, PersistenceError, SyncAlreadyRunning, SyncTimeout, public_message
from feedsync.provider.client import READ_STATE, STARRED_STATE, ReaderClient
from feedsync.sync.deletions import DeletionTracker
from feedsync.sync.status import SyncRunStatus, SyncStatusStore
from feedsync.tunables import load_tunables
from feedsync.usage.tracker import UsageTracker

logger = logging.getLogger(__name__)


@dataclass
class SyncMetrics:
    folders: int = 0
    feeds: int = 0
    feeds_removed: int = 0
    fetched: int = 0
    upserted: int = 0
    skipped_deleted: int = 0
    skipped_unknown_feed: int = 0
    full_sync: bool = False


def _item_url(item: dict) -> str:
    for key in ("canonical", "alternate"):
        links = item.get(key) or []
        if links and links[0].get("href"):
            return links[0]["href"]
    return ""


def _item_content(item: dict) -> str:
    for key in ("content", "summary"):
        body = item.get(key) or {}
        if body.get("content"):
            return body["content"]
    return ""


def _item_published(item: dict) -> datetime | None:
    published = item.get("published")
    if not published:
        return None
    try:
        return datetime.fromtimestamp(int(published), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        return None


class SyncOrchestrator:
    def __init__(
        self,
        session_factory,
        vault: TokenVault,
        client: ReaderClient,
        usage: UsageTracker,
        deletions: DeletionTracker,
        status_store: SyncStatusStore,
        max_articles: int = SYNC_MAX_ARTICLES,
        batch_size: int = SYNC_BATCH_SIZE,
        budget_seconds: float = SYNC_BUDGET_SECONDS,
        service: str = PROVIDER_SERVICE,
        clock=time.monotonic,
    ):
        self.session_factory = session_factory
        self.vault = vault
        self.client = client
        self.usage = usage
        self.deletions = deletions
        self.status = status_store
        self.max_articles = max_articles
        self.batch_size = batch_size
        self.budget_seconds = budget_seconds
        self.service = service
        self.clock = clock

    # --- triggering ---

    def begin(self) -> SyncRunStatus:
        """Create a pending run. Rejects while another run is in progress."""
        self.status.fail_stale()
        if self.status.running() is not None:
            raise SyncAlreadyRunning("A sync is already in progress")
        self.usage.ensure_available(self.service, "zone1")
        return self.status.create()

    def run(self, sync_id: str | None = None) -> SyncRunStatus:
        """Execute one run to a terminal state and return it."""
        if sync_id is None:
            sync_id = self.begin().sync_id
        try:
            self.status.start(sync_id, message="Loading credentials...", progress=0)
        except SyncAlreadyRunning as e:
            self.status.fail(sync_id, public_message(e))
            raise

        deadline = self.clock() + self.budget_seconds
        metrics = SyncMetrics()
        try:
            self._run_steps(sync_id, deadline, metrics)
        except Exception as e:
            if isinstance(e, SQLAlchemyError):
                e = PersistenceError("Datastore write failed during sync")
                logger.exception("Sync %s failed on a datastore write", sync_id)
            elif isinstance(e, PersistenceError):
                logger.exception("Sync %s failed on a datastore write", sync_id)
            else:
                logger.error("Sync %s failed: %s", sync_id, public_message(e))
            self.status.fail(sync_id, public_message(e), metrics=asdict(metrics))
        else:
            logger.info(
                "Sync %s complete: %d fetched, %d upserted, %d skipped as deleted",
                sync_id,
                metrics.fetched,
                metrics.upserted,
                metrics.skipped_deleted,
            )
            self.status.complete(sync_id, message="Sync completed", metrics=asdict(metrics))
        return self.status.get(sync_id, touch=False)

    # --- workflow ---

    def _step(self, sync_id: str, deadline: float, progress: int, message: str) -> None:
        if self.clock() > deadline:
            raise SyncTimeout(f"Sync exceeded its {int(self.budget_seconds)}s budget")
        self.status.update(sync_id, progress, message)

    def _run_steps(self, sync_id: str, deadline: float, metrics: SyncMetrics) -> None:
        self.vault.ensure_fresh_token()
        self._step(sync_id, deadline, 10, "Fetching subscriptions...")

        subscriptions = self.client.subscription_list()
        self._step(sync_id, deadline, 20, f"Found {len(subscriptions)} feeds...")

        unread_counts = self.client.unread_counts()
        self._step(sync_id, deadline, 30, "Syncing folders...")

        metrics.folders = self._upsert_folders(subscriptions)
        self._step(sync_id, deadline, 40, "Syncing feeds...")

        metrics.feeds = self._upsert_feeds(subscriptions, unread_counts)
        self._step(sync_id, deadline, 50, "Removing unsubscribed feeds...")

        metrics.feeds_removed = self._remove_unsubscribed_feeds(subscriptions)
        self._step(sync_id, deadline, 60, "Fetching recent articles...")

        newer_than, metrics.full_sync = self._incremental_window()
        sync_started = int(time.time())
        items = self.client.stream_contents(
            self.max_articles,
            newer_than=newer_than,
            on_page=lambda n: self._step(
                sync_id, deadline, 60 + min(9, n * 10 // max(self.max_articles, 1)), f"Fetched {n} articles..."
            ),
        )
        metrics.fetched = len(items)
        self._step(sync_id, deadline, 70, f"Processing {len(items)} articles...")

        rows = self._prepare_articles(items, metrics)
        for start in range(0, len(rows), self.batch_size):
            batch = rows[start : start + self.batch_size]
            self._upsert_articles(batch)
            metrics.upserted += len(batch)
            self._step(
                sync_id,
                deadline,
                70 + (start + len(batch)) * 20 // len(rows),
                f"Saved {metrics.upserted} of {len(rows)} articles...",
            )

        self._step(sync_id, deadline, 90, "Refreshing feed statistics...")
        self._refresh_feed_stats()

        self._step(sync_id, deadline, 95, "Updating sync metadata...")
        self._write_metadata(sync_started)

    def _incremental_window(self) -> tuple[int | None, bool]:
        """(newer_than, full_sync). Full fetch when never synced or a week has passed."""
        session = self.session_factory()
        try:
            row = session.get(SyncMetadata, "last_incremental_sync_timestamp")
            full = full_sync_due(session)
        finally:
            session.close()

        if full:
            logger.info("Performing full sync")
            return None, True
        return int(row.value), False

    def _upsert_folders(self, subscriptions: list[dict]) -> int:
        folders: dict[str, str] = {}
        for sub in subscriptions:
            for category in sub.get("categories") or []:
                if category.get("id"):
                    folders.setdefault(category["id"], category.get("label") or "")
        if not folders:
            return 0

        stmt = sqlite_insert(Folder)
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider_id"],
            set_={"name": stmt.excluded.name, "updated_at": stmt.excluded.updated_at},
        )
        now = utcnow()
        self._write(stmt, [{"provider_id": pid, "name": name, "updated_at": now} for pid, name in folders.items()])
        return len(folders)

    def _upsert_feeds(self, subscriptions: list[dict], unread_counts: dict[str, int]) -> int:
        subs = [sub for sub in subscriptions if sub.get("id")]
        if not subs:
            return 0

        session = self.session_factory()
        try:
            folder_ids = dict(session.query(Folder.provider_id, Folder.id).all())
        finally:
            session.close()

        now = utcnow()
        rows = []
        for sub in subs:
            categories = sub.get("categories") or []
            folder_pid = categories[0].get("id") if categories else None
            rows.append(
                {
                    "provider_id": sub["id"],
                    "title": html.unescape(sub.get("title") or ""),
                    "url": sub.get("url") or sub.get("htmlUrl") or "",
                    "folder_id": folder_ids.get(folder_pid),
                    "unread_count": unread_counts.get(sub["id"], 0),
                    "last_synced_at": now,
                }
            )

        stmt = sqlite_insert(Feed)
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider_id"],
            set_={
                "title": stmt.excluded.title,
                "url": stmt.excluded.url,
                "folder_id": stmt.excluded.folder_id,
                "unread_count": stmt.excluded.unread_count,
                "last_synced_at": stmt.excluded.last_synced_at,
            },
        )
        self._write(stmt, rows)
        return len(rows)

    def _remove_unsubscribed_feeds(self, subscriptions: list[dict]) -> int:
        """Drop local feeds the provider no longer lists, unless that is most of them.

        A feed with queued read/star changes is kept until the queue has pushed them.
        """
        remote = {sub["id"] for sub in subscriptions if sub.get("id")}
        session = self.session_factory()
        try:
            threshold = load_tunables(session).feed_deletion_safety_threshold
            local = session.query(Feed.id, Feed.provider_id).all()
            stale = [feed_id for feed_id, provider_id in local if provider_id not in remote]
            if not stale:
                return 0
            if len(stale) / len(local) > threshold:
                logger.warning(
                    "Refusing to remove %d of %d feeds (safety threshold %.0f%%)",
                    len(stale),
                    len(local),
                    threshold * 100,
                )
                return 0

            # Feeds whose articles still have queued changes wait for the queue to drain.
            held = {
                feed_id
                for (feed_id,) in session.query(Article.feed_id)
                .filter(Article.feed_id.in_(stale), Article.id.in_(select(SyncQueueEntry.article_id)))
                .distinct()
            }
            if held:
                logger.info("Keeping %d unsubscribed feed(s) until their queued changes are pushed", len(held))
                stale = [feed_id for feed_id in stale if feed_id not in held]
                if not stale:
                    return 0

            session.query(FeedStats).filter(FeedStats.feed_id.in_(stale)).delete(synchronize_session=False)
            session.query(Article).filter(Article.feed_id.in_(stale)).delete(synchronize_session=False)
            session.query(Feed).filter(Feed.id.in_(stale)).delete(synchronize_session=False)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Datastore write failed while removing feeds") from e
        finally:
            session.close()

        logger.info("Removed %d unsubscribed feeds", len(stale))
        return len(stale)

    def _prepare_articles(self, items: list[dict], metrics: SyncMetrics) -> list[dict]:
        """Map provider items to article rows, dropping deleted and orphaned items."""
        session = self.session_factory()
        try:
            feed_ids = dict(session.query(Feed.provider_id, Feed.id).all())
        finally:
            session.close()

        deleted = self.deletions.deleted_among([item["id"] for item in items if item.get("id")])
        synced_at = utcnow()
        rows: dict[str, dict] = {}
        for item in items:
            try:
                row = self._article_row(item, feed_ids, deleted, synced_at)
            except DataConflict:
                metrics.skipped_deleted += 1
                continue
            if row is None:
                metrics.skipped_unknown_feed += 1
                continue
            rows[row["provider_id"]] = row

        if metrics.skipped_deleted:
            logger.info("Skipped %d previously deleted articles", metrics.skipped_deleted)
        return list(rows.values())

    def _article_row(self, item: dict, feed_ids: dict, deleted: set[str], synced_at: datetime) -> dict | None:
        provider_id = item.get("id")
        if not provider_id:
            return None
        if provider_id in deleted:
            raise DataConflict(f"Article {provider_id} was deleted locally")

        feed_id = feed_ids.get((item.get("origin") or {}).get("streamId"))
        if feed_id is None:
            return None

        categories = item.get("categories") or []
        return {
            "provider_id": provider_id,
            "feed_id": feed_id,
            "title": html.unescape(item.get("title") or "") or "Untitled",
            "author": item.get("author") or "",
            "url": _item_url(item),
            "content": _item_content(item),
            "published_at": _item_published(item),
            "is_read": READ_STATE in categories,
            "is_starred": STARRED_STATE in categories,
            "last_sync_update": synced_at,
        }

    def _upsert_articles(self, rows: list[dict]) -> None:
        """Upsert one batch. Local read/star state wins if changed since the last sync.

        While local state wins, ``last_sync_update`` is left alone so the change
        keeps winning until the queue has pushed it.
        """
        table = Article.__table__
        local_is_newer = and_(
            table.c.last_local_update.isnot(None),
            or_(table.c.last_sync_update.is_(None), table.c.last_local_update > table.c.last_sync_update),
        )
        stmt = sqlite_insert(Article)
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider_id"],
            set_={
                "feed_id": stmt.excluded.feed_id,
                "title": stmt.excluded.title,
                "author": stmt.excluded.author,
                "url": stmt.excluded.url,
                "content": stmt.excluded.content,
                "published_at": stmt.excluded.published_at,
                "is_read": case((local_is_newer, table.c.is_read), else_=stmt.excluded.is_read),
                "is_starred": case((local_is_newer, table.c.is_starred), else_=stmt.excluded.is_starred),
                "last_sync_update": case(
                    (local_is_newer, table.c.last_sync_update), else_=stmt.excluded.last_sync_update
                ),
            },
        )
        self._write(stmt, rows)

    def _refresh_feed_stats(self) -> None:
        session = self.session_factory()
        try:
            counts = (
                session.query(
                    Article.feed_id,
                    func.count(Article.id),
                    func.sum(case((Article.is_read.is_(False), 1), else_=0)),
                    func.sum(case((Article.is_starred.is_(True), 1), else_=0)),
                )
                .group_by(Article.feed_id)
                .all()
            )
            now = utcnow()
            session.query(FeedStats).delete(synchronize_session=False)
            session.add_all(
                FeedStats(
                    feed_id=feed_id,
                    total_count=total,
                    unread_count=unread or 0,
                    starred_count=starred or 0,
                    refreshed_at=now,
                )
                for feed_id, total, unread, starred in counts
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Datastore write failed while refreshing feed statistics") from e
        finally:
            session.close()

    def _write_metadata(self, sync_started: int) -> None:
        now = utcnow()
        stmt = sqlite_insert(SyncMetadata)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
        )
        self._write(
            stmt,
            [
                {"key": "last_sync_time", "value": now.isoformat(), "updated_at": now},
                {"key": "last_incremental_sync_timestamp", "value": str(sync_started), "updated_at": now},
            ],
        )

    def _write(self, stmt, rows: list[dict]) -> None:
        session = self.session_factory()
        try:
            session.execute(stmt, rows)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Datastore write failed on {stmt.table.name}") from e
        finally:
            session.close()


def last_sync_time(session) -> datetime | None:
    row = session.get(SyncMetadata, "last_sync_time")
    if row is None:
        return None
    try:
        return datetime.fromisoformat(row.value)
    except ValueError:
        return None


def full_sync_due(session, now: float | None = None) -> bool:
    row = session.get(SyncMetadata, "last_incremental_sync_timestamp")
    if row is None or not row.value.isdigit():
        return True
    now = now if now is not None else time.time()
    return now - int(row.value) > timedelta(days=FULL_SYNC_INTERVAL_DAYS).total_seconds()
