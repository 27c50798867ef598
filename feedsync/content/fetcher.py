"""On-demand full-content extraction for articles from partial feeds.

Extraction is bounded twice: a semaphore caps how many run at once, and each
article carries a ``parse_attempts`` counter. Once the counter reaches the
ceiling the article is flagged ``parse_failed`` and only a forced fetch will
try it again.
"""

import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta

import httpx
import trafilatura
from bs4 import BeautifulSoup
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from trafilatura.settings import use_config

from feedsync.db.models import Article, Feed, utcnow
from feedsync.errors import ParseFailure, PersistenceError
from feedsync.tunables import Tunables, load_tunables
from feedsync.usage.tracker import UsageTracker

logger = logging.getLogger(__name__)

CONTENT_SERVICE = "content-extraction"
USER_AGENT = "Mozilla/5.0 (compatible; feedsync/0.1)"

PARTIAL_MIN_AVERAGE_LENGTH = 500
PARTIAL_TRUNCATED_RATIO = 0.5
PARTIAL_WINDOW_DAYS = 7
TRUNCATION_MARKERS = re.compile(r"read more|continue reading|\[\.\.\.\]|\[…\]", re.IGNORECASE)

# Signal-based extraction timeouts only work on the main thread; a wall-clock
# deadline on the streamed download bounds each fetch instead.
TRAFILATURA_CONFIG = use_config()
TRAFILATURA_CONFIG.set("DEFAULT", "EXTRACTION_TIMEOUT", "0")


@dataclass
class FetchResult:
    article_id: int
    status: str  # fetched, cached, failed, skipped, busy
    content: str | None = None
    error: str | None = None
    parse_attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status in ("fetched", "cached")

    def as_dict(self) -> dict:
        return {
            "article_id": self.article_id,
            "status": self.status,
            "content": self.content,
            "error": self.error,
            "parse_attempts": self.parse_attempts,
        }


def extract_content(html: str) -> str | None:
    """Main article body as HTML, or None when nothing usable was found."""
    return trafilatura.extract(
        html,
        output_format="html",
        include_comments=False,
        include_tables=True,
        favor_precision=True,
        config=TRAFILATURA_CONFIG,
    )


def visible_text(content: str | None) -> str:
    if not content:
        return ""
    return BeautifulSoup(content, "lxml").get_text(separator=" ", strip=True)


def looks_truncated(content: str | None) -> bool:
    return bool(content) and TRUNCATION_MARKERS.search(content) is not None


class ContentFetcher:
    def __init__(
        self,
        session_factory,
        usage: UsageTracker | None = None,
        http_client: httpx.Client | None = None,
        max_concurrent: int | None = None,
    ):
        self.session_factory = session_factory
        self.usage = usage
        self.http = http_client or httpx.Client(follow_redirects=True, headers={"User-Agent": USER_AGENT})
        if max_concurrent is None:
            max_concurrent = self._tunables().max_concurrent_parses
        self.max_concurrent = max_concurrent
        self._slots = threading.BoundedSemaphore(max_concurrent)

    def _tunables(self) -> Tunables:
        session = self.session_factory()
        try:
            return load_tunables(session)
        finally:
            session.close()

    def fetch(self, article_id: int, force: bool = False) -> FetchResult:
        """Return stored full content, extracting it first if needed."""
        tunables = self._tunables()
        session = self.session_factory()
        try:
            article = session.get(Article, article_id)
            if article is None:
                raise KeyError(article_id)
            url = article.url
            attempts = article.parse_attempts or 0
            if article.full_content and not force:
                return FetchResult(article_id, "cached", article.full_content, parse_attempts=attempts)
            if not force and (article.parse_failed or attempts >= tunables.max_parse_attempts):
                return FetchResult(
                    article_id, "skipped", error="Extraction attempts exhausted", parse_attempts=attempts
                )
        finally:
            session.close()

        if not self._slots.acquire(timeout=tunables.parse_timeout_seconds):
            logger.warning("No extraction slot free for article %d", article_id)
            return FetchResult(article_id, "busy", error="Too many extractions in progress", parse_attempts=attempts)

        try:
            content = self._extract(url, tunables.parse_timeout_seconds)
        except (httpx.HTTPError, ParseFailure) as e:
            error = str(e) if isinstance(e, ParseFailure) else f"HTTP error ({type(e).__name__})"
            attempts = self._record_failure(article_id, tunables.max_parse_attempts)
            logger.warning("Content extraction failed for article %d (attempt %d): %s", article_id, attempts, error)
            return FetchResult(article_id, "failed", error=error, parse_attempts=attempts)
        finally:
            self._slots.release()

        self._store(article_id, content)
        logger.info("Extracted %d chars of full content for article %d", len(content), article_id)
        return FetchResult(article_id, "fetched", content, parse_attempts=attempts)

    def fetch_many(self, article_ids: list[int], force: bool = False) -> list[FetchResult]:
        with ThreadPoolExecutor(max_workers=self.max_concurrent) as pool:
            return list(pool.map(lambda article_id: self.fetch(article_id, force=force), article_ids))

    def _extract(self, url: str | None, timeout: float) -> str:
        if not url:
            raise ParseFailure("Article has no URL")
        if self.usage is not None:
            self.usage.record_usage(CONTENT_SERVICE, "zone1", 1)

        # httpx timeouts apply per phase; a server dripping bytes needs a deadline.
        deadline = time.monotonic() + timeout
        chunks = []
        with self.http.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()
            for chunk in response.iter_text():
                if time.monotonic() > deadline:
                    raise ParseFailure(f"Fetch exceeded {timeout:g}s")
                chunks.append(chunk)

        content = extract_content("".join(chunks))
        if not content:
            raise ParseFailure("Could not extract content from page")
        return content

    def _store(self, article_id: int, content: str) -> None:
        stmt = (
            update(Article)
            .where(Article.id == article_id)
            .values(full_content=content, parsed_at=utcnow(), parse_failed=False)
        )
        self._execute(stmt)

    def _record_failure(self, article_id: int, max_attempts: int) -> int:
        """Increment attempts in one statement; flag the article once the ceiling is hit."""
        attempts = func.coalesce(Article.parse_attempts, 0) + 1
        stmt = update(Article).where(Article.id == article_id).values(
            parse_attempts=attempts, parse_failed=attempts >= max_attempts
        )
        self._execute(stmt)
        session = self.session_factory()
        try:
            return session.get(Article, article_id).parse_attempts
        finally:
            session.close()

    def _execute(self, stmt) -> int:
        session = self.session_factory()
        try:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Datastore write failed while storing extracted content") from e
        finally:
            session.close()

    # --- feed classification and retention ---

    def detect_partial_feed(self, feed_id: int) -> bool | None:
        """Flag a feed as partial from its recent articles. None when there is nothing to judge."""
        since = utcnow() - timedelta(days=PARTIAL_WINDOW_DAYS)
        session = self.session_factory()
        try:
            feed = session.get(Feed, feed_id)
            if feed is None:
                raise KeyError(feed_id)
            contents = [
                row[0]
                for row in session.query(Article.content)
                .filter(Article.feed_id == feed_id, Article.created_at >= since)
                .all()
            ]
            if not contents:
                return None

            average = sum(len(visible_text(c)) for c in contents) / len(contents)
            truncated = sum(1 for c in contents if looks_truncated(c)) / len(contents)
            partial = average < PARTIAL_MIN_AVERAGE_LENGTH or truncated > PARTIAL_TRUNCATED_RATIO

            if bool(feed.is_partial_feed) != partial:
                logger.info(
                    "Feed %d marked %s (avg %.0f chars, %.0f%% truncated)",
                    feed_id,
                    "partial" if partial else "full",
                    average,
                    truncated * 100,
                )
                feed.is_partial_feed = partial
                session.commit()
            return partial
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError("Datastore write failed while classifying a feed") from e
        finally:
            session.close()

    def detect_partial_feeds(self) -> dict[str, int]:
        session = self.session_factory()
        try:
            feed_ids = [row[0] for row in session.query(Feed.id).all()]
        finally:
            session.close()

        summary = {"checked": 0, "partial": 0}
        for feed_id in feed_ids:
            partial = self.detect_partial_feed(feed_id)
            if partial is None:
                continue
            summary["checked"] += 1
            summary["partial"] += int(partial)
        return summary

    def apply_retention(self, retention_days: int | None = None) -> int:
        """Drop extracted content of old read articles. Starred articles keep theirs.

        ``parsed_at`` survives so the parse success rate still counts the extraction.
        """
        days = retention_days or self._tunables().content_retention_days
        cutoff = utcnow() - timedelta(days=days)
        stmt = (
            update(Article)
            .where(
                Article.is_read.is_(True),
                Article.is_starred.is_(False),
                Article.full_content.isnot(None),
                Article.parsed_at < cutoff,
            )
            .values(full_content=None)
        )
        cleared = self._execute(stmt)
        if cleared:
            logger.info("Cleared extracted content of %d articles older than %d days", cleared, days)
        return cleared

    def close(self) -> None:
        self.http.close()
