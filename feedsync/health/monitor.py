"""Read-only health reports for external monitoring.

Each report carries its own ``status``; ``report()`` combines them into the
worst of ``healthy``, ``degraded`` and ``unhealthy``.
"""

import logging
from datetime import timedelta

from sqlalchemy import func

from feedsync.config import PROVIDER_SERVICE, QUEUE_MAX_ATTEMPTS
from feedsync.db.models import Article, Feed, SyncQueueEntry, SyncRun, utcnow
from feedsync.sync.orchestrator import last_sync_time
from feedsync.usage.tracker import UsageTracker

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"
SEVERITY = {HEALTHY: 0, DEGRADED: 1, UNHEALTHY: 2}

STALE_HOURS = 24
DEAD_HOURS = 48
MIN_PARSE_SUCCESS_RATE = 0.90
MAX_QUEUE_BACKLOG = 100
MIN_HEADROOM = 0.05


def worst(*statuses: str) -> str:
    return max(statuses, key=SEVERITY.__getitem__, default=HEALTHY)


class HealthMonitor:
    def __init__(
        self,
        session_factory,
        usage: UsageTracker,
        service: str = PROVIDER_SERVICE,
        queue_max_attempts: int = QUEUE_MAX_ATTEMPTS,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.usage = usage
        self.service = service
        self.queue_max_attempts = queue_max_attempts
        self.clock = clock

    def freshness_report(self) -> dict:
        now = self.clock()
        session = self.session_factory()
        try:
            latest = session.query(func.max(Article.created_at)).scalar()
            recent = session.query(Article).filter(Article.created_at >= now - timedelta(hours=24)).count()
            feeds = session.query(Feed).count()
            synced = last_sync_time(session)
        finally:
            session.close()

        hours_since = (now - latest).total_seconds() / 3600 if latest else None
        if hours_since is None or hours_since > DEAD_HOURS:
            status = UNHEALTHY
        elif hours_since > STALE_HOURS:
            status = DEGRADED
        else:
            status = HEALTHY
        return {
            "status": status,
            "hours_since_latest_article": round(hours_since, 1) if hours_since is not None else None,
            "articles_last_24h": recent,
            "feeds": feeds,
            "last_sync_time": synced.isoformat() if synced else None,
        }

    def parsing_report(self) -> dict:
        session = self.session_factory()
        try:
            parsed = session.query(Article).filter(Article.parsed_at.isnot(None)).count()
            failed = session.query(Article).filter(Article.parse_failed.is_(True)).count()
            retrying = (
                session.query(Article)
                .filter(
                    Article.parse_attempts > 0,
                    Article.parse_failed.isnot(True),
                    Article.parsed_at.is_(None),
                )
                .count()
            )
            partial_feeds = session.query(Feed).filter(Feed.is_partial_feed.is_(True)).count()
        finally:
            session.close()

        attempted = parsed + failed
        success_rate = parsed / attempted if attempted else None
        status = DEGRADED if success_rate is not None and success_rate < MIN_PARSE_SUCCESS_RATE else HEALTHY
        return {
            "status": status,
            "parsed": parsed,
            "failed": failed,
            "retrying": retrying,
            "success_rate": round(success_rate, 3) if success_rate is not None else None,
            "partial_feeds": partial_feeds,
        }

    def queue_report(self) -> dict:
        session = self.session_factory()
        try:
            backlog = session.query(SyncQueueEntry).count()
            failed = (
                session.query(SyncQueueEntry).filter(SyncQueueEntry.sync_attempts >= self.queue_max_attempts).count()
            )
            oldest = session.query(func.min(SyncQueueEntry.action_timestamp)).scalar()
        finally:
            session.close()

        status = DEGRADED if failed or backlog > MAX_QUEUE_BACKLOG else HEALTHY
        return {
            "status": status,
            "backlog": backlog,
            "failed": failed,
            "oldest": oldest.isoformat() if oldest else None,
        }

    def rate_limit_report(self) -> dict:
        zones = {}
        status = HEALTHY
        for zone, limit in self.usage.snapshot(self.service).items():
            headroom = limit.remaining / limit.limit if limit.limit else 0.0
            if not limit.allowed:
                zone_status = UNHEALTHY
            elif headroom < MIN_HEADROOM:
                zone_status = DEGRADED
            else:
                zone_status = HEALTHY
            status = worst(status, zone_status)
            zones[zone] = {**limit.as_dict(), "headroom": round(headroom, 3), "status": zone_status}
        return {"status": status, "service": self.service, "zones": zones}

    def sync_report(self) -> dict:
        session = self.session_factory()
        try:
            run = (
                session.query(SyncRun)
                .filter(SyncRun.status.in_(("completed", "failed")))
                .order_by(SyncRun.finished_at.desc())
                .first()
            )
            running = session.query(SyncRun).filter(SyncRun.status == "running").count()
        finally:
            session.close()

        if run is None:
            return {"status": HEALTHY, "last_run": None, "running": bool(running)}
        return {
            "status": DEGRADED if run.status == "failed" else HEALTHY,
            "last_run": {
                "sync_id": run.sync_id,
                "status": run.status,
                "error": run.error,
                "finished_at": run.finished_at.isoformat() if run.finished_at else None,
            },
            "running": bool(running),
        }

    def report(self) -> dict:
        components = {
            "freshness": self.freshness_report(),
            "parsing": self.parsing_report(),
            "queue": self.queue_report(),
            "rate_limits": self.rate_limit_report(),
            "sync": self.sync_report(),
        }
        status = worst(*(c["status"] for c in components.values()))
        if status != HEALTHY:
            logger.info(
                "Health %s: %s",
                status,
                ", ".join(f"{name}={c['status']}" for name, c in components.items() if c["status"] != HEALTHY),
            )
        return {"status": status, "checked_at": self.clock().isoformat(), "components": components}
