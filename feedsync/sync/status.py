"""Persisted sync-run status, queryable by run id.

Lifecycle: a row is created ``pending`` when a run is triggered, moved to
``running`` by a conditional update that fails while another run is running,
updated at each step (progress only ever rises), and closed as ``completed``
or ``failed``. The first query of a finished run starts its expiry clock;
``purge_expired`` removes rows past it. Rows stuck in ``pending`` or
``running`` past the stale window are failed by ``fail_stale``.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import exists, func, select, update
from sqlalchemy.orm import aliased

from feedsync.config import STATUS_TTL_HOURS
from feedsync.db.models import SyncRun, utcnow
from feedsync.errors import SyncAlreadyRunning

logger = logging.getLogger(__name__)

TERMINAL = ("completed", "failed")


@dataclass
class SyncRunStatus:
    sync_id: str
    status: str
    progress: int
    message: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    metrics: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: SyncRun) -> "SyncRunStatus":
        return cls(
            sync_id=row.sync_id,
            status=row.status,
            progress=row.progress,
            message=row.message,
            error=row.error,
            started_at=row.started_at,
            finished_at=row.finished_at,
            metrics=row.metrics_dict,
        )

    def as_dict(self) -> dict:
        return {
            "sync_id": self.sync_id,
            "status": self.status,
            "progress": self.progress,
            "message": self.message,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "metrics": self.metrics,
        }


class SyncStatusStore:
    def __init__(self, session_factory, ttl_hours: int = STATUS_TTL_HOURS, stale_after_seconds: int = 240):
        self.session_factory = session_factory
        self.ttl = timedelta(hours=ttl_hours)
        self.stale_after = timedelta(seconds=stale_after_seconds)

    def _execute(self, stmt) -> int:
        session = self.session_factory()
        try:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create(self, sync_id: str | None = None) -> SyncRunStatus:
        sync_id = sync_id or str(uuid.uuid4())
        now = utcnow()
        session = self.session_factory()
        try:
            row = SyncRun(sync_id=sync_id, status="pending", progress=0, started_at=now, updated_at=now)
            session.add(row)
            session.commit()
            return SyncRunStatus.from_row(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def running(self) -> SyncRunStatus | None:
        session = self.session_factory()
        try:
            row = session.query(SyncRun).filter(SyncRun.status == "running").first()
            return SyncRunStatus.from_row(row) if row else None
        finally:
            session.close()

    def fail_stale(self) -> int:
        """Fail runs whose heartbeat stopped, or that never left pending, e.g. after a process restart."""
        cutoff = utcnow() - self.stale_after
        stmt = (
            update(SyncRun)
            .where(SyncRun.status.in_(("pending", "running")), SyncRun.updated_at < cutoff)
            .values(status="failed", error="Sync run abandoned", finished_at=utcnow(), updated_at=utcnow())
        )
        count = self._execute(stmt)
        if count:
            logger.warning("Marked %d abandoned sync run(s) as failed", count)
        return count

    def start(self, sync_id: str, message: str | None = None, progress: int = 0) -> None:
        """pending -> running, only if no other run is running."""
        self.fail_stale()
        other = aliased(SyncRun)
        stmt = (
            update(SyncRun)
            .where(
                SyncRun.sync_id == sync_id,
                SyncRun.status == "pending",
                ~exists(select(other.sync_id).where(other.status == "running")),
            )
            .values(status="running", progress=progress, message=message, updated_at=utcnow())
        )
        if self._execute(stmt) != 1:
            raise SyncAlreadyRunning("A sync is already in progress")

    def update(self, sync_id: str, progress: int, message: str | None = None) -> None:
        values = {"progress": func.max(SyncRun.progress, progress), "updated_at": utcnow()}
        if message is not None:
            values["message"] = message
        stmt = update(SyncRun).where(SyncRun.sync_id == sync_id, SyncRun.status == "running").values(**values)
        self._execute(stmt)

    def complete(self, sync_id: str, message: str | None = None, metrics: dict | None = None) -> None:
        now = utcnow()
        stmt = (
            update(SyncRun)
            .where(SyncRun.sync_id == sync_id, SyncRun.status.notin_(TERMINAL))
            .values(
                status="completed",
                progress=100,
                message=message,
                error=None,
                metrics=json.dumps(metrics or {}),
                finished_at=now,
                updated_at=now,
            )
        )
        self._execute(stmt)

    def fail(self, sync_id: str, error: str, metrics: dict | None = None) -> None:
        now = utcnow()
        stmt = (
            update(SyncRun)
            .where(SyncRun.sync_id == sync_id, SyncRun.status.notin_(TERMINAL))
            .values(
                status="failed",
                error=error or "Sync failed",
                metrics=json.dumps(metrics or {}),
                finished_at=now,
                updated_at=now,
            )
        )
        self._execute(stmt)

    def get(self, sync_id: str, touch: bool = True) -> SyncRunStatus | None:
        """Look up a run. With ``touch``, a finished run starts its expiry clock."""
        session = self.session_factory()
        try:
            row = session.get(SyncRun, sync_id)
            if row is None:
                return None
            if touch and row.status in TERMINAL and row.expires_at is None:
                row.expires_at = utcnow() + self.ttl
                session.commit()
            return SyncRunStatus.from_row(row)
        finally:
            session.close()

    def purge_expired(self) -> int:
        """Remove queried runs past their expiry, and unqueried finished runs after a day."""
        session = self.session_factory()
        try:
            now = utcnow()
            removed = (
                session.query(SyncRun)
                .filter(
                    SyncRun.status.in_(TERMINAL),
                    (SyncRun.expires_at < now) | (SyncRun.finished_at < now - self.ttl),
                )
                .delete(synchronize_session=False)
            )
            session.commit()
            return removed
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
