"""Per-service, per-day API call accounting for the provider's two rate zones.

Zone 1 covers read calls, zone 2 covers write/mutation calls. Counters live in
one ``api_usage`` row per (service, date) and are only ever changed with a
single upsert statement, so parallel callers (sync, queue drain, content
fetch) cannot lose increments.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from feedsync.config import ZONE1_LIMIT, ZONE2_LIMIT
from feedsync.db.models import ApiUsage, utcnow
from feedsync.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

ZONES = ("zone1", "zone2")
WARN_THRESHOLDS = (0.80, 0.95)


@dataclass
class LimitStatus:
    service: str
    zone: str
    used: int
    limit: int
    reset_after: int | None = None

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    @property
    def allowed(self) -> bool:
        return self.remaining > 0

    @property
    def percent(self) -> float:
        return (self.used / self.limit * 100) if self.limit else 100.0

    def as_dict(self) -> dict:
        return {
            "service": self.service,
            "zone": self.zone,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_after": self.reset_after,
        }


def _check_zone(zone: str) -> None:
    if zone not in ZONES:
        raise ValueError(f"Unknown rate-limit zone: {zone}")


def parse_header_int(value: str | None) -> int | None:
    """Provider headers may carry thousands separators or fractional seconds."""
    if value is None or value == "":
        return None
    try:
        return int(float(value.replace(",", "").strip()))
    except ValueError:
        return None


class UsageTracker:
    def __init__(self, session_factory, limits: dict[str, int] | None = None, today=None):
        self.session_factory = session_factory
        self.default_limits = limits or {"zone1": ZONE1_LIMIT, "zone2": ZONE2_LIMIT}
        self._today = today or (lambda: datetime.now(timezone.utc).date())

    def _base_row(self, service: str, day: date) -> dict:
        return {
            "service": service,
            "date": day,
            "zone1_usage": 0,
            "zone2_usage": 0,
            "zone1_limit": self.default_limits["zone1"],
            "zone2_limit": self.default_limits["zone2"],
            "updated_at": utcnow(),
        }

    def check_limit(self, service: str, zone: str) -> LimitStatus:
        """Usage for today; a missing row means nothing has been spent yet."""
        _check_zone(zone)
        session = self.session_factory()
        try:
            row = (
                session.query(ApiUsage)
                .filter(ApiUsage.service == service, ApiUsage.date == self._today())
                .first()
            )
            if row is None:
                return LimitStatus(service, zone, 0, self.default_limits[zone])
            return LimitStatus(
                service,
                zone,
                getattr(row, f"{zone}_usage") or 0,
                getattr(row, f"{zone}_limit"),
                row.reset_after,
            )
        finally:
            session.close()

    def ensure_available(self, service: str, zone: str) -> LimitStatus:
        status = self.check_limit(service, zone)
        if not status.allowed:
            logger.warning("%s %s budget exhausted (%d/%d)", service, zone, status.used, status.limit)
            raise RateLimitExceeded(service, zone, status.reset_after)
        return status

    def record_usage(self, service: str, zone: str, count: int = 1) -> LimitStatus:
        """Atomically add ``count`` calls to today's counter (increment-or-insert)."""
        _check_zone(zone)
        if count < 0:
            raise ValueError("Usage count cannot be negative")

        usage_col = f"{zone}_usage"
        row = self._base_row(service, self._today())
        row[usage_col] = count

        stmt = sqlite_insert(ApiUsage).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=["service", "date"],
            set_={
                usage_col: getattr(ApiUsage, usage_col) + stmt.excluded[usage_col],
                "updated_at": stmt.excluded.updated_at,
            },
        )

        session = self.session_factory()
        try:
            session.execute(stmt)
            stored = (
                session.query(ApiUsage)
                .filter(ApiUsage.service == service, ApiUsage.date == row["date"])
                .one()
            )
            status = LimitStatus(
                service, zone, getattr(stored, usage_col), getattr(stored, f"{zone}_limit"), stored.reset_after
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        self._warn(status, status.used - count)
        return status

    def capture_provider_headers(self, headers, service: str) -> bool:
        """Reconcile local counters with the provider's rate-limit headers.

        Limits and the reset window are taken as reported. Usage is raised to
        the provider's figure but never lowered within a day, so counters stay
        monotonic. Returns False when the response carried no zone headers.
        """
        values = {
            "zone1_usage": parse_header_int(headers.get("X-Reader-Zone1-Usage")),
            "zone1_limit": parse_header_int(headers.get("X-Reader-Zone1-Limit")),
            "zone2_usage": parse_header_int(headers.get("X-Reader-Zone2-Usage")),
            "zone2_limit": parse_header_int(headers.get("X-Reader-Zone2-Limit")),
            "reset_after": parse_header_int(headers.get("X-Reader-Limits-Reset-After")),
        }
        if all(v is None for v in values.values()):
            return False

        row = self._base_row(service, self._today())
        set_ = {"updated_at": row["updated_at"]}
        for zone in ZONES:
            usage = values[f"{zone}_usage"]
            limit = values[f"{zone}_limit"]
            if usage is not None:
                row[f"{zone}_usage"] = usage
            if limit is not None:
                row[f"{zone}_limit"] = limit
        if values["reset_after"] is not None:
            row["reset_after"] = values["reset_after"]

        stmt = sqlite_insert(ApiUsage).values(**row)
        for zone in ZONES:
            col = f"{zone}_usage"
            if values[col] is not None:
                set_[col] = func.max(getattr(ApiUsage, col), stmt.excluded[col])
            if values[f"{zone}_limit"] is not None:
                set_[f"{zone}_limit"] = stmt.excluded[f"{zone}_limit"]
        if values["reset_after"] is not None:
            set_["reset_after"] = stmt.excluded.reset_after
        stmt = stmt.on_conflict_do_update(index_elements=["service", "date"], set_=set_)

        before = self.snapshot(service)
        session = self.session_factory()
        try:
            session.execute(stmt)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        for zone, status in self.snapshot(service).items():
            self._warn(status, before[zone].used)
        return True

    def snapshot(self, service: str) -> dict[str, LimitStatus]:
        return {zone: self.check_limit(service, zone) for zone in ZONES}

    def _warn(self, status: LimitStatus, previous_used: int | None) -> None:
        """Log once when a zone crosses 80% or 95% of its daily limit."""
        if not status.limit:
            return
        for threshold in reversed(WARN_THRESHOLDS):
            mark = status.limit * threshold
            crossed = status.used >= mark and (previous_used is None or previous_used < mark)
            if crossed:
                logger.warning(
                    "%s %s usage at %.1f%% of daily limit (%d/%d)",
                    status.service,
                    status.zone,
                    status.percent,
                    status.used,
                    status.limit,
                )
                return
