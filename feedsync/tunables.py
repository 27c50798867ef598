"""Runtime tunables stored in the ``system_config`` table."""

from dataclasses import dataclass, fields

from feedsync.db.models import SystemConfig, utcnow


@dataclass
class Tunables:
    parse_timeout_seconds: float = 30.0
    max_concurrent_parses: int = 5
    max_parse_attempts: int = 3
    content_retention_days: int = 30
    deletion_tracking_retention_days: int = 90
    cleanup_read_articles_enabled: bool = True
    feed_deletion_safety_threshold: float = 0.5
    max_articles_per_cleanup_batch: int = 1000


def _coerce(raw: str, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    return type(default)(raw)


def load_tunables(session) -> Tunables:
    """Read tunables, falling back to defaults for missing or malformed keys."""
    defaults = Tunables()
    names = {f.name for f in fields(Tunables)}
    rows = session.query(SystemConfig).filter(SystemConfig.key.in_(names)).all()

    values = {}
    for row in rows:
        default = getattr(defaults, row.key)
        try:
            values[row.key] = _coerce(row.value, default)
        except (TypeError, ValueError):
            continue
    return Tunables(**values)


def set_tunable(session, key: str, value) -> None:
    if key not in {f.name for f in fields(Tunables)}:
        raise KeyError(f"Unknown tunable: {key}")
    raw = str(value).lower() if isinstance(value, bool) else str(value)
    row = session.get(SystemConfig, key)
    if row is None:
        session.add(SystemConfig(key=key, value=raw))
    else:
        row.value = raw
        row.updated_at = utcnow()
    session.commit()
