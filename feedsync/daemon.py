"""Background daemon: sync + queue drain + maintenance loop.

Each phase is isolated: a failed sync still lets queued read/star changes
go out, and maintenance runs regardless.
"""

import logging
import time
from datetime import datetime, timezone

from feedsync.db.session import init_db
from feedsync.errors import AuthError, SyncError, public_message
from feedsync.services import Services, get_services

logger = logging.getLogger(__name__)


def run_sync(services: Services) -> str | None:
    """Trigger and run one sync. Returns the terminal status, or None if not started."""
    try:
        status = services.orchestrator.run()
    except SyncError as e:
        logger.warning("Sync not started: %s", public_message(e))
        return None
    if status.status == "failed":
        logger.warning("Sync %s failed: %s", status.sync_id, status.error)
    return status.status


def run_maintenance(services: Services) -> dict:
    """Out-of-band housekeeping. Returns counts per task."""
    results = {}
    tasks = {
        "queue_purged": lambda: len(services.queue.purge_failed()),
        "read_articles_purged": lambda: services.deletions.purge_read_articles().articles_deleted,
        "deletion_records_removed": services.deletions.cleanup,
        "content_cleared": services.content.apply_retention,
        "partial_feeds": lambda: services.content.detect_partial_feeds()["partial"],
        "status_rows_removed": services.status.purge_expired,
    }
    for name, task in tasks.items():
        try:
            results[name] = task()
        except Exception:
            logger.exception("Maintenance task %s failed", name)
            results[name] = None
    return results


def run_cycle(services: Services | None = None) -> None:
    """Execute one daemon cycle: sync → drain → maintenance."""
    services = services or get_services()
    sync_status = None
    pushed = 0

    try:
        sync_status = run_sync(services)
    except Exception:
        logger.exception("Sync phase failed")

    try:
        pushed = services.queue.drain().pushed
    except AuthError as e:
        logger.error("Queue drain stopped: %s", public_message(e))
    except Exception:
        logger.exception("Queue drain failed")

    maintenance = run_maintenance(services)

    logger.info(
        "Cycle complete: sync %s, pushed %d, purged %s",
        sync_status or "skipped",
        pushed,
        maintenance.get("read_articles_purged"),
    )


def run_daemon(interval: int = 900) -> None:
    """Run the daemon loop: init_db once, then cycle forever."""
    init_db()
    services = get_services()
    logger.info("Daemon started (interval=%ds)", interval)

    while True:
        logger.info("Starting cycle at %s", datetime.now(timezone.utc).isoformat())
        run_cycle(services)
        time.sleep(interval)
