"""Tests for the provider -> local sync workflow.

Tests verify:
1. 3 subscriptions, 2 unread counts, 50 items with 5 deleted -> 45 articles
2. Runs move pending -> running -> completed with progress 100
3. Progress never decreases; a failed run always carries an error
4. A second trigger while a run is running is rejected; a run that loses the race,
   or never leaves pending, ends failed
5. A failure mid-run keeps batches already written; a retry converges
6. Local read/star changes newer than the last sync survive the upsert
7. Continuation cursors are followed up to the article cap
8. Incremental runs pass ``ot``; feeds dropped upstream are removed with a safety threshold
   and are kept while their articles have queued changes
9. Wall-clock budget and revoked credentials fail the run with a sanitized message
"""

import itertools
import time
from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest

from feedsync.auth.vault import Token
from feedsync.db.models import Article, Feed, FeedStats, Folder, SyncMetadata, SyncQueueEntry, utcnow
from feedsync.errors import PersistenceError, RateLimitExceeded, SyncAlreadyRunning
from feedsync.usage.tracker import UsageTracker
from conftest import make_item, make_subscription


def _seed_items(provider, count=50, feed_cycle=(1, 2, 3)):
    provider.items = [make_item(n, feed=feed_cycle[n % len(feed_cycle)]) for n in range(count)]


def test_scenario_skips_deleted_items(services, provider, db_session):
    _seed_items(provider, 50)
    for item in provider.items[:5]:
        services.deletions.record_deletion(item["id"], True, None)

    pending = services.orchestrator.begin()
    assert pending.status == "pending"
    status = services.orchestrator.run(pending.sync_id)

    assert status.status == "completed"
    assert status.progress == 100
    assert status.error is None
    assert db_session.query(Article).count() == 45
    assert status.metrics["fetched"] == 50
    assert status.metrics["upserted"] == 45
    assert status.metrics["skipped_deleted"] == 5
    assert db_session.query(Feed).count() == 3
    assert db_session.query(Folder).count() == 1
    deleted_ids = {item["id"] for item in provider.items[:5]}
    assert not db_session.query(Article).filter(Article.provider_id.in_(deleted_ids)).count()


def test_feed_and_article_fields_are_mapped(services, provider, db_session):
    provider.items = [make_item(1, feed=2, read=True, starred=True)]

    services.orchestrator.run()

    feed = db_session.query(Feed).filter(Feed.provider_id == "feed/https://site1.example/rss").one()
    assert feed.unread_count == 12
    assert feed.folder.name == "Tech"
    assert db_session.query(Feed).filter(Feed.provider_id.like("%site3%")).one().unread_count == 0

    article = db_session.query(Article).one()
    assert article.title == "Item & 1"
    assert article.url == "https://site2.example/posts/1"
    assert article.is_read is True
    assert article.is_starred is True
    assert article.published_at is not None
    assert article.last_sync_update is not None


def test_progress_is_monotonic(services, provider):
    _seed_items(provider, 120)
    store = services.status
    seen = []
    original = store.update

    def spy(sync_id, progress, message=None):
        seen.append(progress)
        original(sync_id, progress, message)

    with patch.object(store, "update", side_effect=spy):
        status = services.orchestrator.run()

    assert status.status == "completed"
    assert seen == sorted(seen)
    assert seen[0] == 10
    assert 70 in seen and 90 in seen and 95 in seen


def test_second_trigger_is_rejected_while_running(services):
    first = services.status.create()
    services.status.start(first.sync_id)

    with pytest.raises(SyncAlreadyRunning):
        services.orchestrator.begin()

    second = services.status.create()
    with pytest.raises(SyncAlreadyRunning):
        services.status.start(second.sync_id)


def test_stale_running_row_does_not_block(services, db_session):
    from feedsync.db.models import SyncRun

    first = services.status.create()
    services.status.start(first.sync_id)
    row = db_session.get(SyncRun, first.sync_id)
    row.updated_at = utcnow() - timedelta(minutes=30)
    db_session.commit()

    run = services.orchestrator.begin()

    assert run.status == "pending"
    assert services.status.get(first.sync_id).status == "failed"


def test_begin_rejects_when_zone1_exhausted(services, session_factory):
    UsageTracker(session_factory).record_usage("inoreader", "zone1", 5000)

    with pytest.raises(RateLimitExceeded):
        services.orchestrator.begin()


def test_rate_limit_mid_run_keeps_prior_work(services, provider, db_session):
    _seed_items(provider, 30)
    assert services.orchestrator.run().status == "completed"

    provider.items.extend(make_item(n) for n in range(30, 40))
    provider.responses["/stream/contents/user/-/state/com.google/reading-list"] = [
        httpx.Response(429, headers={"X-Reader-Limits-Reset-After": "600"})
    ]
    status = services.orchestrator.run()

    assert status.status == "failed"
    assert "Rate limit exceeded" in status.error
    assert db_session.query(Article).count() == 30


def test_failure_between_batches_keeps_committed_batches(services, provider, db_session):
    _seed_items(provider, 100)
    orchestrator = services.orchestrator
    original = orchestrator._upsert_articles
    calls = itertools.count()

    def flaky(rows):
        if next(calls) == 1:
            raise PersistenceError("Datastore write failed on articles")
        original(rows)

    with patch.object(orchestrator, "_upsert_articles", side_effect=flaky):
        status = orchestrator.run()

    assert status.status == "failed"
    assert status.error == "Datastore write failed on articles"
    assert db_session.query(Article).count() == 50

    retry = orchestrator.run()
    assert retry.status == "completed"
    assert db_session.query(Article).count() == 100


def test_unexpected_error_is_sanitized(services):
    with patch.object(services.client, "subscription_list", side_effect=RuntimeError("token=abc123")):
        status = services.orchestrator.run()

    assert status.status == "failed"
    assert status.error == "Unexpected error (RuntimeError)"


def test_local_changes_newer_than_sync_survive(services, provider, db_session):
    provider.items = [make_item(1), make_item(2)]
    services.orchestrator.run()

    first = db_session.query(Article).filter(Article.provider_id == provider.items[0]["id"]).one()
    services.queue.record_action(first.id, "read")
    services.queue.record_action(first.id, "star")

    services.orchestrator.run()

    db_session.expire_all()
    first = db_session.query(Article).filter(Article.provider_id == provider.items[0]["id"]).one()
    assert first.is_read is True
    assert first.is_starred is True


def test_provider_state_wins_without_local_change(services, provider, db_session):
    provider.items = [make_item(1)]
    services.orchestrator.run()

    provider.items = [make_item(1, read=True)]
    services.orchestrator.run()

    article = db_session.query(Article).one()
    assert article.is_read is True


def test_pagination_follows_continuation(services, provider, db_session):
    _seed_items(provider, 150)
    services.orchestrator.max_articles = 150

    status = services.orchestrator.run()

    streams = provider.api_requests("/stream/contents/")
    assert len(streams) == 2
    assert streams[1].url.params["c"] == "100"
    assert status.metrics["fetched"] == 150
    assert db_session.query(Article).count() == 150


def test_article_cap_is_respected(services, provider, db_session):
    _seed_items(provider, 150)

    services.orchestrator.run()

    assert db_session.query(Article).count() == 100


def test_items_from_unknown_feeds_are_skipped(services, provider, db_session):
    provider.items = [make_item(1, feed=1), make_item(2, feed=9)]

    status = services.orchestrator.run()

    assert status.metrics["skipped_unknown_feed"] == 1
    assert db_session.query(Article).count() == 1


def test_second_run_is_incremental(services, provider, db_session):
    _seed_items(provider, 3)
    first = services.orchestrator.run()
    assert first.metrics["full_sync"] is True
    assert "ot" not in provider.api_requests("/stream/contents/")[0].url.params

    second = services.orchestrator.run()

    assert second.metrics["full_sync"] is False
    assert "ot" in provider.api_requests("/stream/contents/")[-1].url.params
    assert db_session.get(SyncMetadata, "last_sync_time") is not None


def test_full_sync_after_a_week(services, provider, db_session):
    services.orchestrator.run()
    row = db_session.get(SyncMetadata, "last_incremental_sync_timestamp")
    row.value = str(int(time.time()) - 8 * 86400)
    db_session.commit()

    assert services.orchestrator.run().metrics["full_sync"] is True


def test_feed_stats_refreshed(services, provider, db_session):
    provider.items = [make_item(1, feed=1), make_item(2, feed=1, read=True), make_item(3, feed=1, starred=True)]

    services.orchestrator.run()

    feed = db_session.query(Feed).filter(Feed.provider_id.like("%site1%")).one()
    stats = db_session.get(FeedStats, feed.id)
    assert (stats.total_count, stats.unread_count, stats.starred_count) == (3, 2, 1)


def test_unsubscribed_feed_is_removed(services, provider, db_session):
    provider.items = [make_item(1, feed=3)]
    services.orchestrator.run()

    provider.subscriptions = [make_subscription(1, "Tech"), make_subscription(2, "Tech")]
    status = services.orchestrator.run()

    assert status.metrics["feeds_removed"] == 1
    assert db_session.query(Feed).count() == 2
    assert db_session.query(Article).count() == 0


def test_mass_unsubscribe_is_refused(services, provider, db_session):
    services.orchestrator.run()

    provider.subscriptions = [make_subscription(1)]
    status = services.orchestrator.run()

    assert status.metrics["feeds_removed"] == 0
    assert db_session.query(Feed).count() == 3


def test_budget_exceeded_fails_run(services, provider, db_session):
    _seed_items(provider, 10)
    orchestrator = services.orchestrator
    orchestrator.budget_seconds = 0
    orchestrator.clock = itertools.count().__next__

    status = orchestrator.run()

    assert status.status == "failed"
    assert "budget" in status.error


def test_revoked_credentials_fail_run(services, provider, vault):
    token = vault.current_token()
    vault.save_tokens(Token(token.access_token, token.refresh_token, time.time() - 5))
    provider.token_error = "invalid_grant"

    status = services.orchestrator.run()

    assert status.status == "failed"
    assert "re-authentication" in status.error
    assert "refresh-0" not in status.error


def test_usage_recorded_per_call(services, provider):
    _seed_items(provider, 5)

    services.orchestrator.run()

    # subscription list + unread counts + one stream page
    assert services.usage.check_limit("inoreader", "zone1").used == 3


def test_status_expires_after_first_query(services, db_session):
    from feedsync.db.models import SyncRun

    status = services.orchestrator.run()
    services.status.get(status.sync_id)

    row = db_session.get(SyncRun, status.sync_id)
    assert row.expires_at is not None
    row.expires_at = utcnow() - timedelta(seconds=1)
    db_session.commit()

    assert services.status.purge_expired() == 1
    assert services.status.get(status.sync_id) is None


def test_local_change_survives_repeated_syncs_until_pushed(services, provider, db_session):
    provider.items = [make_item(1)]
    services.orchestrator.run()
    article = db_session.query(Article).one()
    services.queue.record_action(article.id, "read")

    services.orchestrator.run()
    services.orchestrator.run()
    db_session.expire_all()
    assert db_session.query(Article).one().is_read is True

    assert services.queue.drain().pushed == 1
    services.orchestrator.run()

    db_session.expire_all()
    assert db_session.query(Article).one().is_read is False


def test_losing_the_start_race_fails_the_pending_run(services, db_session):
    from feedsync.db.models import SyncRun

    create = services.status.create
    competitor = []

    def create_then_start_another(*args, **kwargs):
        created = create(*args, **kwargs)
        other = create()
        services.status.start(other.sync_id)
        competitor.append(other.sync_id)
        return created

    with patch.object(services.status, "create", side_effect=create_then_start_another):
        with pytest.raises(SyncAlreadyRunning):
            services.orchestrator.run()

    statuses = {row.sync_id: row.status for row in db_session.query(SyncRun)}
    assert statuses.pop(competitor[0]) == "running"
    assert list(statuses.values()) == ["failed"]


def test_abandoned_pending_run_is_failed_then_purged(services, db_session):
    from feedsync.db.models import SyncRun

    run = services.status.create()
    row = db_session.get(SyncRun, run.sync_id)
    row.updated_at = utcnow() - timedelta(minutes=30)
    db_session.commit()

    assert services.status.fail_stale() == 1
    db_session.expire_all()
    row = db_session.get(SyncRun, run.sync_id)
    assert (row.status, row.error) == ("failed", "Sync run abandoned")

    row.finished_at = utcnow() - timedelta(days=3)
    db_session.commit()
    assert services.status.purge_expired() == 1


def test_unsubscribed_feed_with_queued_change_is_kept_until_pushed(services, provider, db_session):
    provider.items = [make_item(1, feed=3)]
    services.orchestrator.run()
    article = db_session.query(Article).one()
    services.queue.record_action(article.id, "star")

    provider.subscriptions = [make_subscription(1, "Tech"), make_subscription(2, "Tech")]
    status = services.orchestrator.run()

    assert status.metrics["feeds_removed"] == 0
    assert db_session.query(Feed).count() == 3
    assert db_session.query(SyncQueueEntry).count() == 1

    assert services.queue.drain().pushed == 1
    status = services.orchestrator.run()

    assert status.metrics["feeds_removed"] == 1
    assert db_session.query(Article).count() == 0
