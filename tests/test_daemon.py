"""Tests for the background daemon and the CLI entry points.

Tests verify:
1. `cli.py daemon` is a valid Click command with --interval option
2. Each cycle runs sync, then queue drain, then maintenance
3. A failing phase is logged and the later phases still run
4. An auth failure during drain is logged, not raised
5. Each cycle logs a summary line
6. Daemon calls init_db() once at startup
7. `sync run`, `queue stats` and `config set` through the CLI
"""

import logging
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from feedsync.errors import CredentialsRevoked, RateLimitExceeded
from feedsync.sync.queue import DrainResult
from conftest import make_item


@pytest.fixture()
def fake_services():
    services = MagicMock()
    services.orchestrator.run.return_value = MagicMock(status="completed", sync_id="abc", error=None)
    services.queue.drain.return_value = DrainResult(pushed=4)
    services.queue.purge_failed.return_value = []
    services.deletions.purge_read_articles.return_value = MagicMock(articles_deleted=2)
    services.deletions.cleanup.return_value = 0
    services.content.apply_retention.return_value = 0
    services.content.detect_partial_feeds.return_value = {"checked": 1, "partial": 0}
    services.status.purge_expired.return_value = 0
    return services


@pytest.fixture()
def runner():
    return CliRunner()


# ---------------------------------------------------------------------------
# CLI: daemon command
# ---------------------------------------------------------------------------


def test_daemon_command_exists_with_interval_option(runner):
    from cli import cli

    result = runner.invoke(cli, ["daemon", "--help"])
    assert result.exit_code == 0, f"daemon --help failed: {result.output}"
    assert "--interval" in result.output


def test_daemon_accepts_custom_interval(runner):
    from cli import cli

    with patch("cli.init_db"), patch("feedsync.daemon.run_daemon") as mock_run:
        result = runner.invoke(cli, ["daemon", "--interval", "10"])
    assert result.exit_code == 0, result.output
    mock_run.assert_called_once_with(10)


# ---------------------------------------------------------------------------
# Cycle phases
# ---------------------------------------------------------------------------


def test_cycle_runs_all_phases_in_order(fake_services):
    from feedsync.daemon import run_cycle

    order = []
    fake_services.orchestrator.run.side_effect = lambda: order.append("sync") or MagicMock(status="completed")
    fake_services.queue.drain.side_effect = lambda: order.append("drain") or DrainResult()
    fake_services.status.purge_expired.side_effect = lambda: order.append("maintenance") or 0

    run_cycle(fake_services)

    assert order == ["sync", "drain", "maintenance"]


def test_cycle_survives_sync_exception(fake_services, caplog):
    from feedsync.daemon import run_cycle

    fake_services.orchestrator.run.side_effect = RuntimeError("boom")
    with caplog.at_level(logging.ERROR, logger="feedsync.daemon"):
        run_cycle(fake_services)

    assert "Sync phase failed" in caplog.text
    fake_services.queue.drain.assert_called_once()
    fake_services.deletions.purge_read_articles.assert_called_once()


def test_sync_not_started_is_a_warning(fake_services, caplog):
    from feedsync.daemon import run_sync

    fake_services.orchestrator.run.side_effect = RateLimitExceeded("inoreader", "zone1")
    with caplog.at_level(logging.WARNING, logger="feedsync.daemon"):
        assert run_sync(fake_services) is None

    assert "Rate limit exceeded" in caplog.text


def test_drain_auth_failure_is_logged(fake_services, caplog):
    from feedsync.daemon import run_cycle

    fake_services.queue.drain.side_effect = CredentialsRevoked("Refresh token rejected; re-authentication required")
    with caplog.at_level(logging.ERROR, logger="feedsync.daemon"):
        run_cycle(fake_services)

    assert "Queue drain stopped" in caplog.text
    fake_services.status.purge_expired.assert_called_once()


def test_maintenance_task_failure_is_isolated(fake_services, caplog):
    from feedsync.daemon import run_maintenance

    fake_services.deletions.cleanup.side_effect = RuntimeError("disk full")
    with caplog.at_level(logging.ERROR, logger="feedsync.daemon"):
        results = run_maintenance(fake_services)

    assert results["deletion_records_removed"] is None
    assert results["read_articles_purged"] == 2
    assert results["status_rows_removed"] == 0
    assert "deletion_records_removed" in caplog.text


def test_cycle_logs_summary(fake_services, caplog):
    from feedsync.daemon import run_cycle

    with caplog.at_level(logging.INFO, logger="feedsync.daemon"):
        run_cycle(fake_services)

    assert "Cycle complete: sync completed, pushed 4, purged 2" in caplog.text


def test_daemon_calls_init_db_at_startup(fake_services):
    from feedsync.daemon import run_daemon

    with patch("feedsync.daemon.init_db") as mock_init, \
         patch("feedsync.daemon.get_services", return_value=fake_services), \
         patch("feedsync.daemon.run_cycle") as mock_cycle, \
         patch("time.sleep", side_effect=KeyboardInterrupt):
        with pytest.raises(KeyboardInterrupt):
            run_daemon(interval=3600)

    mock_init.assert_called_once()
    mock_cycle.assert_called_once_with(fake_services)


# ---------------------------------------------------------------------------
# CLI: sync, queue and config commands against a real store
# ---------------------------------------------------------------------------


def test_cli_sync_run(runner, services, provider):
    from cli import cli

    provider.items = [make_item(n) for n in range(4)]
    with patch("cli.init_db"), patch("feedsync.services.get_services", return_value=services):
        result = runner.invoke(cli, ["sync", "run"])

    assert result.exit_code == 0, result.output
    assert "Fetched: 4, Saved: 4" in result.output


def test_cli_sync_run_reports_failure(runner, services, provider):
    from cli import cli

    services.usage.record_usage("inoreader", "zone1", 5000)
    with patch("cli.init_db"), patch("feedsync.services.get_services", return_value=services):
        result = runner.invoke(cli, ["sync", "run"])

    assert result.exit_code == 1
    assert "Rate limit exceeded" in result.output


def test_cli_queue_stats(runner, services):
    from cli import cli

    with patch("cli.init_db"), patch("feedsync.services.get_services", return_value=services):
        result = runner.invoke(cli, ["queue", "stats"])

    assert result.exit_code == 0, result.output
    assert '"total": 0' in result.output


def test_cli_config_set_rejects_unknown_key(runner, session_factory):
    from cli import cli

    with patch("cli.init_db"), patch("feedsync.db.session.get_session", side_effect=session_factory):
        ok = runner.invoke(cli, ["config", "set", "max_parse_attempts", "5"])
        bad = runner.invoke(cli, ["config", "set", "no_such_key", "1"])

    assert ok.exit_code == 0, ok.output
    assert bad.exit_code == 1
    assert "Unknown tunable" in bad.output
