import json
import logging

import click

from feedsync.db.session import init_db


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level")
def cli(verbose):
    """Bi-directional feed sync engine."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()


def _services():
    from feedsync.services import get_services

    return get_services()


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _fail(message):
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(1)


# --- Sync ---


@cli.group()
def sync():
    """Pull subscriptions and articles from the provider."""
    pass


@sync.command("run")
def sync_run():
    """Run one sync and wait for it to finish."""
    from feedsync.errors import SyncError, public_message

    try:
        status = _services().orchestrator.run()
    except SyncError as e:
        _fail(public_message(e))

    if status.status == "failed":
        _fail(f"Sync {status.sync_id} failed: {status.error}")
    m = status.metrics
    click.echo(
        f"Sync {status.sync_id} completed. "
        f"Fetched: {m.get('fetched', 0)}, Saved: {m.get('upserted', 0)}, "
        f"Skipped (deleted): {m.get('skipped_deleted', 0)}, Feeds removed: {m.get('feeds_removed', 0)}"
    )


@sync.command("status")
@click.argument("sync_id")
def sync_status(sync_id):
    """Show the status of a sync run."""
    status = _services().status.get(sync_id)
    if status is None:
        _fail(f"Sync run {sync_id} not found or expired")
    _echo_json(status.as_dict())


# --- Queue ---


@cli.group()
def queue():
    """Push local read/star changes to the provider."""
    pass


@queue.command("drain")
def queue_drain():
    """Send pending changes now."""
    from feedsync.errors import AuthError, public_message

    try:
        result = _services().queue.drain()
    except AuthError as e:
        _fail(public_message(e))
    click.echo(f"Pushed: {result.pushed}, Failed: {result.failed}, Waiting (backoff): {result.skipped}")
    if result.rate_limited:
        click.echo("Stopped early: write budget exhausted for today", err=True)


@queue.command("stats")
def queue_stats():
    """Show queue counts."""
    _echo_json(_services().queue.stats())


@queue.command("purge")
def queue_purge():
    """Drop permanently failed entries and print them."""
    dropped = _services().queue.purge_failed()
    for entry in dropped:
        click.echo(f"  {entry['action_type']:<7} {entry['provider_id']}  attempts={entry['sync_attempts']}")
    click.echo(f"Purged {len(dropped)} failed entries")


# --- Content ---


@cli.group()
def content():
    """Full-content extraction for partial feeds."""
    pass


@content.command("fetch")
@click.argument("article_ids", type=int, nargs=-1, required=True)
@click.option("--force", is_flag=True, help="Retry even if attempts are exhausted")
def content_fetch(article_ids, force):
    """Extract full content for one or more articles."""
    results = _services().content.fetch_many(list(article_ids), force=force)
    for r in results:
        detail = f"{len(r.content)} chars" if r.content else r.error
        click.echo(f"  #{r.article_id} [{r.status}] {detail}")


@content.command("detect-partial")
def content_detect_partial():
    """Re-classify feeds as partial or full."""
    summary = _services().content.detect_partial_feeds()
    click.echo(f"Checked {summary['checked']} feeds, {summary['partial']} partial")


@content.command("retention")
@click.option("--days", type=int, default=None, help="Override the content retention window")
def content_retention(days):
    """Clear extracted content of old read articles."""
    cleared = _services().content.apply_retention(days)
    click.echo(f"Cleared content of {cleared} articles")


# --- Maintenance ---


@cli.command()
def maintenance():
    """Run housekeeping once: purges, retention, partial-feed detection."""
    from feedsync.daemon import run_maintenance

    results = run_maintenance(_services())
    for name, count in results.items():
        click.echo(f"  {name}: {'error' if count is None else count}")


@cli.command()
@click.option("--component", type=click.Choice(["freshness", "parsing", "queue", "rate-limits"]), default=None)
def health(component):
    """Print the health report."""
    monitor = _services().health
    if component is None:
        report = monitor.report()
    else:
        report = {
            "freshness": monitor.freshness_report,
            "parsing": monitor.parsing_report,
            "queue": monitor.queue_report,
            "rate-limits": monitor.rate_limit_report,
        }[component]()
    _echo_json(report)


@cli.group()
def config():
    """Runtime tunables stored in the database."""
    pass


@config.command("show")
def config_show():
    from dataclasses import asdict

    from feedsync.db.session import get_session
    from feedsync.tunables import load_tunables

    session = get_session()
    try:
        _echo_json(asdict(load_tunables(session)))
    finally:
        session.close()


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key, value):
    from feedsync.db.session import get_session
    from feedsync.tunables import set_tunable

    session = get_session()
    try:
        set_tunable(session, key, value)
    except KeyError as e:
        _fail(e.args[0])
    finally:
        session.close()
    click.echo(f"Set {key} = {value}")


# --- Auth ---


@cli.group()
def auth():
    """Provider OAuth credentials."""
    pass


@auth.command("exchange")
@click.argument("code")
def auth_exchange(code):
    """Exchange an authorization code and store encrypted credentials."""
    from feedsync.errors import SyncError, public_message

    try:
        token = _services().vault.exchange_code(code)
    except SyncError as e:
        _fail(public_message(e))
    click.echo(f"Credentials stored (scope: {token.scope or '-'})")


@auth.command("status")
def auth_status():
    """Check that stored credentials load and whether they need refreshing."""
    import time

    from feedsync.errors import AuthError, public_message

    vault = _services().vault
    try:
        token = vault.load_tokens()
    except AuthError as e:
        _fail(public_message(e))
    remaining = int(token.expires_at - time.time())
    state = "refresh due" if vault.needs_refresh(token) else "valid"
    click.echo(f"Credentials {state}; access token expires in {max(remaining, 0)}s")


@auth.command("generate-key")
def auth_generate_key():
    """Print a new TOKEN_ENCRYPTION_KEY value."""
    from feedsync.auth.crypto import generate_key

    click.echo(generate_key())


# --- Daemon ---


@cli.command()
@click.option("--interval", "-i", type=int, default=900, help="Seconds between cycles")
def daemon(interval):
    """Run sync, queue drain and maintenance on a timer."""
    from feedsync.daemon import run_daemon

    click.echo(f"Starting daemon (interval={interval}s)")
    run_daemon(interval)


# --- API ---


@cli.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", "-p", type=int, default=8000, help="Port to bind to")
def api(host, port):
    """Start the FastAPI server."""
    import uvicorn

    from feedsync.api.main import app

    click.echo(f"Starting API server at http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    cli()
