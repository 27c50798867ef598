"""Composition root: builds each component once and wires collaborators.

The vault, usage tracker and provider client are shared by every component
that needs them; nothing constructs its own.
"""

from dataclasses import dataclass
from functools import lru_cache

from feedsync import config
from feedsync.auth.vault import TokenVault
from feedsync.content.fetcher import ContentFetcher
from feedsync.db.session import SessionLocal
from feedsync.health.monitor import HealthMonitor
from feedsync.provider.client import ReaderClient
from feedsync.sync.deletions import DeletionTracker
from feedsync.sync.orchestrator import SyncOrchestrator
from feedsync.sync.queue import MutationQueue
from feedsync.sync.status import SyncStatusStore
from feedsync.usage.tracker import UsageTracker


@dataclass
class Services:
    vault: TokenVault
    usage: UsageTracker
    client: ReaderClient
    deletions: DeletionTracker
    status: SyncStatusStore
    orchestrator: SyncOrchestrator
    queue: MutationQueue
    content: ContentFetcher
    health: HealthMonitor

    def close(self) -> None:
        self.vault.close()
        self.content.close()


def build_services(session_factory=SessionLocal, vault: TokenVault | None = None, content_http=None) -> Services:
    vault = vault or TokenVault(
        config.TOKENS_PATH,
        config.TOKEN_ENCRYPTION_KEY,
        config.CLIENT_ID,
        config.CLIENT_SECRET,
        config.TOKEN_URL,
        redirect_uri=config.REDIRECT_URI,
    )
    usage = UsageTracker(session_factory)
    client = ReaderClient(vault, usage, config.PROVIDER_BASE_URL, config.PROVIDER_SERVICE)
    deletions = DeletionTracker(session_factory)
    status = SyncStatusStore(session_factory, stale_after_seconds=config.SYNC_BUDGET_SECONDS * 2)
    orchestrator = SyncOrchestrator(session_factory, vault, client, usage, deletions, status)
    return Services(
        vault=vault,
        usage=usage,
        client=client,
        deletions=deletions,
        status=status,
        orchestrator=orchestrator,
        queue=MutationQueue(session_factory, client, usage),
        content=ContentFetcher(session_factory, usage, http_client=content_http),
        health=HealthMonitor(session_factory, usage),
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    """Process-wide instance used by the API and CLI."""
    return build_services()
