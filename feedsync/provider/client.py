"""Client for the provider's Google Reader-style API.

Built once by the composition root and handed to the orchestrator and the
mutation queue. Every outbound call goes through the usage tracker: the
zone budget is checked before the call, the call is counted, and the
provider's rate-limit headers are captured from the response.
"""

import logging

import httpx

from feedsync.auth.vault import TokenVault
from feedsync.errors import NetworkError, ProviderError, RateLimitExceeded
from feedsync.usage.tracker import UsageTracker, parse_header_int

logger = logging.getLogger(__name__)

READING_LIST = "user/-/state/com.google/reading-list"
READ_STATE = "user/-/state/com.google/read"
STARRED_STATE = "user/-/state/com.google/starred"

STREAM_PAGE_SIZE = 100


class ReaderClient:
    def __init__(self, vault: TokenVault, usage: UsageTracker, base_url: str, service: str):
        self.vault = vault
        self.usage = usage
        self.base_url = base_url.rstrip("/")
        self.service = service

    def _request(self, method: str, path: str, zone: str, **kwargs) -> httpx.Response:
        self.usage.ensure_available(self.service, zone)
        response = self.vault.make_authenticated_request(
            method,
            f"{self.base_url}/{path}",
            on_send=lambda: self.usage.record_usage(self.service, zone, 1),
            **kwargs,
        )
        self.usage.capture_provider_headers(response.headers, self.service)

        if response.status_code == 429:
            reset_after = parse_header_int(response.headers.get("X-Reader-Limits-Reset-After"))
            raise RateLimitExceeded(self.service, zone, reset_after)
        if response.status_code >= 500:
            raise NetworkError(f"Provider returned {response.status_code} for {path}")
        if response.status_code >= 400:
            raise ProviderError(f"Provider returned {response.status_code} for {path}", response.status_code)
        return response

    def _get_json(self, path: str, params: dict | None = None) -> dict:
        response = self._request("GET", path, "zone1", params=params)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"Provider returned invalid JSON for {path}") from e

    def subscription_list(self) -> list[dict]:
        return self._get_json("subscription/list").get("subscriptions", [])

    def unread_counts(self) -> dict[str, int]:
        data = self._get_json("unread-count")
        return {item["id"]: int(item.get("count", 0)) for item in data.get("unreadcounts", []) if "id" in item}

    def stream_contents(
        self,
        max_articles: int,
        newer_than: int | None = None,
        exclude_read: bool = True,
        stream_id: str = READING_LIST,
        on_page=None,
    ) -> list[dict]:
        """Fetch up to ``max_articles`` items, following continuation cursors."""
        items: list[dict] = []
        continuation = None
        while len(items) < max_articles:
            params = {"n": min(STREAM_PAGE_SIZE, max_articles - len(items))}
            if exclude_read:
                params["xt"] = READ_STATE
            if newer_than:
                params["ot"] = newer_than
            if continuation:
                params["c"] = continuation

            data = self._get_json(f"stream/contents/{stream_id}", params=params)
            page = data.get("items", [])
            items.extend(page)
            if on_page is not None:
                on_page(len(items))

            continuation = data.get("continuation")
            if not continuation or not page:
                break

        return items[:max_articles]

    def edit_tag(self, item_ids: list[str], add: str | None = None, remove: str | None = None) -> None:
        """Push a read/star change for a batch of items (zone 2)."""
        if not item_ids:
            return
        form = {"i": list(item_ids)}
        if add:
            form["a"] = add
        if remove:
            form["r"] = remove
        self._request("POST", "edit-tag", "zone2", data=form)
