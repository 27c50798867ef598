"""Shared fixtures: a temporary SQLite database and a fake provider.

The fake provider answers the token endpoint and the reader API through
``httpx.MockTransport`` so every component runs its real HTTP code path.
"""

import os
import tempfile
import threading
import time
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from feedsync.auth.crypto import generate_key
from feedsync.auth.vault import Token, TokenVault
from feedsync.db.models import Base
from feedsync.db.session import make_engine
from feedsync.services import build_services

TOKEN_URL = "https://www.inoreader.com/oauth2/token"
READ = "user/-/state/com.google/read"
STARRED = "user/-/state/com.google/starred"


@pytest.fixture()
def temp_db():
    """Create a temporary SQLite database with all tables for testing."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    os.unlink(path)
    url = f"sqlite:///{path}"

    engine = make_engine(url)
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)

    yield {"engine": engine, "session_factory": Session, "path": path, "url": url}

    engine.dispose()
    time.sleep(0.1)
    for suffix in ("", "-wal", "-shm"):
        p = path + suffix
        if os.path.exists(p):
            os.unlink(p)


@pytest.fixture()
def session_factory(temp_db):
    return temp_db["session_factory"]


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


def make_subscription(n, folder=None):
    sub = {
        "id": f"feed/https://site{n}.example/rss",
        "title": f"Site {n}",
        "url": f"https://site{n}.example/rss",
        "htmlUrl": f"https://site{n}.example/",
        "categories": [],
    }
    if folder:
        sub["categories"] = [{"id": f"user/1005/label/{folder}", "label": folder}]
    return sub


def make_item(n, feed=1, read=False, starred=False, content="<p>Body text</p>"):
    categories = ["user/-/state/com.google/reading-list"]
    if read:
        categories.append(READ)
    if starred:
        categories.append(STARRED)
    return {
        "id": f"tag:google.com,2005:reader/item/{n:016x}",
        "title": f"Item &amp; {n}",
        "author": "Author",
        "published": int(time.time()) - n * 60,
        "canonical": [{"href": f"https://site{feed}.example/posts/{n}"}],
        "summary": {"content": content},
        "categories": categories,
        "origin": {"streamId": f"feed/https://site{feed}.example/rss"},
    }


class FakeProvider:
    """In-memory stand-in for the provider's token endpoint and reader API."""

    def __init__(self):
        self.subscriptions = [make_subscription(1, "Tech"), make_subscription(2, "Tech"), make_subscription(3)]
        self.unread_counts = [
            {"id": "feed/https://site1.example/rss", "count": 12},
            {"id": "feed/https://site2.example/rss", "count": 3},
        ]
        self.items = []
        self.responses = {}  # path suffix -> list of httpx.Response overrides, consumed in order
        self.rate_headers = {}
        self.token_calls = 0
        self.token_forms = []
        self.token_error = None
        self.token_delay = 0.0
        self.requests = []
        self.edits = []
        self._lock = threading.Lock()

    def transport(self):
        return httpx.MockTransport(self.handler)

    def client(self):
        return httpx.Client(transport=self.transport())

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/oauth2/token"):
            return self._token(request)

        with self._lock:
            self.requests.append(request)
        for suffix, queued in self.responses.items():
            if path.endswith(suffix) and queued:
                return queued.pop(0)

        if path.endswith("/subscription/list"):
            return httpx.Response(200, json={"subscriptions": self.subscriptions}, headers=self.rate_headers)
        if path.endswith("/unread-count"):
            return httpx.Response(200, json={"unreadcounts": self.unread_counts}, headers=self.rate_headers)
        if "/stream/contents/" in path:
            n = int(request.url.params.get("n", "20"))
            start = int(request.url.params.get("c", "0"))
            body = {"items": self.items[start : start + n]}
            if start + n < len(self.items):
                body["continuation"] = str(start + n)
            return httpx.Response(200, json=body, headers=self.rate_headers)
        if path.endswith("/edit-tag"):
            self.edits.append(parse_qs(request.content.decode()))
            return httpx.Response(200, text="OK", headers=self.rate_headers)
        if path.startswith("/articles/"):
            return httpx.Response(200, text="<html><body><article>Full text</article></body></html>")
        return httpx.Response(404)

    def _token(self, request):
        if self.token_delay:
            time.sleep(self.token_delay)
        with self._lock:
            self.token_calls += 1
            count = self.token_calls
            self.token_forms.append(parse_qs(request.content.decode()))
        if self.token_error:
            return httpx.Response(400, json={"error": self.token_error})
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{count}",
                "refresh_token": f"refresh-{count}",
                "expires_in": 3600,
                "token_type": "Bearer",
                "scope": "read write",
            },
        )

    def api_requests(self, suffix):
        return [r for r in self.requests if r.url.path.endswith(suffix) or suffix in r.url.path]


@pytest.fixture()
def provider():
    return FakeProvider()


@pytest.fixture()
def vault(tmp_path, provider):
    v = TokenVault(
        tmp_path / "tokens.json",
        generate_key(),
        "client-id",
        "client-secret",
        TOKEN_URL,
        http_client=provider.client(),
    )
    v.save_tokens(Token("access-0", "refresh-0", time.time() + 3600, "read write"))
    yield v
    v.close()


@pytest.fixture()
def services(session_factory, vault, provider):
    s = build_services(session_factory, vault=vault, content_http=provider.client())
    yield s
    s.content.close()
