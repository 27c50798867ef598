"""Encrypted OAuth credential storage and the authenticated request wrapper.

Only one refresh may be on the wire at a time: the provider invalidates a
refresh token once it has been used, so parallel refreshes would lock the
account out. Callers that arrive while a refresh is in flight wait for its
result instead of starting their own.
"""

import json
import logging
import os
import tempfile
import threading
import time
from concurrent.futures import Future
from dataclasses import asdict, dataclass
from pathlib import Path

import httpx

from feedsync.auth.crypto import decrypt_payload, encrypt_payload, load_key
from feedsync.errors import (
    AuthError,
    CredentialsRevoked,
    InvalidFormat,
    NetworkError,
    NoTokenFile,
)

logger = logging.getLogger(__name__)

REFRESH_MARGIN_SECONDS = 300


@dataclass
class Token:
    access_token: str
    refresh_token: str
    expires_at: float  # epoch seconds
    scope: str = ""
    token_type: str = "Bearer"

    @classmethod
    def from_dict(cls, data: dict) -> "Token":
        try:
            return cls(
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
                expires_at=float(data["expires_at"]),
                scope=data.get("scope", "") or "",
                token_type=data.get("token_type", "Bearer") or "Bearer",
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidFormat("Credential payload is missing required fields") from e

    @classmethod
    def from_grant(cls, data: dict, now: float, previous: "Token | None" = None) -> "Token":
        """Build a token from a token-endpoint response."""
        refresh = data.get("refresh_token") or (previous.refresh_token if previous else "")
        return cls(
            access_token=data["access_token"],
            refresh_token=refresh,
            expires_at=now + float(data.get("expires_in", 3600)),
            scope=data.get("scope", previous.scope if previous else "") or "",
            token_type=data.get("token_type", "Bearer") or "Bearer",
        )


class TokenVault:
    def __init__(
        self,
        tokens_path: Path,
        encryption_key: str,
        client_id: str,
        client_secret: str,
        token_url: str,
        redirect_uri: str = "",
        http_client: httpx.Client | None = None,
        refresh_margin: int = REFRESH_MARGIN_SECONDS,
        clock=time.time,
    ):
        self.tokens_path = Path(tokens_path)
        self._key_raw = encryption_key
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.redirect_uri = redirect_uri
        self.http = http_client or httpx.Client(timeout=30.0)
        self.refresh_margin = refresh_margin
        self.clock = clock

        self._token: Token | None = None
        self._revoked = False
        self._lock = threading.Lock()
        self._inflight: Future | None = None
        self.refresh_count = 0

    @property
    def revoked(self) -> bool:
        return self._revoked

    def _key(self) -> bytes:
        try:
            return load_key(self._key_raw)
        except ValueError as e:
            raise AuthError(str(e)) from e

    # --- storage ---

    def load_tokens(self) -> Token:
        """Decrypt and parse the credential file."""
        if not self.tokens_path.exists():
            raise NoTokenFile("No stored credentials; run the OAuth setup first")

        try:
            envelope = json.loads(self.tokens_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidFormat("Credential file is not valid JSON") from e
        if not isinstance(envelope, dict):
            raise InvalidFormat("Credential file is not a valid encrypted envelope")

        plaintext = decrypt_payload(envelope, self._key())
        try:
            data = json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise InvalidFormat("Decrypted credentials are not valid JSON") from e
        if not isinstance(data, dict):
            raise InvalidFormat("Decrypted credentials are not a JSON object")

        token = Token.from_dict(data)
        self._token = token
        return token

    def save_tokens(self, token: Token) -> None:
        """Encrypt and atomically replace the credential file (owner-only)."""
        envelope = encrypt_payload(json.dumps(asdict(token)), self._key())
        directory = self.tokens_path.parent
        directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tokens-", suffix=".tmp")
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(envelope, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.tokens_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        os.chmod(self.tokens_path, 0o600)
        self._token = token

    def current_token(self) -> Token:
        if self._token is None:
            return self.load_tokens()
        return self._token

    # --- refresh ---

    def needs_refresh(self, token: Token | None = None) -> bool:
        token = token or self.current_token()
        return self.clock() > token.expires_at - self.refresh_margin

    def ensure_fresh_token(self) -> Token:
        if self._revoked:
            raise CredentialsRevoked("Credentials were revoked; re-authentication is required")
        token = self.current_token()
        if not self.needs_refresh(token):
            return token
        return self.refresh(stale=token)

    def refresh(self, stale: Token | None = None) -> Token:
        """Exchange the refresh token. Concurrent callers share one request.

        When ``stale`` is given and the stored token has already moved on
        (another caller refreshed it), that newer token is returned instead.
        """
        with self._lock:
            if self._revoked:
                raise CredentialsRevoked("Credentials were revoked; re-authentication is required")
            if (
                stale is not None
                and self._token is not None
                and self._token.access_token != stale.access_token
                and not self.needs_refresh(self._token)
            ):
                return self._token
            future = self._inflight
            owner = future is None
            if owner:
                future = Future()
                self._inflight = future

        if not owner:
            return future.result()

        try:
            token = self._refresh_now()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(token)
            return token
        finally:
            with self._lock:
                self._inflight = None

    def _refresh_now(self) -> Token:
        current = self.current_token()
        logger.info("Refreshing provider access token")
        self.refresh_count += 1
        data = self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": current.refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }
        )
        token = Token.from_grant(data, self.clock(), previous=current)
        self.save_tokens(token)
        logger.info("Access token refreshed; valid for %ds", int(token.expires_at - self.clock()))
        return token

    def exchange_code(self, code: str) -> Token:
        """Authorization-code grant; stores the resulting credentials."""
        data = self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
            }
        )
        token = Token.from_grant(data, self.clock())
        self.save_tokens(token)
        self._revoked = False
        return token

    def _token_request(self, form: dict) -> dict:
        try:
            response = self.http.post(self.token_url, data=form)
        except httpx.TransportError as e:
            raise NetworkError(f"Token endpoint unreachable ({type(e).__name__})") from e

        if response.status_code >= 400:
            error = ""
            try:
                error = response.json().get("error", "")
            except ValueError:
                pass
            if error == "invalid_grant":
                self._revoked = True
                logger.error("Refresh token rejected (invalid_grant); manual re-authentication required")
                raise CredentialsRevoked("Credentials were revoked; re-authentication is required")
            if response.status_code >= 500:
                raise NetworkError(f"Token endpoint returned {response.status_code}")
            raise AuthError(f"Token request failed with status {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise AuthError("Token endpoint returned an unreadable response") from e
        if "access_token" not in data:
            raise AuthError("Token endpoint response has no access token")
        return data

    # --- requests ---

    def make_authenticated_request(self, method: str, url: str, on_send=None, **kwargs) -> httpx.Response:
        """Send a request with the bearer token; one forced refresh on 401.

        ``on_send`` is called once per request put on the wire, retries included.
        """
        token = self.ensure_fresh_token()
        response = self._send(method, url, token, on_send, **kwargs)
        if response.status_code != 401:
            return response

        logger.warning("Provider returned 401; forcing token refresh and retrying once")
        token = self.refresh(stale=token)
        response = self._send(method, url, token, on_send, **kwargs)
        if response.status_code == 401:
            raise AuthError("Provider rejected credentials after refresh; re-authentication is required")
        return response

    def _send(self, method: str, url: str, token: Token, on_send=None, **kwargs) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token.access_token}"
        if on_send is not None:
            on_send()
        try:
            return self.http.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise NetworkError(f"Provider unreachable ({type(e).__name__})") from e

    def close(self) -> None:
        self.http.close()
