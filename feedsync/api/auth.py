"""Optional bearer token authentication for the feedsync API.

If FEEDSYNC_API_TOKEN is set in the environment, all API routes require
Authorization: Bearer <token>. If unset or empty, the API is open (local use).
"""

import hmac
import os

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from feedsync.config import API_TOKEN_ENV

_bearer_scheme = HTTPBearer(auto_error=False)


def api_token() -> str:
    return os.environ.get(API_TOKEN_ENV, "").strip()


async def verify_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """FastAPI dependency that enforces optional bearer auth."""
    token = api_token()
    if not token:
        return

    if credentials is None or not hmac.compare_digest(credentials.credentials, token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
