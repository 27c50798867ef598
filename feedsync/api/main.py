from fastapi import Depends, FastAPI

from feedsync.api.auth import api_token, verify_token
from feedsync.api.routers import articles, health, sync
from feedsync.db.session import init_db

# Disable OpenAPI docs when auth is active
_token_set = bool(api_token())
app = FastAPI(
    title="feedsync",
    version="0.1.0",
    docs_url=None if _token_set else "/docs",
    redoc_url=None if _token_set else "/redoc",
    openapi_url=None if _token_set else "/openapi.json",
)

_auth = [Depends(verify_token)]

app.include_router(sync.router, prefix="/api/sync", tags=["sync"], dependencies=_auth)
app.include_router(articles.router, prefix="/api/articles", tags=["articles"], dependencies=_auth)
app.include_router(health.router, prefix="/api/health", tags=["health"], dependencies=_auth)


@app.on_event("startup")
def startup():
    init_db()
