from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from feedsync.services import Services, get_services

router = APIRouter()


class ArticleStateResponse(BaseModel):
    id: int
    provider_id: str
    is_read: bool
    is_starred: bool
    queued: str


class ContentResponse(BaseModel):
    article_id: int
    status: str
    content: str | None = None
    error: str | None = None
    parse_attempts: int = 0


@router.post("/{article_id}/fetch-content", response_model=ContentResponse)
def fetch_content(article_id: int, force: bool = False, services: Services = Depends(get_services)):
    """Full content for an article, extracted on first request."""
    try:
        result = services.content.fetch(article_id, force=force)
    except KeyError:
        raise HTTPException(status_code=404, detail="Article not found")
    return ContentResponse(**result.as_dict())


@router.post("/{article_id}/{action}", response_model=ArticleStateResponse)
def mark_article(
    article_id: int,
    action: Literal["read", "unread", "star", "unstar"],
    services: Services = Depends(get_services),
):
    try:
        article = services.queue.record_action(article_id, action)
    except KeyError:
        raise HTTPException(status_code=404, detail="Article not found")
    return ArticleStateResponse(
        id=article.id,
        provider_id=article.provider_id,
        is_read=bool(article.is_read),
        is_starred=bool(article.is_starred),
        queued=action,
    )
