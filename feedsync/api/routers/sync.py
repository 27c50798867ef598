import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from feedsync.errors import RateLimitExceeded, SyncAlreadyRunning, public_message
from feedsync.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()


class SyncStarted(BaseModel):
    sync_id: str
    status: str


class SyncStatusResponse(BaseModel):
    sync_id: str
    status: str
    progress: int
    message: str | None = None
    error: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    metrics: dict = {}


def _run(services: Services, sync_id: str) -> None:
    try:
        services.orchestrator.run(sync_id)
    except SyncAlreadyRunning:
        logger.warning("Sync %s not started: another run is in progress", sync_id)


@router.post("", response_model=SyncStarted, status_code=202)
def trigger_sync(background: BackgroundTasks, services: Services = Depends(get_services)):
    """Start a sync run in the background and return its id for polling."""
    try:
        run = services.orchestrator.begin()
    except SyncAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=public_message(e))
    except RateLimitExceeded as e:
        headers = {"Retry-After": str(e.reset_after)} if e.reset_after else None
        raise HTTPException(status_code=429, detail=public_message(e), headers=headers)

    background.add_task(_run, services, run.sync_id)
    logger.info("Sync %s triggered via API", run.sync_id)
    return SyncStarted(sync_id=run.sync_id, status=run.status)


@router.get("/{sync_id}", response_model=SyncStatusResponse)
def get_sync_status(sync_id: str, services: Services = Depends(get_services)):
    run = services.status.get(sync_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Sync run not found or expired")
    return SyncStatusResponse(**run.as_dict())
