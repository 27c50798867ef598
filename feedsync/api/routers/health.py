from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from feedsync.health.monitor import UNHEALTHY
from feedsync.services import Services, get_services

router = APIRouter()


@router.get("")
def health(services: Services = Depends(get_services)):
    """Combined report; 503 when unhealthy so probes can alert on status code."""
    report = services.health.report()
    return JSONResponse(report, status_code=503 if report["status"] == UNHEALTHY else 200)


@router.get("/freshness")
def freshness(services: Services = Depends(get_services)):
    return services.health.freshness_report()


@router.get("/parsing")
def parsing(services: Services = Depends(get_services)):
    return services.health.parsing_report()


@router.get("/queue")
def queue(services: Services = Depends(get_services)):
    return services.health.queue_report()


@router.get("/rate-limits")
def rate_limits(services: Services = Depends(get_services)):
    return services.health.rate_limit_report()
