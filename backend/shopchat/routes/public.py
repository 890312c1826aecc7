# /shopchat/routes/public.py

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest
from datetime import datetime, timezone

from shopchat.config.settings import settings
from shopchat.utils.dependencies import verify_metrics_access
from shopchat.services.cache_service import cache_service
from shopchat.services.db_service import db_service

# Health checks and the metrics endpoint. /metrics is protected by the API key
# when one is configured.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Shopchat Shopping Assistant",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    """Checks the database and the cache."""
    services = {
        "database": "connected" if await db_service.health_check() else "error",
        "cache": "connected" if await cache_service.health_check() else "error",
    }
    if services["database"] != "connected":
        raise HTTPException(status_code=503, detail={"status": "not_ready", "services": services})
    return {"status": "ready", "services": services}


@router.get("/metrics", tags=["Monitoring"])
async def metrics(request: Request, _: bool = Depends(verify_metrics_access)):
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
