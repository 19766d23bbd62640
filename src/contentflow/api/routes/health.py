"""Health check endpoint."""

from fastapi import APIRouter, Depends

from contentflow.api.deps import get_runtime
from contentflow.api.schemas import HealthResponse
from contentflow.runtime import Runtime

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(runtime: Runtime = Depends(get_runtime)) -> HealthResponse:
    """Return the health status of the store and workers."""
    from contentflow import __version__

    health = runtime.manager.health_check()
    return HealthResponse(
        status="healthy" if health["healthy"] else "degraded",
        version=__version__,
        store_healthy=health["store_healthy"],
        processors_running=health["processors_running"],
        workers=health["workers"],
    )
