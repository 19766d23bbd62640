"""FastAPI dependencies."""

from __future__ import annotations

from fastapi import HTTPException, Request

from contentflow.errors import ContentFlowError, InvalidTransitionError, NotFoundError
from contentflow.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """Dependency that provides the Runtime built by the app lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Runtime not initialized - app lifespan has not run")
    return runtime


def http_error(exc: ContentFlowError) -> HTTPException:
    """Map a contentflow error onto an HTTP status."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=422, detail=str(exc))
