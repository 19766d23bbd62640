"""Main entry point for the contentflow API server."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from contentflow import __version__
from contentflow.api.routes import health, pipelines, queues, scheduler
from contentflow.config import settings
from contentflow.runtime import Runtime


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        runtime: Pre-built runtime (tests). When omitted one is built from
            settings on startup and its workers are started.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Initialize resources on startup, clean up on shutdown."""
        if runtime is not None:
            app.state.runtime = runtime
            yield
            return

        owned = Runtime(settings)
        owned.connect()
        await owned.start_workers()
        app.state.runtime = owned
        try:
            yield
        finally:
            await owned.shutdown()

    app = FastAPI(
        title="contentflow",
        description="Content pipeline and scheduled publishing",
        version=__version__,
        lifespan=lifespan,
    )

    # Include API routes
    app.include_router(health.router)
    app.include_router(queues.router)
    app.include_router(pipelines.router)
    app.include_router(scheduler.router)

    return app


app = create_app()


def main() -> None:
    """Run the application."""
    logging.basicConfig(level=settings.log_level)
    settings.ensure_directories()
    uvicorn.run(
        "contentflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
