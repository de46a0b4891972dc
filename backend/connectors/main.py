"""ASGI application and the ``connectors`` console entry point."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from connectors.api.router import api_router
from connectors.core.config import settings
from connectors.core.logging import get_logger, setup_logging
from connectors.workers import start_workers, stop_workers

setup_logging()
logger = get_logger(__name__)

# Longer than the manager's own drain grace period
WORKER_STOP_TIMEOUT = 35.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Run the worker manager for as long as the app serves requests."""
    logger.info(
        "application_starting",
        version=settings.version,
        webhook_base_url=settings.webhook_base_url,
        oauth_configured=settings.google_oauth_configured,
    )
    manager_task = asyncio.create_task(start_workers(), name="worker-manager")
    try:
        yield
    finally:
        logger.info("application_stopping")
        await stop_workers()
        done, _ = await asyncio.wait({manager_task}, timeout=WORKER_STOP_TIMEOUT)
        if not done:
            logger.warning("worker_manager_stop_timeout")
            manager_task.cancel()


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        description="Mirrors selected Google Drive folders into workspace data sources",
        version=settings.version,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(api_router)
    return app


app = create_app()


def main() -> None:
    """Serve ``app`` with uvicorn using the configured host and port."""
    import uvicorn

    uvicorn.run("connectors.main:app", host=settings.host, port=settings.port, reload=settings.debug)


if __name__ == "__main__":
    main()
