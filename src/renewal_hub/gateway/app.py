"""FastAPI application factory for the renewal hub."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from renewal_hub import __version__
from renewal_hub.errors import RenewalHubError
from renewal_hub.gateway import auth, routes
from renewal_hub.scheduler.detector import DetectorThread
from renewal_hub.services import ServiceContext

logger = logging.getLogger(__name__)


def create_app(services: ServiceContext, *, start_detector: bool | None = None) -> FastAPI:
    """Create the FastAPI application around an already-built service graph.

    The detector thread follows ``settings.scheduler.detector_enabled`` unless
    ``start_detector`` overrides it.
    """

    scheduler = services.settings.scheduler
    run_detector = scheduler.detector_enabled if start_detector is None else start_detector
    detector_thread = DetectorThread(services.detector, interval_seconds=scheduler.tick_seconds)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if run_detector:
            detector_thread.start()
        try:
            yield
        finally:
            detector_thread.stop()

    app = FastAPI(
        title="Renewal Hub API",
        description="Credential renewal scheduler and worker pull gateway",
        version=__version__,
        lifespan=lifespan,
    )

    app.dependency_overrides[routes.get_services] = lambda: services
    app.dependency_overrides[auth.get_worker_key] = lambda: services.settings.server.worker_key
    app.add_exception_handler(RenewalHubError, _renewal_hub_error_handler)

    app.include_router(
        routes.router,
        prefix="/api",
        dependencies=[Depends(auth.require_worker_key)],
    )
    app.include_router(routes.health_router, tags=["health"])
    return app


async def _renewal_hub_error_handler(_: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, RenewalHubError):
        raise exc
    if exc.status_code >= 500:  # noqa: PLR2004
        logger.error("Request failed: %s", exc.message)
    else:
        logger.info("Request rejected (%s): %s", exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
