from contextlib import asynccontextmanager
from typing import Optional
import uuid

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
import structlog

from geosearch.core.config import settings
from geosearch.api.routes import router as api_router
from geosearch.logging import configure_logging
from geosearch.middleware.logging import LoggingMiddleware
from geosearch.services.orchestrator import SearchOrchestrator

logger = structlog.get_logger(__name__)


def create_app(orchestrator: Optional[SearchOrchestrator] = None) -> FastAPI:
    """
    Build the application.

    Pass an orchestrator to reuse it (tests do); otherwise one is built from
    settings at startup and closed at shutdown.
    """
    configure_logging()

    # --- Application Lifecycle Management ---
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("application_startup", version=settings.VERSION, env=settings.ENV)
        owned = orchestrator is None
        app.state.orchestrator = SearchOrchestrator.create(settings) if owned else orchestrator
        logger.info(
            "orchestrator_ready",
            entity_store=settings.ENTITY_STORE_URL,
            geocoding=app.state.orchestrator.geocoder is not None,
            road_distances=app.state.orchestrator.enricher is not None,
        )

        yield

        logger.info("application_shutdown")
        if owned:
            await app.state.orchestrator.aclose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description=settings.BRIEF_DESCRIPTION,
        lifespan=lifespan,
    )
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    app.add_middleware(LoggingMiddleware)
    app.include_router(api_router, prefix="/api")

    # --- Health Check Endpoint ---
    @app.get("/health", status_code=status.HTTP_200_OK)
    async def health_check(request: Request):
        stats = request.app.state.orchestrator.cache_stats()
        return {
            "status": "ok",
            "version": settings.VERSION,
            "cached_entries": sum(stats["entries"].values()),
        }

    # --- Global Exception Handler (for unhandled errors) ---
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        error_id = str(uuid.uuid4())
        logger.error("unhandled_exception", error_id=error_id, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": {
                    "error": "INTERNAL_SERVER_ERROR",
                    "detail": "An unexpected error occurred. Please report this error ID.",
                    "error_id": error_id
                }
            }
        )

    return app


app = create_app()
