"""FastAPI application entrypoint.

Builds the engine and import service, includes routers, maps domain errors
to JSON responses and exposes a healthcheck endpoint.

Run locally:
    uvicorn postmatch.main:create_app --factory --reload
"""

import logging
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .database import build_engine, build_session_factory, create_schema
from .deps import Settings, get_settings
from .errors import PostmatchError
from .routers import analytics as analytics_router
from .routers import shopify_bulk as shopify_bulk_router
from .routers import shopify_webhooks as shopify_webhooks_router  # bulk_operations/finish
from .services.bulk_import_service import BulkImportService
from .telemetry.sentry import init_sentry
from .utils.env import load_env_file
from . import schemas


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Defaults to get_settings() (environment / .env)
        session_factory: Injected by tests; otherwise built from DATABASE_URL
        http_client: Shared client for Shopify calls and export downloads
    """
    if settings is None:
        load_env_file()
        settings = get_settings()

    init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)

    if session_factory is None:
        engine = build_engine(settings.DATABASE_URL, statement_timeout=settings.TRANSACTION_TIMEOUT_SECONDS)
        create_schema(engine)
        session_factory = build_session_factory(engine)

    app = FastAPI(
        title="postmatch API",
        description="Attributes storefront orders to direct-mail campaign profiles.",
        version="0.1.0",
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.import_service = BulkImportService(session_factory, settings=settings, http_client=http_client)

    @app.exception_handler(PostmatchError)
    async def postmatch_error_handler(request: Request, exc: PostmatchError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"[API] {request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.warning(f"[API] {request.method} {request.url.path} rejected: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=schemas.ErrorResponse(error=type(exc).__name__, message=exc.message).model_dump(),
        )

    app.include_router(shopify_bulk_router.router)
    app.include_router(shopify_webhooks_router.router)
    app.include_router(analytics_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run("postmatch.main:create_app", factory=True, host="0.0.0.0", port=8000)
