"""
FastAPI application factory for the billing engine.

The container (ledger, gateways, services) is built in the lifespan and
attached to ``app.state.billing``; tests may pass a pre-built container.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from vendzz.billing.dependencies import BillingContainer
from vendzz.billing.exceptions import BillingError
from vendzz.billing.logging import setup_logging
from vendzz.billing.router import router as billing_router
from vendzz.billing.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


async def billing_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render engine errors with their status code and structured body."""
    if not isinstance(exc, BillingError):
        raise exc
    if exc.status_code >= 500:
        logger.error("billing.request.failed", path=request.url.path, error_code=exc.error_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(
    settings: Settings | None = None, container: BillingContainer | None = None
) -> FastAPI:
    """Create the billing application."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        setup_logging(settings)
        owned = container is None
        app.state.billing = container or BillingContainer.build(settings)
        logger.info(
            "service.startup.complete",
            service=settings.app_name,
            version=settings.app_version,
            environment=settings.environment.value,
            gateways=app.state.billing.gateways.names,
        )
        try:
            yield
        finally:
            if owned:
                await app.state.billing.aclose()
            logger.info("service.shutdown.complete", service=settings.app_name)

    app = FastAPI(
        title="Vendzz Billing",
        description="Recurring billing and subscription lifecycle engine",
        version=settings.app_version,
        lifespan=lifespan,
        debug=settings.debug,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url=None,
    )
    if container is not None:
        # Available before startup so tests without a lifespan still resolve it.
        app.state.billing = container

    app.add_exception_handler(BillingError, billing_error_handler)
    app.include_router(billing_router, prefix="/api/v1")
    return app
