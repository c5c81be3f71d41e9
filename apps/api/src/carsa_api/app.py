from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from loguru import logger

from carsa_api.core.settings import settings
from carsa_api.db.session import async_session
from .api.errors import request_validation_handler
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import ReconciliationWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    reconciliation_worker = ReconciliationWorker(
        session_factory=_session_factory,
        interval_seconds=settings.reconciliation_interval_seconds,
        batch_size=settings.reconciliation_batch_size,
    )
    app.state.reconciliation_worker = reconciliation_worker

    reconciliation_enabled = settings.reconciliation_worker_enabled
    if reconciliation_enabled:
        reconciliation_worker.start()
        logger.info(
            "Reconciliation worker enabled",
            interval_seconds=reconciliation_worker.interval_seconds,
            batch_size=settings.reconciliation_batch_size,
        )
    else:
        logger.info(
            "Reconciliation worker disabled",
            reason="reconciliation_worker_enabled is false",
        )

    try:
        yield
    finally:
        if reconciliation_enabled and reconciliation_worker.is_running:
            await reconciliation_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the Carsa rewards API."""
    configure_logging(
        service_name="carsa-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="Carsa Rewards API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="carsa-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(api_router)

    return app
