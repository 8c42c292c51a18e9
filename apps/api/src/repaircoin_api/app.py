from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from repaircoin_api.core.settings import settings
from repaircoin_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import RedemptionSessionSweepWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweep_worker = RedemptionSessionSweepWorker(
        session_factory=_session_factory,
        interval_seconds=settings.redemption_sweep_interval_seconds,
        fix_invalid=settings.redemption_sweep_fix_invalid,
    )
    app.state.redemption_sweep_worker = sweep_worker

    sweep_enabled = settings.redemption_sweep_worker_enabled
    if sweep_enabled:
        sweep_worker.start()
        logger.info(
            "Redemption session sweep worker enabled",
            interval_seconds=sweep_worker.interval_seconds,
            fix_invalid=sweep_worker.fix_invalid,
        )
    else:
        logger.info(
            "Redemption session sweep worker disabled",
            reason="redemption_sweep_worker_enabled is false",
        )

    try:
        yield
    finally:
        if sweep_enabled and sweep_worker.is_running:
            await sweep_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the RepairCoin ledger API."""
    configure_logging(
        service_name="repaircoin-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="RepairCoin API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="repaircoin-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
