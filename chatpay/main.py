"""Main FastAPI application."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chatpay import __version__
from chatpay.config import settings
from chatpay.container import Services
from chatpay.database import AsyncSessionLocal, init_db
from chatpay.errors import MonetizationError
from chatpay.logging_config import get_logger, setup_logging
from chatpay.routes import auth, balance, monetization, notifications, payments, requests, sessions
from chatpay.sweeper import sweep_loop

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    setup_logging(settings.log_level, json_logs=settings.log_json)

    logger.info("Initializing database")
    await init_db()

    services: Services = app.state.services
    sweep_task = None
    if settings.sweeper_enabled:
        logger.info("Starting sweep loop", interval_seconds=settings.sweep_interval_seconds)
        sweep_task = asyncio.create_task(sweep_loop(services.sweeper, settings.sweep_interval_seconds))

    yield

    if sweep_task is not None:
        logger.info("Shutting down sweep loop")
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
        logger.info("Sweep loop stopped")


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(MonetizationError)
    async def monetization_error_handler(request: Request, exc: MonetizationError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.exception("Monetization error", path=request.url.path, exc_info=exc)
        else:
            logger.warning(
                "Monetization client error",
                code=exc.code,
                status_code=exc.http_status,
                detail=exc.message,
                path=request.url.path,
            )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(
        title="chatpay",
        description="Paid chat time, metered content and escrowed service requests",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services or Services(AsyncSessionLocal)

    install_exception_handlers(app)

    # Include routers
    app.include_router(auth.router)
    app.include_router(balance.router)
    app.include_router(payments.router)
    app.include_router(monetization.router)
    app.include_router(sessions.router)
    app.include_router(requests.router)
    app.include_router(notifications.router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "chatpay",
            "status": "running",
            "version": __version__,
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()
