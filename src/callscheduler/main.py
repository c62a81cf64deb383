"""
FastAPI application entry point.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from callscheduler.calls.executor import CallExecutor
from callscheduler.calls.lifecycle import CallLifecycleStateMachine
from callscheduler.calls.router import router as calls_router
from callscheduler.calls.scheduler import CallScheduler
from callscheduler.calls.service import ScheduledCallService
from callscheduler.config import get_settings
from callscheduler.shared.database import DatabaseManager
from callscheduler.shared.exceptions import (
    AppError,
    ConfigurationError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from callscheduler.shared.logging import get_logger, setup_logging
from callscheduler.shared.metrics import RequestTimingMiddleware, get_metrics_registry, metrics_endpoint
from callscheduler.telephony.config import TelephonyConfig, get_telephony_config
from callscheduler.telephony.factory import create_telephony_provider
from callscheduler.telephony.interface import TelephonyProvider
from callscheduler.telephony.webhooks.router import router as twilio_webhooks_router

logger = get_logger(__name__)


def create_app(
    db: DatabaseManager | None = None,
    provider: TelephonyProvider | None = None,
    telephony_config: TelephonyConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    `db`, `provider` and `telephony_config` override the environment-driven
    defaults (used by tests).
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build the call engine once, restore schedules, tear down on exit."""
        setup_logging()
        logger.info("Application starting", extra={"env": settings.app_env})

        database = db or DatabaseManager()
        if settings.database_auto_create:
            await database.create_all()

        cfg = telephony_config or get_telephony_config()
        telephony = provider or create_telephony_provider(cfg)
        metrics = get_metrics_registry()

        executor = CallExecutor(database, telephony, cfg, metrics)
        scheduler = CallScheduler(database, executor, metrics=metrics)
        app.state.db = database
        app.state.executor = executor
        app.state.scheduler = scheduler
        app.state.lifecycle = CallLifecycleStateMachine(database, cfg, metrics)
        app.state.call_service = ScheduledCallService(database, scheduler, executor, cfg)

        if settings.scheduler_enabled:
            restored = await scheduler.init_scheduler()
            logger.info("Scheduler initialized", extra={"pending_calls": restored})

        yield

        logger.info("Shutting down application")
        await scheduler.shutdown()
        telephony.close()
        await database.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Call Scheduler API",
        description="Outbound call scheduling and call lifecycle tracking",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Map domain exceptions to HTTP responses
    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": exc.message})

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": exc.message})

    @app.exception_handler(ConfigurationError)
    async def _configuration(_: Request, exc: ConfigurationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(ProviderError)
    async def _provider(_: Request, exc: ProviderError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"detail": exc.message, "code": exc.code, "provider_error_code": exc.error_code},
        )

    @app.exception_handler(AppError)
    async def _app_error(_: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(status_code=500, content={"detail": exc.message, "code": exc.code})

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    app.add_middleware(RequestTimingMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(calls_router)
    app.include_router(twilio_webhooks_router)

    app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], include_in_schema=False)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
