"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --port 8080

Alert state lives in process memory: run a single worker.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import Settings, settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Alert engine ──
from backend.app.alerts.alert_engine import AlertEngine, EngineConfig
from backend.app.alerts.call_outcome import AnswerRule, CallOutcomeListener
from backend.app.alerts.channels import NotificationDispatcher, build_dispatcher
from backend.app.alerts.state_store import DeviceStateStore
from backend.app.events.store import EventStore, build_event_store

# ── API routers ──
from backend.app.api.deps import Services
from backend.app.api.v1.devices import router as device_router
from backend.app.api.v1.telephony import router as telephony_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def build_services(
    config: Settings,
    *,
    dispatcher: Optional[NotificationDispatcher] = None,
    event_store: Optional[EventStore] = None,
) -> Services:
    store = DeviceStateStore()
    engine = AlertEngine(
        store,
        dispatcher or build_dispatcher(config),
        EngineConfig.from_settings(config),
    )
    listener = CallOutcomeListener(store, AnswerRule.from_settings(config))
    return Services(
        config=config,
        engine=engine,
        listener=listener,
        event_store=event_store or build_event_store(config.EVENT_STORE_BACKEND),
    )


def create_app(
    config: Optional[Settings] = None,
    *,
    dispatcher: Optional[NotificationDispatcher] = None,
    event_store: Optional[EventStore] = None,
) -> FastAPI:
    """Build the application; tests pass their own dispatcher / store."""
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            config.APP_NAME, config.APP_VERSION, config.ENVIRONMENT,
        )
        services = build_services(config, dispatcher=dispatcher, event_store=event_store)
        if services.event_store.backend == "postgres":
            from backend.app.core.database import init_db

            await init_db()
        if not services.engine.config.call_ready:
            logger.warning("Call engine prerequisites missing — calls disabled")
        app.state.services = services
        yield
        services.engine.shutdown()
        await services.event_store.close()
        logger.info("Shutting down %s", config.APP_NAME)

    app = FastAPI(
        title=config.APP_NAME,
        description=(
            "Tracker backend: ingests GPS device events, classifies devices "
            "as offline / heartbeat / chase, and escalates confirmed movement "
            "by SMS and a bounded series of voice calls."
        ),
        version=config.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS if not config.CORS_ALLOW_ALL else ["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_error_handlers(app)

    app.include_router(device_router)
    app.include_router(telephony_router)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "status": f"{config.APP_NAME} is LIVE",
            "version": config.APP_VERSION,
            "environment": config.ENVIRONMENT,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Deep health probe — checks all subsystems."""
        report = await run_health_check(request.app.state.services)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness(request: Request):
        report = await run_health_check(request.app.state.services)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
