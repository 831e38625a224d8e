"""Project Automation Engine - FastAPI Application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import get_settings
from api.v1.router import api_v1_router
from api.routes import health
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from db import database
from triggers.base import ACTION_EVENT_PREFIX, DomainEvent
from triggers.event_bus import EventBusSubscriber, get_event_publisher
from workflow.dispatcher import get_action_dispatcher
from workflow.rules import AutomationRuleMatcher
from workflow.scheduler import ResumeScheduler

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Cache-Control"] = "no-store"
        if get_settings().is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


async def handle_domain_event(event: DomainEvent) -> None:
    """Event bus callback: run the rule matcher in its own transaction."""
    if event.type.startswith(ACTION_EVENT_PREFIX):
        # Announcements for the owning service, not triggers
        return
    async with database.AsyncSessionLocal() as session:
        try:
            await AutomationRuleMatcher(session).handle_event(event)
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    setup_logging()

    await database.init_db()
    logger.info("[startup] Database ready")

    dispatcher = get_action_dispatcher()
    logger.info(f"[startup] Action dispatcher ready ({len(dispatcher.available_types)} action types)")

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = ResumeScheduler()
        scheduler.start()
        logger.info(f"[startup] Resume scheduler polling every {scheduler.interval}s")

    subscriber = None
    if settings.EVENT_BUS_ENABLED:
        subscriber = EventBusSubscriber(handle_domain_event)
        subscriber.start()
        logger.info(f"[startup] Subscribed to domain events on '{settings.EVENT_BUS_CHANNEL}'")

    logger.info(
        f"[startup] {settings.APP_NAME} v{settings.APP_VERSION} started "
        f"({settings.ENVIRONMENT}, execution mode: {settings.EXECUTION_MODE})"
    )
    yield

    if subscriber is not None:
        await subscriber.stop()
    if scheduler is not None:
        await scheduler.stop()
    await get_event_publisher().close()
    await database.close_db()
    logger.info("[shutdown] Application shut down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Workflow automation engine: graph workflows with approvals and "
                    "retries, plus event-driven automation rules.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    app.add_middleware(RequestTrackingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=settings.ALLOW_CREDENTIALS,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )

    setup_exception_handlers(app)

    # Root health check (unversioned, for load balancers and k8s health checks)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API: all business endpoints under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
