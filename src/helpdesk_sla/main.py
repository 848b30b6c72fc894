"""
Helpdesk SLA - Main Application
================================

SLA engine for a helpdesk: deadlines in business time, breach tracking
and warning/breach notifications to agents.

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, helpdesk config, templates, notification relay
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration
from helpdesk_sla.config import settings

# Infrastructure
from helpdesk_sla.infrastructure.database import (
    init_database, close_database, create_tables, get_session_maker
)

# SLA Module
from helpdesk_sla.sla.infrastructure import (
    HelpdeskConfigManager,
    JinjaTemplateRenderer,
    WebhookNotifier,
    SQLAlchemyUnitOfWork,
    SQLAlchemyTeamStore,
    SQLAlchemyUserStore,
)
from helpdesk_sla.sla.application import (
    SLAService, SLAEvaluationService, NotificationDispatcher,
)
from helpdesk_sla.sla.services import SLAWorker
from helpdesk_sla.sla.interfaces import sla_router

# Logging and middleware
from helpdesk_sla.shared.infrastructure.logging import setup_logging, get_logger
from helpdesk_sla.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    register_exception_handlers,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load helpdesk configuration (business hours, app defaults)
    4. Build SLA services
    5. Start SLA worker

    SHUTDOWN:
    1. Stop SLA worker (waits for in-flight passes)
    2. Close notification relay client
    3. Stop config watcher
    4. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Helpdesk SLA service", extra={
        "app": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # Create tables (for development - use migrations in production)
    logger.info("Creating database tables")
    try:
        await create_tables()
    except Exception as e:
        logger.warning(f"Database not available - running in degraded mode: {e}")

    logger.info("Loading helpdesk configuration")
    config_manager = HelpdeskConfigManager()
    config_manager.load(settings.helpdesk_config_path)
    config_manager.start_watching()

    session_maker = get_session_maker()

    def uow_factory() -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_maker)

    sla_service = SLAService(
        uow_factory,
        team_store=SQLAlchemyTeamStore(session_maker),
        settings_store=config_manager,
        business_hours_store=config_manager,
    )

    notifier = WebhookNotifier(settings.notification_webhook_url)
    dispatcher = NotificationDispatcher(
        uow_factory,
        user_store=SQLAlchemyUserStore(session_maker),
        renderer=JinjaTemplateRenderer(settings.template_dir),
        notifier=notifier,
    )
    worker = SLAWorker(SLAEvaluationService(uow_factory), dispatcher)
    await worker.run(settings.sla_evaluation_interval)

    # Store services in app state for dependency injection
    app.state.settings = settings
    app.state.config_manager = config_manager
    app.state.sla_service = sla_service
    app.state.sla_worker = worker

    logger.info("Helpdesk SLA service started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Helpdesk SLA service")

    await worker.close()
    await notifier.close()
    config_manager.stop_watching()
    await close_database()

    logger.info("Helpdesk SLA service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Helpdesk SLA API",
    description="""
    ## Helpdesk SLA Engine

    Tracks first response, resolution and next response targets for
    conversations, measured in business time.

    **Endpoints:**
    - `GET/POST/PUT/DELETE /sla/policies` - Manage SLA policies
    - `POST /sla/apply` - Apply a policy to a conversation
    - `POST /sla/applied/{id}/next-response` - Start a next response clock
    - `POST /sla/applied/{id}/met` - Stop the latest next response clock

    **Background work:**
    - Applied SLA and SLA event evaluation passes (every `SLA_EVALUATION_INTERVAL` seconds)
    - Warning and breach notification dispatch
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
# Added last runs first: correlation id must be set before request logging.
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
register_exception_handlers(app)

# === Include Module Routers ===
app.include_router(sla_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "helpdesk_config": "loaded",
                        "sla_worker": "running"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Returns service health status including:
    - Helpdesk configuration status
    - SLA worker state
    """
    config_manager = getattr(request.app.state, "config_manager", None)
    worker = getattr(request.app.state, "sla_worker", None)

    checks = {
        "helpdesk_config": "loaded" if config_manager and config_manager.is_loaded else "not_loaded",
        "sla_worker": "running" if worker and worker.is_running else "stopped",
    }

    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "helpdesk_sla.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
