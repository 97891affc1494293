"""
CivicTrack - Main Application
=============================

Civic issue lifecycle and SLA escalation service.

Modules:
- Issues: Reports, workflow, state history, upvotes, feedback
- SLA: Deadlines, periodic escalation sweep, dashboard

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, value objects and the workflow table
- Infrastructure: Database, Slack, config watcher, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from civictrack.config import settings
from civictrack.core import ApplicationException

# Infrastructure
from civictrack.infrastructure.database import (
    close_database,
    create_tables,
    get_session_context,
    init_database,
)

# Issue module
from civictrack.issues.application import EscalationService, HealthResponse
from civictrack.issues.infrastructure import (
    EscalationScheduler,
    SLAConfigManager,
    SlackEscalationNotifier,
    SQLAlchemyIssueRepository,
    SQLAlchemyStateHistoryRepository,
    SQLAlchemyUnitOfWork,
)
from civictrack.issues.interfaces import issues_router, sla_router

# Logging and middleware
from civictrack.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from civictrack.shared.infrastructure.logging import get_logger, log_latency, setup_logging

logger = get_logger(__name__)


def build_sweep_job(config_manager: SLAConfigManager, notifier: SlackEscalationNotifier):
    """Scheduler job: one session per run."""

    async def escalation_sweep_job():
        with log_latency(logger, "escalation_sweep_job"):
            async with get_session_context() as session:
                service = EscalationService(
                    SQLAlchemyIssueRepository(session),
                    SQLAlchemyStateHistoryRepository(session),
                    config_manager,
                    SQLAlchemyUnitOfWork(session),
                    notifier
                )
                await service.run_escalation_sweep()

    return escalation_sweep_job


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load SLA configuration and watch it
    4. Create the Slack notifier
    5. Start the escalation scheduler

    SHUTDOWN runs the same steps in reverse.
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting CivicTrack", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()
    # Use migrations in production
    await create_tables()

    config_manager = SLAConfigManager()
    config_manager.load(settings.sla_config_path)
    config_manager.start_watching()

    notifier = SlackEscalationNotifier(
        webhook_url=settings.slack_webhook_url,
        channel=settings.slack_channel,
        timeout_seconds=settings.slack_timeout_seconds,
    )

    scheduler = None
    if settings.escalation_sweep_interval > 0:
        scheduler = EscalationScheduler(interval_seconds=settings.escalation_sweep_interval)
        await scheduler.start(build_sweep_job(config_manager, notifier))
    else:
        logger.info("Escalation scheduler disabled")

    # Store services in app state for dependency injection
    app.state.settings = settings
    app.state.sla_config = config_manager
    app.state.notifier = notifier
    app.state.scheduler = scheduler

    logger.info("CivicTrack started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down CivicTrack")

    if scheduler:
        await scheduler.stop()
    config_manager.stop_watching()
    await notifier.close()
    await close_database()

    logger.info("CivicTrack shutdown complete")


def create_app(use_lifespan: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Tests build it without the lifespan and wire state themselves.
    """
    app = FastAPI(
        title="CivicTrack API",
        description="""
    ## Civic Issue Lifecycle & SLA Escalation

    **Issues**
    - `POST /issues` - Report an issue (deadline fixed from priority)
    - `GET /issues/{id}` - Issue with live SLA state
    - `GET /issues/{id}/history` - Status audit trail
    - `POST /issues/{id}/transitions` - Staff status change
    - `POST /issues/{id}/feedback` - Citizen rating (may reopen)
    - `POST /issues/{id}/upvotes`, `DELETE /issues/{id}/upvotes/{citizen_id}`
    - `PATCH /issues/{id}/priority` - Priority override

    **SLA**
    - `POST /sla/sweep` - Run the escalation sweep
    - `POST /sla/escalate` - Manual escalation
    - `GET /sla/dashboard` - Overdue, due soon, compliance, escalations

    | Priority | SLA hours |
    |----------|-----------|
    | Urgent   | 24        |
    | High     | 48        |
    | Medium   | 72        |
    | Low      | 120       |

    Escalation: level 1 Department Staff, level 2 Department Head,
    level 3 Commissioner/Mayor.
    """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan if use_lifespan else None
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
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # === Include Module Routers ===
    app.include_router(issues_router)
    app.include_router(sla_router)

    @app.get("/health", tags=["Health"], response_model=HealthResponse)
    async def health_check():
        """Health check endpoint for load balancers and orchestrators."""
        return HealthResponse(
            status="healthy",
            version=settings.app_version,
            environment=settings.environment,
        )

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "service": "CivicTrack",
            "version": settings.app_version,
            "architecture": "Clean Architecture / Modular Monolith",
            "docs": "/docs",
            "health": "/health",
            "modules": {
                "issues": {"prefix": "/issues"},
                "sla": {"prefix": "/sla"},
            }
        }

    return app


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "civictrack.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower()
    )
