"""
Main FastAPI Application

Referral Handoff API with:
- Referral lifecycle endpoints
- Background expiry sweeper
- CORS configuration
- Health checks
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient
from structlog import get_logger

from ..config import HandoffConfig, get_config
from ..referrals.api_router import referral_error_handler
from ..referrals.api_router import router as referral_router
from ..referrals.audit import AuditSink, InMemoryAuditService, ReferralAuditService
from ..referrals.db_service import InMemoryReferralStore, MongoReferralStore, ReferralStore
from ..referrals.errors import ReferralError
from ..referrals.expiry import ExpirySweeper
from ..referrals.lifecycle import ReferralLifecycleEngine
from ..referrals.triage import TriageQueueBuilder
from ..scheduling.client import AppointmentScheduler, HttpAppointmentScheduler
from .log_config import configure_logging

logger = get_logger()

VERSION = "0.1.0"


def create_app(
    config: Optional[HandoffConfig] = None,
    store: Optional[ReferralStore] = None,
    scheduler: Optional[AppointmentScheduler] = None,
    audit_sink: Optional[AuditSink] = None,
) -> FastAPI:
    """
    Build the API application.

    Components not passed in are created at startup from configuration.

    Args:
        config: Service configuration (uses cached config if not provided)
        store: Referral store
        scheduler: Appointment scheduler
        audit_sink: Audit destination

    Returns:
        Configured FastAPI application
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        # Startup
        configure_logging(config.log_level, json=config.log_json)
        logger.info("starting_referral_handoff", environment=config.environment.value)

        app.state.mongo_client = None
        referral_store = store
        referral_audit = audit_sink

        if referral_store is None or referral_audit is None:
            if config.use_in_memory_store:
                referral_store = referral_store or InMemoryReferralStore()
                referral_audit = referral_audit or InMemoryAuditService()
            else:
                app.state.mongo_client = AsyncIOMotorClient(config.mongo_db_url, tz_aware=True)
                db = app.state.mongo_client[config.mongo_db_name]

                if referral_store is None:
                    referral_store = MongoReferralStore(db)
                    await referral_store.ensure_indexes()
                if referral_audit is None:
                    referral_audit = ReferralAuditService(db)
                    await referral_audit.ensure_indexes()

        owns_scheduler = scheduler is None
        appointment_scheduler = scheduler or HttpAppointmentScheduler(
            base_url=config.appointment_scheduler_url,
            timeout_seconds=config.appointment_scheduler_timeout_seconds,
            max_retries=config.appointment_scheduler_max_retries,
        )

        engine = ReferralLifecycleEngine(
            store=referral_store,
            scheduler=appointment_scheduler,
            audit_sink=referral_audit,
            config=config,
        )

        app.state.referral_store = referral_store
        app.state.audit_sink = referral_audit
        app.state.lifecycle_engine = engine
        app.state.triage_builder = TriageQueueBuilder(
            referral_store, access_policy=engine.access_policy, config=config
        )
        app.state.expiry_sweeper = ExpirySweeper(engine, config=config)

        if config.enable_expiry_sweeper:
            await app.state.expiry_sweeper.start()

        logger.info(
            "referral_handoff_initialized",
            store=type(referral_store).__name__,
            expiry_sweeper=config.enable_expiry_sweeper,
        )

        yield

        # Shutdown
        logger.info("shutting_down_referral_handoff")
        await app.state.expiry_sweeper.stop()
        if owns_scheduler:
            await appointment_scheduler.aclose()
        if app.state.mongo_client is not None:
            app.state.mongo_client.close()
        logger.info("referral_handoff_shutdown_complete")

    app = FastAPI(
        title="Referral Handoff",
        description="Provider-to-provider referral lifecycle with appointment conversion",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if not config.is_production else None,
        redoc_url="/redoc" if not config.is_production else None,
        openapi_url="/openapi.json" if not config.is_production else None,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ReferralError, referral_error_handler)

    # Health check endpoints
    @app.get("/health", tags=["Service"], summary="Health check")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "environment": config.environment.value,
            "version": VERSION,
        }

    @app.get("/ping", tags=["Service"], summary="Ping endpoint")
    async def ping():
        """Simple ping endpoint."""
        return {"message": "pong"}

    @app.get("/", tags=["Service"], summary="Root endpoint")
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "Referral Handoff",
            "version": VERSION,
            "environment": config.environment.value,
            "docs_url": "/docs" if not config.is_production else None,
        }

    @app.exception_handler(500)
    async def server_error_handler(request: Request, exc):
        """Custom 500 handler."""
        logger.error("internal_server_error", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    app.include_router(referral_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(
        "handoff_core.api_gateway.main:app",
        host="0.0.0.0",
        port=8000,
        reload=config.is_local,
        log_level=config.log_level.lower(),
    )
