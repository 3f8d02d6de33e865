"""ConsentFlow FastAPI application entry point.

Creates the FastAPI app, configures middleware, includes routers, maps
the ConsentFlow error hierarchy to HTTP status codes, and wires every
component of the consent lifecycle in the application lifespan.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel

from config.settings import Settings, settings as default_settings
from consentflow.api.router import api_router
from consentflow.crm.base import ContactStore, TokenProvider
from consentflow.crm.hubspot import HubSpotContactStore
from consentflow.crm.memory import InMemoryContactStore
from consentflow.crm.oauth import HubSpotOAuthTokenProvider, StaticTokenProvider
from consentflow.crm.timeline import HubSpotTimelineNotifier, NullTimelineNotifier, TimelineNotifier
from consentflow.errors import (
    ConsentFlowError,
    ExternalServiceError,
    JobAlreadyRunning,
    NotAuthenticated,
    NotFound,
    ReconciliationAborted,
    ValidationError,
)
from consentflow.models.consent import ConsentPolicy
from consentflow.services.audit_trail import AuditTrail, ContactPropertyAuditMirror
from consentflow.services.clock import Clock, SystemClock
from consentflow.services.compliance_metrics import ComplianceMetrics
from consentflow.services.consent_service import ConsentService
from consentflow.services.decision_engine import ConsentDecisionEngine
from consentflow.services.reconciliation import ReconciliationRunner
from consentflow.services.scheduler import ComplianceScheduler

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def log_level_number(name: str) -> int:
    """Numeric level for *name*; unknown names fall back to INFO."""
    return logging.getLevelNamesMapping().get(name.upper(), logging.INFO)


def _configure_logging(settings: Settings) -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            log_level_number(settings.log_level),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: tuple[tuple[type[ConsentFlowError], int], ...] = (
    (NotAuthenticated, 401),
    (NotFound, 404),
    (ValidationError, 400),
    (ExternalServiceError, 502),
    (JobAlreadyRunning, 409),
)


def status_for(exc: ConsentFlowError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def consentflow_error_handler(request: Request, exc: ConsentFlowError) -> ORJSONResponse:
    status_code = status_for(exc)
    body: dict = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, ValidationError):
        body["field"] = exc.field
    if isinstance(exc, ReconciliationAborted) and isinstance(exc.partial, BaseModel):
        body["partial"] = exc.partial.model_dump(mode="json")

    log = logger.error if status_code >= 500 else logger.warning
    log("api.request_failed", path=request.url.path, error=type(exc).__name__, status=status_code)
    return ORJSONResponse(status_code=status_code, content=body)


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


def _build_store(settings: Settings, tokens: TokenProvider) -> ContactStore:
    if settings.hubspot_access_token or settings.oauth_configured:
        return HubSpotContactStore(tokens, base_url=settings.hubspot_api_base_url)
    logger.warning("app.in_memory_store", note="No HubSpot credentials configured; contacts are not persisted")
    return InMemoryContactStore()


def _lifespan(store_override: ContactStore | None, clock: Clock):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Wire the consent lifecycle components onto ``app.state``.

        On startup:
          1. Token providers (private-app token or OAuth)
          2. Contact store (HubSpot, or in-memory without credentials)
          3. Timeline notifier, audit trail and its CRM mirror
          4. Decision engine, reconciliation runner, metrics, service
          5. Compliance scheduler (started when enabled)

        On shutdown:
          - Stop the scheduler.
          - Close all HTTP clients.
        """
        settings: Settings = app.state.settings
        _configure_logging(settings)
        logger.info("app.startup", env=settings.env)
        app.state.start_time = time.time()

        # -- 1. Credentials ---------------------------------------------------
        oauth = HubSpotOAuthTokenProvider(
            settings.hubspot_client_id,
            settings.hubspot_client_secret,
            settings.hubspot_redirect_uri,
            settings.hubspot_scope_list,
            base_url=settings.hubspot_api_base_url,
        )
        tokens: TokenProvider = (
            StaticTokenProvider(settings.hubspot_access_token) if settings.hubspot_access_token else oauth
        )
        app.state.oauth_provider = oauth
        app.state.oauth_states = set()

        # -- 2. Contact store -------------------------------------------------
        store = store_override if store_override is not None else _build_store(settings, tokens)
        app.state.contact_store = store
        logger.info("app.contact_store_initialised", store=type(store).__name__)

        # -- 3. Timeline and audit --------------------------------------------
        notifier: TimelineNotifier = NullTimelineNotifier()
        if settings.hubspot_app_id and isinstance(store, HubSpotContactStore):
            notifier = HubSpotTimelineNotifier(tokens, settings.hubspot_app_id, base_url=settings.hubspot_api_base_url)
            logger.info("app.timeline_initialised", app_id=settings.hubspot_app_id)
        app.state.timeline_notifier = notifier

        audit = AuditTrail(clock, ContactPropertyAuditMirror(store, settings.audit_log_max_records))
        app.state.audit_trail = audit

        # -- 4. Lifecycle core ------------------------------------------------
        engine = ConsentDecisionEngine(ConsentPolicy.from_settings(settings))
        runner = ReconciliationRunner(
            store,
            engine,
            audit,
            clock,
            notifier=notifier,
            page_size=settings.contact_page_size,
        )
        service = ConsentService(
            store,
            audit,
            engine,
            runner,
            ComplianceMetrics(engine),
            clock,
            notifier=notifier,
            page_size=settings.contact_page_size,
        )
        app.state.consent_service = service
        logger.info("app.consent_service_initialised")

        # -- 5. Scheduler -----------------------------------------------------
        scheduler = ComplianceScheduler(service, clock, settings.scheduler_check_interval_seconds)
        app.state.scheduler = scheduler
        if settings.enable_scheduler:
            scheduler.start()
            logger.info("app.scheduler_started")

        logger.info("app.startup_complete")

        yield

        # -- Shutdown ---------------------------------------------------------
        logger.info("app.shutdown_start")
        await scheduler.stop()
        if isinstance(notifier, HubSpotTimelineNotifier):
            await notifier.close()
        if isinstance(store, HubSpotContactStore):
            await store.close()
        await oauth.close()
        logger.info("app.shutdown_complete")

    return lifespan


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    *,
    store: ContactStore | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Build the application.

    ``store`` and ``clock`` replace the HubSpot store and the system
    clock; tests pass an in-memory store and a fixed clock.
    """
    settings = settings or default_settings

    app = FastAPI(
        title="ConsentFlow API",
        description=(
            "GDPR/CCPA consent lifecycle management for HubSpot contacts: consent "
            "expiry, inactivity-driven purges, re-consent workflows and an "
            "append-only consent audit trail."
        ),
        version=_VERSION,
        lifespan=_lifespan(store, clock or SystemClock()),
        default_response_class=ORJSONResponse,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )
    app.state.settings = settings

    # -- CORS middleware ----------------------------------------------------
    if settings.is_production:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origin_list,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["Content-Type", "Authorization", "X-Admin-API-Key"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["http://localhost:3000", "http://localhost:8000", "http://127.0.0.1:8000"],
            allow_credentials=False,
            allow_methods=["GET", "POST", "DELETE", "OPTIONS", "HEAD"],
            allow_headers=["Content-Type", "Accept", "Authorization", "X-Admin-API-Key"],
        )

    app.add_exception_handler(ConsentFlowError, consentflow_error_handler)
    app.include_router(api_router)

    @app.get("/api", response_class=ORJSONResponse)
    async def api_info() -> dict:
        """API information endpoint."""
        return {
            "name": "ConsentFlow API",
            "version": _VERSION,
            "docs": "/docs",
            "health": "/api/v1/health",
            "endpoints": {
                "consent": "/api/v1/consent",
                "workflow": "/api/v1/workflow",
                "dashboard": "/api/v1/dashboard",
                "oauth": "/api/v1/oauth",
            },
        }

    return app


app = create_app()
