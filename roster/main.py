"""Roster engine FastAPI application."""

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from roster import __version__
from roster.clients.membership_source import MembershipSourceClient
from roster.config import get_settings
from roster.database import close_db, get_session_factory, init_db
from roster.exceptions import RosterError
from roster.locks import WorkspaceLocks
from roster.logging_config import (
    bind_request_context,
    clear_request_context,
    configure_logging,
    get_logger,
    mask_url,
)
from roster.redis import close_redis, init_redis
from roster.services.activity_aggregator import ActivityAggregator
from roster.services.membership_reconciler import MembershipReconciler
from roster.services.notification_sink import RedisNotificationSink, build_notification_sink
from roster.services.period_reset import PeriodResetService
from roster.services.permission_cache import PermissionCache
from roster.services.scheduler_service import RosterScheduler

logger = get_logger(__name__)


def build_services(app: FastAPI, session_factory, redis, client: MembershipSourceClient) -> None:
    """Create the shared service objects and attach them to ``app.state``."""
    settings = get_settings()
    permission_cache = PermissionCache(ttl_seconds=settings.permission_cache_ttl_seconds)
    notifier = build_notification_sink(redis)
    locks = WorkspaceLocks(redis, ttl_seconds=settings.lock_ttl_seconds)
    aggregator = ActivityAggregator(session_factory)
    reconciler = MembershipReconciler(
        session_factory,
        client,
        permission_cache=permission_cache,
        notifier=notifier,
        locks=locks,
    )
    reset_service = PeriodResetService(
        session_factory,
        aggregator,
        locks=locks,
        notifier=notifier,
        timeout_seconds=settings.reset_timeout_seconds,
    )

    app.state.permission_cache = permission_cache
    app.state.notifier = notifier
    app.state.locks = locks
    app.state.membership_client = client
    app.state.aggregator = aggregator
    app.state.reconciler = reconciler
    app.state.reset_service = reset_service
    app.state.scheduler = RosterScheduler(session_factory, reconciler, reset_service, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: init DB, Redis and services; start the scheduler."""
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_format == "json")

    logger.info("starting_database_init")
    await init_db()

    redis = await init_redis(settings.redis_url)
    if redis is not None:
        logger.info("redis_connected", url=mask_url(settings.redis_url))

    client = MembershipSourceClient.from_settings()
    build_services(app, get_session_factory(), redis, client)

    if settings.scheduler_enabled:
        app.state.scheduler.start()

    logger.info("application_started", version=__version__)
    yield

    logger.info("shutting_down")
    if settings.scheduler_enabled:
        await app.state.scheduler.stop()
    if isinstance(app.state.notifier, RedisNotificationSink):
        await app.state.notifier.drain()
    await client.close()
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


app = FastAPI(
    title="Roster Engine",
    description="Membership reconciliation and activity quota engine",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag every log line of a request with its id; drop the tags afterwards."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    bind_request_context(request_id, method=request.method, path=request.url.path)
    try:
        response = await call_next(request)
    finally:
        clear_request_context()
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(RosterError)
async def roster_error_handler(request: Request, exc: RosterError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error_type=exc.error_type)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error_type, "detail": exc.message},
    )


# --- Routers ---
from roster.routes.activity import router as activity_router  # noqa: E402
from roster.routes.quotas import router as quotas_router  # noqa: E402
from roster.routes.sync import router as sync_router  # noqa: E402

app.include_router(activity_router)
app.include_router(quotas_router)
app.include_router(sync_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": "roster"}
