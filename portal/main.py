from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import portal.core.database as db_module
from portal.api.v1.router import v1_router
from portal.config import settings
from portal.core.cache import InMemoryPermissionCache
from portal.core.database import close_db, init_db
from portal.core.exceptions import PortalError, portal_error_handler
from portal.core.middleware import AuthMiddleware, RequestLoggingMiddleware
from portal.services.config_store import ConfigStore
from portal.services.directory_client import DirectoryClient
from portal.services.directory_sync import DirectorySyncService, SyncScheduler
from portal.services.user_reconciler import UserReconciler

_NAME_TO_LEVEL = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "warn": 30,
    "error": 40,
    "critical": 50,
}

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        _NAME_TO_LEVEL.get(settings.portal_log_level.lower(), 20)
    ),
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    await init_db()

    store = ConfigStore(db_module.async_session)
    await store.refresh_cache()
    app.state.config_store = store

    scheduler = None
    if settings.sync_scheduler_enabled:
        sync_service = DirectorySyncService(
            directory_client=app.state.directory_client,
            reconciler=UserReconciler(cache=app.state.permission_cache),
        )
        scheduler = SyncScheduler(sync_service)
        await scheduler.start()
    app.state.sync_scheduler = scheduler

    logger.info(
        "portal_backend_starting",
        scheduler_enabled=settings.sync_scheduler_enabled,
        environment=settings.portal_env,
    )
    yield

    if scheduler is not None:
        await scheduler.stop()
    await close_db()
    logger.info("portal_backend_stopping")


app = FastAPI(
    title="Admin Portal Backend",
    description="Directory authentication, role mapping and runtime configuration",
    version="0.1.0",
    lifespan=lifespan,
)

# Shared collaborators, read by request handlers from app.state.
app.state.permission_cache = InMemoryPermissionCache(default_ttl=settings.permission_cache_ttl)
app.state.directory_client = DirectoryClient()

# Exception handler
app.add_exception_handler(PortalError, portal_error_handler)

# Middleware (Starlette: last-added = outermost. Execution order top to bottom.)
# 1. RequestLogging (outermost): logs all requests including auth rejections
# 2. CORS: handles preflight before auth
# 3. Auth: Bearer token validation (innermost)
app.add_middleware(AuthMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.portal_cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# Routes
app.include_router(v1_router)


@app.get("/")
async def root():
    return {"service": "admin-portal-backend", "version": "0.1.0"}
