from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.config import settings
from core.database import db_manager
from core.log_config import configure_logging
from metrics.metrics import get_metrics
from routes import permissions
from services.audit import ActivityLogger
from services.authority_store import MongoAuthorityStore
from services.permission_service import PermissionService
from utils.exceptions import InternalError
from utils.redis_client import CacheBackend, create_cache_store

configure_logging(settings.log_level, settings.log_json)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.validate_required_vars()
    await db_manager.initialize()

    store = MongoAuthorityStore(db_manager.database)
    await store.ensure_indexes()
    cache = create_cache_store(CacheBackend(settings.cache_backend), redis_url=settings.redis_url)
    app.state.cache = cache
    activity = ActivityLogger(db_manager.database)

    app.state.permission_service = PermissionService(store, cache, activity=activity, metrics=get_metrics())
    logger.info("permission_engine_started", app=settings.app_name)
    try:
        yield
    finally:
        await activity.drain()
        await cache.close()
        await db_manager.close()
        logger.info("permission_engine_stopped")


app = FastAPI(title=settings.app_name, lifespan=lifespan)
# request.state.actor is populated by the authentication middleware mounted in front of this app
app.include_router(permissions.router)
permissions.register_exception_handlers(app)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(
        "unexpected_exception",
        error=str(exc),
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )
    error = InternalError("Internal server error")
    return JSONResponse(
        status_code=error.status_code,
        content={"success": False, "error": error.code, "message": error.message},
    )


@app.get("/health")
async def health(request: Request):
    cache = getattr(request.app.state, "cache", None)
    cache_ok = cache is not None and await cache.ping()
    return {
        "status": "ok",
        "database": await db_manager.health_check(),
        "cache": "healthy" if cache_ok else "unhealthy",
    }


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
