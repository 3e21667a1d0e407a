from contextlib import asynccontextmanager
from typing import Optional
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import async_sessionmaker
import structlog

# Local imports
from geosocial.api.routes import router as api_router
from geosocial.core.config import Settings, settings
from geosocial.core.errors import (
    EntityNotFound,
    GeoSocialError,
    PermissionDenied,
    StoreUnavailable,
    ValidationError,
)
from geosocial.db.session import create_engine, create_session_factory, init_db
from geosocial.logging import configure_logging
from geosocial.middleware.logging import LoggingMiddleware
from geosocial.models.dto import ErrorResponse
from geosocial.models.kinds import EntityKind
from geosocial.services import redis_client as redis_lifecycle
from geosocial.services.cache_invalidator import CacheInvalidator
from geosocial.services.entity_cache import EntityCache
from geosocial.services.geo_index import GeoIndex
from geosocial.services.mutations import MutationService
from geosocial.services.nearby_cache import NearbyQueryCache
from geosocial.services.proximity_service import ProximitySearchService
from geosocial.services.store import AuthoritativeStore

logger = structlog.get_logger(__name__)


def wire_services(
    app: FastAPI,
    redis_client: Optional[Redis],
    session_factory: async_sessionmaker,
    config: Settings = settings,
) -> None:
    """Build the long-lived services once and hang them on app.state."""
    geo_index = GeoIndex(redis_client, key_prefix=config.GEO_KEY_PREFIX)
    entity_cache = EntityCache(redis_client, ttl_seconds=config.cache_ttls())
    query_cache = NearbyQueryCache(
        redis_client,
        ttl=config.NEARBY_CACHE_TTL,
        precision=config.NEARBY_BUCKET_PRECISION,
        enabled=config.NEARBY_CACHE_ENABLED,
    )
    store = AuthoritativeStore(session_factory, settings=config)
    invalidator = CacheInvalidator(geo_index, entity_cache, query_cache)

    app.state.redis = redis_client
    app.state.store = store
    app.state.invalidator = invalidator
    app.state.search_service = ProximitySearchService(geo_index, entity_cache, query_cache, store, settings=config)
    app.state.mutations = MutationService(store, invalidator)


async def warm_index(store: AuthoritativeStore, invalidator: CacheInvalidator) -> None:
    for kind in EntityKind:
        await invalidator.rebuild_index(kind, await store.discoverable_entities(kind))


# --- Application Lifecycle Management ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("application_startup", version=settings.VERSION, env=settings.ENV)

    engine = create_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)
    if settings.DB_CREATE_TABLES:
        await init_db(engine)

    redis_client = redis_lifecycle.create_redis()
    if redis_client is not None and not await redis_lifecycle.ping(redis_client):
        logger.warning("redis_unreachable_at_startup")

    wire_services(app, redis_client, create_session_factory(engine))

    if settings.WARM_INDEX_ON_STARTUP:
        await warm_index(app.state.store, app.state.invalidator)

    yield

    logger.info("application_shutdown")
    await redis_lifecycle.close(redis_client)
    await engine.dispose()


# --- Exception Handlers ---
ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    PermissionDenied: status.HTTP_403_FORBIDDEN,
    EntityNotFound: status.HTTP_404_NOT_FOUND,
    StoreUnavailable: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _error_response(status_code: int, error: str, detail: str, error_id: Optional[str] = None) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail, error_id=error_id)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def geosocial_error_handler(request: Request, exc: GeoSocialError):
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code < 500:
        logger.info("request_rejected", error=exc.code, detail=exc.detail)
        return _error_response(status_code, exc.code, exc.detail)
    error_id = str(uuid.uuid4())
    logger.error("request_failed", error=exc.code, error_id=error_id, cause=exc.cause)
    return _error_response(status_code, exc.code, exc.detail, error_id)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    detail = f"{location}: {first.get('msg', 'invalid request')}" if location else "invalid request"
    return _error_response(status.HTTP_400_BAD_REQUEST, ValidationError.code, detail)


async def global_exception_handler(request: Request, exc: Exception):
    error_id = str(uuid.uuid4())
    logger.error("unhandled_exception", error_id=error_id, error=str(exc), exc_info=True)
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_SERVER_ERROR",
        "An unexpected error occurred. Please report this error ID.",
        error_id,
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description=settings.BRIEF_DESCRIPTION,
        lifespan=lifespan,
    )
    app.add_middleware(LoggingMiddleware)
    app.add_exception_handler(GeoSocialError, geosocial_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(api_router, prefix="/api")

    @app.get("/health")
    async def health_check(request: Request):
        redis_ok = await redis_lifecycle.ping(request.app.state.redis)
        store_ok = await request.app.state.store.ping()
        payload = {
            "status": "ok" if redis_ok and store_ok else "degraded",
            "redis": redis_ok,
            "store": store_ok,
        }
        code = status.HTTP_200_OK if store_ok else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content=payload)

    return app


app = create_app()
