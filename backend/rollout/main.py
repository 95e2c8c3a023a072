import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import InterfaceError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from rollout.api.v1 import api_router
from rollout.core.config import settings
from rollout.core.errors import RolloutError, TransientStoreError
from rollout.core.logging_config import configure_logging
from rollout.core.redis_client import close_redis
from rollout.core.sentry import init_sentry
from rollout.core.startup_checks import validate_production_settings
from rollout.middleware import RequestLoggingMiddleware
from rollout.schemas.error import ErrorResponse
from rollout.services import device_push, leader_lock, update_staleness_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_production_settings()
    update_staleness_scheduler.start(app)
    try:
        yield
    finally:
        await update_staleness_scheduler.stop(app)
        await device_push.drain()
        await close_redis()
        await leader_lock.dispose()


def _error_response(status_code: int, detail, code: str | None) -> JSONResponse:
    payload = ErrorResponse(detail=detail, code=code)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload.model_dump()))


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    init_sentry()
    tags_metadata = [
        {"name": "versions", "description": "Version catalog and upgrade paths"},
        {"name": "devices", "description": "Device check-ins and forced updates"},
        {"name": "updates", "description": "Per-device update lifecycle and stage reports"},
        {"name": "rollouts", "description": "Campaigns, progress and fleet dashboards"},
        {"name": "audit", "description": "Hash-chained audit ledger"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(RolloutError)
    async def rollout_exception_handler(request: Request, exc: RolloutError):
        if exc.status_code >= 500:
            logger.warning("rollout_store_error", extra={"path": request.url.path, "error": str(exc.detail)})
        return _error_response(exc.status_code, exc.detail, exc.code)

    @app.exception_handler(OperationalError)
    @app.exception_handler(InterfaceError)
    async def store_exception_handler(request: Request, exc: Exception):
        logger.warning("database_unavailable", extra={"path": request.url.path, "error": str(exc)})
        error = TransientStoreError("Database temporarily unavailable")
        return _error_response(error.status_code, error.detail, error.code)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(exc.status_code, exc.detail, None)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _error_response(422, jsonable_encoder(exc.errors()), "validation_error")

    return app


app = get_application()
