from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import enrollments, health, webhooks
from app.core.config import settings
from app.core.errors import (
    EnrollmentError,
    GatewayRejectedError,
    GatewayTransientError,
    InvalidStateError,
    NotFoundError,
    PlanNotConfiguredError,
    ValidationError,
)
from app.core.logging_setup import logger
from app.db import session as db_session
from app.services.billing_scheduler import ReconciliationScheduler
from app.services.gateways import close_gateway_clients, get_vindi_client

# Ordem importa: subclasses antes da base.
_ERROR_STATUS: list[tuple[type[EnrollmentError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PlanNotConfiguredError, status.HTTP_409_CONFLICT),
    (GatewayRejectedError, status.HTTP_502_BAD_GATEWAY),
    (GatewayTransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def http_status_for(exc: EnrollmentError) -> int:
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncGenerator[None, None]:
    db_session.init_db()

    scheduler: ReconciliationScheduler | None = None
    if settings.reconcile_enabled:
        gateway = get_vindi_client() if settings.vindi_api_key else None
        scheduler = ReconciliationScheduler(db_session.session_factory, gateway)
        scheduler.start()
    application.state.reconciliation_scheduler = scheduler

    yield

    if scheduler is not None:
        scheduler.stop()
    close_gateway_clients()


def _normalize_origin(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip().rstrip("/")
    return cleaned or None


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.project_name,
        debug=settings.debug,
        lifespan=lifespan,
    )

    origins: list[str] = []
    for item in settings.allowed_origins:
        normalized = _normalize_origin(item)
        if normalized and normalized not in origins:
            origins.append(normalized)

    if origins:
        logger.info("CORS configurado com origins: %s", origins)
        application.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @application.exception_handler(EnrollmentError)
    async def enrollment_error_handler(request: Request, exc: EnrollmentError) -> JSONResponse:
        code = http_status_for(exc)
        logger.warning("[api] %s %s -> %s: %s", request.method, request.url.path, code, exc)
        content = {"detail": str(exc), "error": type(exc).__name__}
        if exc.details:
            content["details"] = exc.details
        return JSONResponse(status_code=code, content=content)

    application.include_router(health.router, prefix="/health")
    application.include_router(webhooks.router, prefix="/webhooks")
    application.include_router(enrollments.router, prefix=settings.api_v1_str)

    @application.get("/")
    def root():
        return {"service": settings.project_name}

    logger.info("%s inicializada", settings.project_name)
    return application


app = create_app()
