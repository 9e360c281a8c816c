"""FastAPI application entrypoint.

Configures CORS, error envelopes, includes routers, and exposes a
healthcheck endpoint.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from . import schemas
from .deps import get_settings
from .envelope import fail, ok
from .errors import TripSyncError
from .routers import admin as admin_router
from .routers import consent as consent_router
from .routers import data as data_router
from .routers import devices as devices_router
from .routers import rewards as rewards_router
from .routers import trips as trips_router
from .telemetry import capture_exception, init_sentry

HTTP_ERROR_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
}


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(TripSyncError)
    async def tripsync_error_handler(request: Request, exc: TripSyncError):
        if exc.http_status >= 500:
            logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.http_status,
            content=fail(exc.code, exc.message, exc.details),
        )

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        code = HTTP_ERROR_CODES.get(exc.status_code, "SERVER_ERROR" if exc.status_code >= 500 else "ERROR")
        return JSONResponse(
            status_code=exc.status_code,
            content=fail(code, str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content=fail("VALIDATION_ERROR", "Request validation failed", {"errors": errors}),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("[API] Unhandled error on %s %s", request.method, request.url.path)
        capture_exception(exc, extra={"path": request.url.path, "method": request.method})
        return JSONResponse(status_code=500, content=fail("SERVER_ERROR", "Internal server error"))


def create_app() -> FastAPI:
    settings = get_settings()
    init_sentry(settings.SENTRY_DSN)

    app = FastAPI(
        title="TripSync API",
        description="""
        Travel diary backend.

        - Offline trip sync with idempotent, exactly-once reward credits
        - Trip chains, corrections and statistics
        - Reward ledger: balance, history, redemption, leaderboard
        - Consent, data export and data deletion
        - Admin: k-anonymous research exports (background jobs)

        ## Authentication
        Bearer JWT issued by the external auth service (`sub` = user id).
        Admin routes require the `X-Admin-Key` header.

        ## Responses
        Every body is `{success, data|error, timestamp}`.
        """,
        version="1.0.0",
    )

    # BACKEND_CORS_ORIGINS can be a comma-separated list
    allowed_origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    logger.info("[CORS] Allowed origins: %s", allowed_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)

    app.include_router(devices_router.router)
    app.include_router(trips_router.router)
    app.include_router(rewards_router.router)
    app.include_router(consent_router.router)
    app.include_router(data_router.router)
    app.include_router(admin_router.router)

    @app.get(
        "/health",
        response_model=schemas.Envelope,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return ok(schemas.HealthResponse(status="ok"))

    if settings.ADMIN_API_KEY == "change-this-admin-key":
        logger.warning("[ENV] Using default ADMIN_API_KEY. Set ADMIN_API_KEY for production.")

    return app


app = create_app()
