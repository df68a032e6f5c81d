import logging
import os
import sys
import time
import uuid
from typing import Callable, Iterable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.routes_availability import router as availability_router
from app.api.routes_bookings import router as bookings_router
from app.api.routes_health import router as health_router
from app.api.routes_metrics import router as metrics_router
from app.api.routes_payments import router as payments_router
from app.domain.errors import PROBLEM_TYPE_BASE, DomainError
from app.infra.db import get_session_factory
from app.infra.email import resolve_email_adapter
from app.infra.logging import configure_logging
from app.infra.metrics import configure_metrics
from app.infra.security import RateLimiter, create_rate_limiter, resolve_client_key
from app.settings import settings

PROBLEM_TYPE_VALIDATION = f"{PROBLEM_TYPE_BASE}/validation-error"
PROBLEM_TYPE_HTTP = f"{PROBLEM_TYPE_BASE}/http-error"
PROBLEM_TYPE_RATE_LIMIT = f"{PROBLEM_TYPE_BASE}/rate-limit"
PROBLEM_TYPE_SERVER = f"{PROBLEM_TYPE_BASE}/server-error"

RATE_LIMIT_EXEMPT_PATHS = {"/healthz", "/readyz", "/metrics", "/v1/payments/stripe/webhook"}

logger = logging.getLogger(__name__)


def problem_details(
    request: Request,
    status: int,
    title: str,
    detail: str,
    errors: list[dict[str, str]] | None = None,
    type_: str = "about:blank",
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    content = {
        "type": type_,
        "title": title,
        "status": status,
        "detail": detail,
        "request_id": getattr(request.state, "request_id", None),
        "errors": errors or [],
    }
    return JSONResponse(status_code=status, content=content, headers=headers)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        request_logger = logging.getLogger("app.request")
        start = time.time()
        response = await call_next(request)
        latency_ms = int((time.time() - start) * 1000)
        if response.status_code >= 500:
            route = request.scope.get("route")
            self.metrics.record_http_5xx(request.method, getattr(route, "path", request.url.path))
        request_logger.info(
            "request",
            extra={
                "request_id": getattr(request.state, "request_id", None),
                "extra": {
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "latency_ms": latency_ms,
                },
            },
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, limiter: RateLimiter, app_settings) -> None:
        super().__init__(app)
        self.limiter = limiter
        self.app_settings = app_settings

    async def dispatch(self, request: Request, call_next: Callable):
        if request.url.path in RATE_LIMIT_EXEMPT_PATHS:
            return await call_next(request)
        client = resolve_client_key(request, trust_proxy_headers=self.app_settings.trust_proxy_headers)
        if not await self.limiter.allow(client):
            return problem_details(
                request=request,
                status=429,
                title="Too Many Requests",
                detail="Rate limit exceeded",
                type_=PROBLEM_TYPE_RATE_LIMIT,
            )
        return await call_next(request)


def _resolve_cors_origins(app_settings) -> Iterable[str]:
    if app_settings.cors_origins:
        return app_settings.cors_origins
    if app_settings.strict_cors:
        return []
    if app_settings.app_env == "dev":
        return ["http://localhost:5173"]
    return []


def _validate_prod_config(app_settings) -> None:
    if app_settings.app_env == "dev" or app_settings.testing or os.getenv("PYTEST_CURRENT_TEST") or "pytest" in sys.argv[0]:
        return

    errors: list[str] = []
    if app_settings.auth_secret_key == "dev-auth-secret":
        errors.append("AUTH_SECRET_KEY must be set outside dev")
    if app_settings.stripe_secret_key and not app_settings.stripe_webhook_secret:
        errors.append("STRIPE_WEBHOOK_SECRET is required when Stripe is enabled")

    if errors:
        for error in errors:
            logger.error("startup_config_error", extra={"extra": {"detail": error}})
        raise RuntimeError("Invalid production configuration; see logs for details")
    if app_settings.stripe_webhook_allow_unverified:
        logger.warning("stripe_webhook_unverified_fallback_enabled")


def create_app(app_settings) -> FastAPI:
    configure_logging(app_settings.log_level)
    _validate_prod_config(app_settings)
    app = FastAPI(title="Tour Reservations", version="1.0.0")

    rate_limiter = create_rate_limiter(app_settings)
    metrics_client = configure_metrics(app_settings.metrics_enabled)
    app.state.rate_limiter = rate_limiter
    app.state.metrics = metrics_client
    app.state.app_settings = app_settings
    app.state.db_session_factory = get_session_factory()
    app.state.email_adapter = resolve_email_adapter(app_settings)
    app.state.stripe_client = None
    app.state.effects_dispatcher = None

    @app.on_event("shutdown")
    async def shutdown_limiter() -> None:
        await rate_limiter.close()

    app.add_middleware(RateLimitMiddleware, limiter=rate_limiter, app_settings=app_settings)
    app.add_middleware(LoggingMiddleware, metrics_client=metrics_client)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(_resolve_cors_origins(app_settings)),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        if exc.status_code >= 500:
            logger.warning(
                "domain_error_unavailable",
                extra={"request_id": getattr(request.state, "request_id", None), "extra": {"code": exc.code}},
            )
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors,
            type_=exc.type,
            headers={"Retry-After": "1"} if exc.status_code == 503 else None,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.detail if isinstance(exc.detail, str) else "HTTP Error",
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            type_=PROBLEM_TYPE_HTTP if exc.status_code < 500 else PROBLEM_TYPE_SERVER,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            extra={"request_id": getattr(request.state, "request_id", None), "extra": {"path": request.url.path}},
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(availability_router)
    app.include_router(bookings_router)
    app.include_router(payments_router)
    return app


app = create_app(settings)
