import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chaingate.api.router import api_router
from chaingate.core.config import settings, validate_settings_for_production
from chaingate.core.exceptions import AppError
from chaingate.core.logging import setup_logging
from chaingate.core.metrics import PrometheusMiddleware, metrics_response
from chaingate.core.middleware import RequestLoggingMiddleware
from chaingate.core.sentry import init_sentry
from chaingate.db.postgres import dispose_db, init_db
from chaingate.gateway.envelope import error_envelope
from chaingate.gateway.providers import build_provider_registry
from chaingate.gateway.rate_limiter import TieredRateLimiter, build_tier_policies

# Configure logging before anything else
setup_logging()

logger = logging.getLogger(__name__)

_BOOTED_AT = time.monotonic()


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    """Stray task errors are logged; the process keeps serving."""
    exc = context.get("exception")
    logger.error(
        "Unhandled error in background task: %s",
        context.get("message", "unknown"),
        exc_info=(type(exc), exc, exc.__traceback__) if exc else None,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    init_sentry()
    logger.info("Starting chaingate (env=%s)...", settings.app_env)

    asyncio.get_running_loop().set_exception_handler(_log_loop_exception)

    await init_db()

    app.state.http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    app.state.providers = build_provider_registry(settings, app.state.http_client)
    logger.info("Providers ready: %s", ", ".join(app.state.providers.names()))

    yield

    # Shutdown
    await app.state.http_client.aclose()
    await dispose_db()
    logger.info("chaingate shut down")


app = FastAPI(
    title="chaingate",
    description="LLM gateway: scira → deepseek chain, single-provider calls, users and chat history",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)

# Replaced in the lifespan by a registry sharing one pooled httpx client
app.state.providers = build_provider_registry(settings)
app.state.rate_limiter = TieredRateLimiter(
    build_tier_policies(settings.rate_limit_profile, settings.rate_limit_window_seconds)
)


def _started_at(request: Request) -> float | None:
    return getattr(request.state, "started_at", None)


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc, AppError):
        content = error_envelope(exc.detail, _started_at(request), details=exc.details, **exc.metadata)
    else:
        content = error_envelope(str(exc.detail), _started_at(request))
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err["loc"] if p != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    logger.warning(
        "Validation failed",
        extra={"context": {"endpoint": request.url.path, "method": request.method, "errors": details}},
    )
    return JSONResponse(
        status_code=400,
        content=error_envelope("Validation failed", _started_at(request), details=details),
    )


# Full detail goes to the logs, never to the client
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled %s on %s %s",
        type(exc).__name__,
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content=error_envelope("Internal server error", _started_at(request)))


# Middleware (last added runs first)
app.add_middleware(PrometheusMiddleware)
app.add_middleware(RequestLoggingMiddleware)

# CORS: parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials="*" not in _origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_router)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - _BOOTED_AT, 3),
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()


def run() -> None:
    """Console entry point; in-flight requests get a grace period on shutdown."""
    uvicorn.run(
        "chaingate.main:app",
        host=settings.app_host,
        port=settings.app_port,
        timeout_graceful_shutdown=settings.shutdown_grace_seconds,
        log_config=None,
    )


if __name__ == "__main__":
    run()
