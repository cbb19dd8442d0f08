"""Klettrack Sync API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from klettrack.contract import PROTOCOL_VERSION

from .config import get_settings
from .database import Database
from .logging_config import configure_logging, get_logger
from .models import HealthResponse
from .rate_limit import limiter
from .routes import sync_router
from .sync import SyncRequestError

logger = get_logger("app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    configure_logging("DEBUG" if settings.debug else settings.log_level)
    logger.info(
        f"Starting Klettrack Sync API (store={settings.record_store}, debug={settings.debug})"
    )
    yield
    logger.info("Shutting down Klettrack Sync API")


app = FastAPI(
    title="Klettrack Sync API",
    description="Multi-device sync backend for the Klettrack training log",
    version="0.1.0",
    lifespan=lifespan,
)

settings = get_settings()


# =============================================================================
# Error bodies: every failure is {"error": code}
# =============================================================================

_STATUS_CODES = {
    400: "invalid_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    413: "too_many_mutations",
    429: "rate_limited",
}


def _error(status_code: int, code: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code}, headers=headers)


@app.exception_handler(SyncRequestError)
async def sync_request_error_handler(request: Request, exc: SyncRequestError):
    return _error(exc.status_code, exc.code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    code = exc.detail if exc.status_code == 401 else _STATUS_CODES.get(exc.status_code)
    if not isinstance(code, str):
        code = "internal_error" if exc.status_code >= 500 else "invalid_request"
    return _error(exc.status_code, code, getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # A parsed push body without a usable mutation list is reported by the
    # push handler as invalid_mutations
    logger.debug(f"Invalid request on {request.url.path}: {exc.errors()}")
    return _error(400, "invalid_request")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded on {request.url.path}: {exc.detail}")
    return _error(429, "rate_limited")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return _error(500, "internal_error")


# Rate limiting
app.state.limiter = limiter

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def is_origin_allowed(origin: str | None, allowed: list[str]) -> bool:
    """Requests without an Origin header (native apps) are always allowed."""
    if not origin:
        return True
    return origin.rstrip("/") in {o.rstrip("/") for o in allowed}


# Registered after CORSMiddleware so it runs first, preflight included
@app.middleware("http")
async def origin_guard(request: Request, call_next):
    origin = request.headers.get("origin")
    if not is_origin_allowed(origin, get_settings().cors_origins):
        logger.warning(f"Rejected origin {origin!r} on {request.method} {request.url.path}")
        return _error(403, "origin_not_allowed")
    return await call_next(request)


# Include routers
app.include_router(sync_router, prefix=settings.sync_base_path)


@app.get("/")
async def root():
    """Service banner."""
    return {
        "service": "klettrack-sync",
        "version": "0.1.0",
        "protocol_version": PROTOCOL_VERSION,
        "status": "ok",
    }


@app.get("/health", response_model=HealthResponse)
def health(db: Database):
    """Liveness check with a record store probe."""
    db_status = "disconnected"
    try:
        if db.ping():
            db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:50]}"

    overall_status = "healthy" if db_status == "connected" else "degraded"

    return {
        "status": overall_status,
        "database": db_status,
        "protocol_version": PROTOCOL_VERSION,
    }
