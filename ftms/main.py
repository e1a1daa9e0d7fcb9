"""FTMS Revenue API - FastAPI Entry Point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from ftms.config import settings
from ftms.database import engine, Base, async_session
from ftms.middleware.error_capture import ErrorCaptureMiddleware
from ftms.api import bus_trips, error_logs, loans, revenues, system_config
from ftms.seed import seed_reference_data
from ftms.services.errors import RevenueError, ValidationError

import ftms.models  # noqa: F401  registers every table on Base.metadata

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup (dev only); in prod use Alembic migrations."""
    if settings.environment == "development":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with async_session() as db:
            await seed_reference_data(db)
    yield


limiter = Limiter(key_func=get_remote_address)

app = FastAPI(
    title="FTMS Revenue API",
    description="Revenue reconciliation for the fleet transport management system",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(RevenueError)
async def revenue_error_handler(request: Request, exc: RevenueError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


_REQUEST_PARTS = ("body", "query", "path", "header", "cookie")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed requests are reported like any other validation error: 400 plus the field."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(part) for part in first.get("loc", ())]
    if loc and loc[0] in _REQUEST_PARTS:
        loc = loc[1:]
    message = str(first.get("msg", "Invalid request")).removeprefix("Value error, ")
    field = ".".join(loc) or (first.get("ctx") or {}).get("field")
    detail = f"{field}: {message}" if loc else message
    error = ValidationError(detail, field=field)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# ── Security headers middleware ──────────────────────────────────
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds standard security headers to every response."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if settings.environment != "development":
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        return response


# Error capture middleware
app.add_middleware(ErrorCaptureMiddleware)

app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With"],
    expose_headers=["X-Total-Count", "X-Page", "X-Limit", "X-Total-Pages"],
)

# Routers
app.include_router(revenues.router, prefix="/api/revenues", tags=["Revenue"])
app.include_router(loans.router, prefix="/api/loans", tags=["Shortage Loans"])
app.include_router(bus_trips.router, prefix="/api/bus-trips", tags=["Bus Trips"])
app.include_router(system_config.router, prefix="/api/system-config", tags=["System Configuration"])
app.include_router(error_logs.router, prefix="/api/error-logs", tags=["Error Monitoring"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "ftms-revenue", "version": "1.0.0"}
