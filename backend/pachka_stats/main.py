from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware
import httpx
import logging

from pachka_stats.client import PachkaAPIError, PachkaUnavailableError
from pachka_stats.config import get_settings
from pachka_stats.routers.analytics import router as analytics_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        if request.url.path.startswith("/api/"):
            response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        return response


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Limit request body size to prevent large payload attacks"""
    def __init__(self, app, max_size: int = 1048576):
        super().__init__(app)
        self.max_size = max_size

    async def dispatch(self, request: Request, call_next):
        if request.headers.get("content-length"):
            content_length = int(request.headers["content-length"])
            if content_length > self.max_size:
                client_host = request.client.host if request.client else "unknown"
                logger.warning(f"Request too large: {content_length} bytes from {client_host}")
                return JSONResponse(
                    status_code=413,
                    content={"detail": "Request entity too large"}
                )
        return await call_next(request)


class SecurityLoggingMiddleware(BaseHTTPMiddleware):
    """Log security-relevant events"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        client_host = request.client.host if request.client else "unknown"

        if response.status_code == 429:
            logger.warning(
                f"Rate limit exceeded: {client_host} - {request.method} {request.url.path}"
            )

        if response.status_code == 422:
            logger.warning(
                f"Validation error: {client_host} - {request.method} {request.url.path}"
            )

        if response.status_code in (401, 403):
            logger.warning(
                f"Unauthorized access: {client_host} - {request.method} {request.url.path}"
            )

        return response


async def pachka_unavailable_handler(request: Request, exc: PachkaUnavailableError):
    logger.error(f"Pachka unavailable: {exc}")
    return JSONResponse(status_code=502, content={"detail": "Could not reach chat platform"})


async def pachka_api_error_handler(request: Request, exc: PachkaAPIError):
    if exc.status_code in (401, 403):
        return JSONResponse(status_code=401, content={"detail": "Invalid Pachka API token"})
    if exc.status_code == 404:
        return JSONResponse(status_code=404, content={"detail": exc.message})
    logger.warning(f"Pachka API error {exc.status_code}: {exc.message}")
    return JSONResponse(status_code=502, content={"detail": exc.message})


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    app.state.http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.http_timeout),
        limits=httpx.Limits(max_connections=settings.max_concurrent_requests * 4),
    )
    logger.info(f"HTTP client ready for {settings.pachka_api_url}")

    yield

    await app.state.http_client.aclose()
    logger.info("Shutdown complete")


settings = get_settings()
app = FastAPI(
    title="Pachka Stats API",
    description="Engagement analytics for Pachka chats",
    version="1.0.0",
    lifespan=lifespan,
    root_path=settings.api_root_path,
    docs_url="/api/docs" if settings.api_root_path == "" else None,
    redoc_url="/api/redoc" if settings.api_root_path == "" else None,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Pachka failures
app.add_exception_handler(PachkaUnavailableError, pachka_unavailable_handler)
app.add_exception_handler(PachkaAPIError, pachka_api_error_handler)

# Security logging middleware (must be first to catch all responses)
if settings.log_security_events:
    app.add_middleware(SecurityLoggingMiddleware)

# Request size limit middleware
app.add_middleware(RequestSizeLimitMiddleware, max_size=settings.max_request_size)

# Security headers middleware
if settings.enable_security_headers:
    app.add_middleware(SecurityHeadersMiddleware)

# CORS middleware
cors_origins = settings.cors_origins.split(",") if settings.cors_origins != "*" else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(analytics_router)

logger.info("Application started with security features enabled")


def run():
    import uvicorn
    uvicorn.run("pachka_stats.main:app", host=settings.host, port=settings.port)
