"""FastAPI application entry point."""
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from api.routers import enrichment, health, link_checker, settings
from core.config import get_settings
from services.exceptions import StoreUnavailableError
from tasks.enrichment_scheduler import build_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifespan - startup and shutdown."""
    app_settings = get_settings()
    app_settings.screenshot_storage_dir.mkdir(parents=True, exist_ok=True)

    # Startup: one enrichment scheduler per process
    scheduler = build_scheduler(app_settings)
    app.state.scheduler = scheduler
    app.state.bookmark_store = scheduler.store
    scheduler.start()

    yield

    # Shutdown: let in-flight checks and captures finish and write back
    await scheduler.stop()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process request and add security headers to response."""
        response = await call_next(request)
        # HSTS: enforce HTTPS for 1 year, including subdomains
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking - API shouldn't be framed
        response.headers["X-Frame-Options"] = "DENY"
        return response


app_settings = get_settings()

app = FastAPI(
    title="Bookmark Enrichment API",
    description="Screenshots and link-health checks for bookmarks.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_exception_handler(
    _request: Request, exc: StoreUnavailableError,
) -> JSONResponse:
    """Report an unreachable database as 503 without leaking driver details."""
    logger.error("Bookmark store unavailable: %s", exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Service temporarily unavailable, please retry shortly"},
        headers={"Retry-After": "30"},
    )


# Security headers middleware (runs after CORS, adds headers to responses)
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=app_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(enrichment.router)
app.include_router(link_checker.router)
app.include_router(settings.router)

# Published screenshots; the directory is created at startup
app.mount(
    app_settings.screenshot_public_path,
    StaticFiles(directory=app_settings.screenshot_storage_dir, check_dir=False),
    name="screenshots",
)
