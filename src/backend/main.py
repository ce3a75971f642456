"""
SurveyGuard Backend Application

Bot and fraud screening for survey respondent links.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from api.v1 import router as api_v1_router
from core.config import settings
from core.events import create_start_app_handler, create_stop_app_handler
from core.exceptions import MalformedInputError
from core.middleware import RequestIDMiddleware, SecurityHeadersMiddleware

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    # Startup
    await create_start_app_handler(app)()
    yield
    # Shutdown
    await create_stop_app_handler(app)()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title=settings.APP_NAME,
        description="Bot, VPN and fraud screening for survey respondent links",
        version="1.0.0",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    # Add middleware (order matters - processed in reverse)
    # 1. Security headers - added to all responses
    application.add_middleware(SecurityHeadersMiddleware)

    # 2. Request id - bound into every log event of the request
    application.add_middleware(RequestIDMiddleware)

    # 3. CORS - the survey frontend posts screening data cross-origin
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    # 4. GZip compression for responses
    application.add_middleware(GZipMiddleware, minimum_size=1000)

    # Include routers
    application.include_router(api_v1_router, prefix="/api/v1")

    @application.exception_handler(MalformedInputError)
    async def malformed_input_handler(request: Request, exc: MalformedInputError) -> JSONResponse:
        logger.warning("malformed_input", error=str(exc), path=request.url.path)
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    # Add global exception handler to ensure CORS headers are present on error responses
    @application.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler to catch unhandled exceptions.

        Repository failures end up here; screening itself never raises
        because failed detectors fall back to neutral results.
        """
        logger.exception(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            method=request.method,
        )

        # Return a proper JSON response - CORS middleware will add headers
        return JSONResponse(
            status_code=500,
            content={
                "detail": "An internal server error occurred. Please try again later.",
                "error_type": type(exc).__name__ if settings.DEBUG else "InternalServerError",
            },
        )

    return application


app = create_application()


@app.get("/health", tags=["Health"])
async def health_check(request: Request) -> dict[str, Any]:
    """Health check endpoint for load balancers and monitoring."""
    components = getattr(request.app.state, "components", None)
    return {
        "status": "healthy" if components is not None else "starting",
        "service": "surveyguard-api",
        "providers": len(components.screening.providers) if components is not None else 0,
    }


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": "1.0.0",
        "docs": "/docs" if settings.DEBUG else "Documentation disabled in production",
    }


@app.get("/health/services", tags=["Health"])
async def service_status(request: Request) -> dict[str, Any]:
    """
    Lookup source configuration status for deployment validation.

    Missing keys do not fail screening (the affected sub-check is skipped),
    but an empty Tor exit list means Tor traffic goes undetected, so that
    alone reports the service as degraded.
    """
    components = getattr(request.app.state, "components", None)
    tor_nodes = len(components.tor_exit_nodes) if components is not None else 0

    services = {
        "ipinfo": {"configured": bool(settings.IPINFO_TOKEN)},
        "abuseipdb": {"configured": bool(settings.ABUSEIPDB_KEY)},
        "captcha_siteverify": {"configured": bool(settings.CAPTCHA_VERIFY_URL and settings.CAPTCHA_SECRET_KEY)},
        "rdap": {"configured": settings.DOMAIN_RDAP_CHECK_ENABLED},
        "tor_exit_list": {"configured": tor_nodes > 0, "details": {"nodes": tor_nodes}},
    }

    if components is None:
        status = "starting"
    else:
        status = "healthy" if tor_nodes > 0 else "degraded"
    return {"status": status, "services": services}
