"""Main FastAPI application for the customs portal submission engine."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from customs_portal import __version__
from customs_portal.api.models import ErrorResponse, HealthCheck
from customs_portal.api.routes import all_routers
from customs_portal.config import settings
from customs_portal.core.errors import (
    ConfigurationError,
    RetryNotAllowed,
    SubmissionError,
    UnknownSubmission,
    UnknownTarget,
)
from customs_portal.service import SubmissionService, create_submission_service
from customs_portal.utils.logging import configure_logging, get_logger

# Configure logging
configure_logging()
logger = get_logger(__name__)

_ERROR_STATUS = (
    (UnknownTarget, 404),
    (UnknownSubmission, 404),
    (RetryNotAllowed, 409),
    (ConfigurationError, 400),
)


def status_for(error: SubmissionError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 422


def create_app(service: Optional[SubmissionService] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        service: Pre-built submission service; built from settings at startup when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting customs portal API")
        if getattr(app.state, "service", None) is None:
            app.state.service = create_submission_service()
        logger.info("Application startup completed", targets=len(app.state.service.store))
        yield
        logger.info("Customs portal API shut down")

    app = FastAPI(
        title="Customs Portal Submission API",
        description="Declarative submission of customs declarations into external web portals",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.service = service

    setup_middleware(app)
    setup_exception_handlers(app)

    for router in all_routers:
        app.include_router(router, prefix="/api/v1")

    @app.get("/health", response_model=HealthCheck)
    async def health_check(request: Request):
        current = getattr(request.app.state, "service", None)
        components = {
            "submission_service": "healthy" if current is not None else "unavailable",
            "recovery_advisor": "healthy" if current is not None and current.advisor and current.advisor.is_available else "disabled",
        }
        return HealthCheck(
            status="healthy" if current is not None else "degraded",
            timestamp=datetime.now(timezone.utc),
            version=__version__,
            components=components,
        )

    return app


def setup_middleware(app: FastAPI) -> None:
    """Setup application middleware."""

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = asyncio.get_event_loop().time()
        response = await call_next(request)
        logger.info(
            "Request completed",
            method=request.method,
            url=str(request.url),
            status_code=response.status_code,
            duration_seconds=round(asyncio.get_event_loop().time() - start_time, 4),
        )
        return response


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup global exception handlers."""

    @app.exception_handler(SubmissionError)
    async def submission_error_handler(request: Request, exc: SubmissionError):
        status_code = status_for(exc)
        logger.warning("Submission error", code=exc.code, status_code=status_code, url=str(request.url))
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=exc.code,
                message=exc.message,
                details=exc.details or None,
                timestamp=datetime.now(timezone.utc),
            ).model_dump(mode="json"),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning("HTTP exception", status_code=exc.status_code, detail=exc.detail, url=str(request.url))
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error="HTTPException",
                message=str(exc.detail),
                timestamp=datetime.now(timezone.utc),
            ).model_dump(mode="json"),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning("Validation error", errors=exc.errors(), url=str(request.url))
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(
                error="ValidationError",
                message="Request validation failed",
                details={"validation_errors": [str(error.get("msg")) for error in exc.errors()]},
                timestamp=datetime.now(timezone.utc),
            ).model_dump(mode="json"),
        )


# Create the application instance
app = create_app()
