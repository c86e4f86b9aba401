"""
FastAPI application entry point.

Builds the app, wires the ProgressEngine onto app.state and registers
the error handlers and health checks.
"""
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from routers import progress
from core.config import settings
from core.database import check_db_connection
from core.logging import setup_logging
from core.exceptions import APIException, ValidationError, field_from_loc
from services.progress_engine import ProgressEngine, build_progress_engine
import logging
import time

# Setup logging first
setup_logging()
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


def create_app(engine: Optional[ProgressEngine] = None) -> FastAPI:
    """
    Create the FastAPI app.

    `engine` defaults to one wired from settings (Redis cache, Celery
    broker); tests pass their own.
    """
    app = FastAPI(
        title="Practice Progress API",
        description="Exercise completion ledger with streaks, cached aggregates, insights and recommendations",
        version=API_VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )
    app.state.engine = engine or build_progress_engine(settings)

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing information."""
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                exc_info=True,
                extra={
                    "extra_fields": {
                        "method": request.method,
                        "path": request.url.path,
                        "error": str(e),
                    }
                }
            )
            raise

        process_time = time.time() - start_time
        logger.info(
            f"Response: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "extra_fields": {
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "process_time_ms": round(process_time * 1000, 2),
                }
            }
        )
        response.headers["X-Process-Time"] = str(process_time)
        return response

    @app.exception_handler(APIException)
    async def api_exception_handler(request: Request, exc: APIException):
        """Domain errors (validation, not found) as {detail, error_code}."""
        logger.info(
            f"{exc.error_code}: {exc.detail}",
            extra={"extra_fields": {"method": request.method, "path": request.url.path}}
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error_code": exc.error_code},
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        """Malformed bodies and query params get the same shape as domain validation errors."""
        errors = exc.errors()
        first = errors[0] if errors else {}
        error = ValidationError(
            f"invalid request: {first.get('msg', 'validation failed')}",
            field=field_from_loc(first.get("loc")),
        )
        return await api_exception_handler(request, error)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(
            f"Unhandled exception: {exc}",
            exc_info=True,
            extra={
                "extra_fields": {
                    "method": request.method,
                    "path": request.url.path,
                }
            }
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    @app.get("/health")
    def health(request: Request):
        """
        Health check for load balancers and uptime monitors.

        Returns:
            - 200: database reachable (cache may be degraded)
            - 503: database unavailable
        """
        db_healthy = check_db_connection()
        cache_healthy = request.app.state.engine.cache.health_check()
        body = {
            "status": "healthy" if db_healthy and cache_healthy else "degraded",
            "database": "healthy" if db_healthy else "unavailable",
            "cache": "healthy" if cache_healthy else "unavailable",
            "version": API_VERSION,
            "timestamp": time.time(),
        }
        if not db_healthy:
            body["status"] = "unhealthy"
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
        return body

    app.include_router(progress.router)
    return app


app = create_app()
