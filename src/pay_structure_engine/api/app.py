"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pay_structure_engine.api.routes import formulas_router, health_router, paychecks_router
from pay_structure_engine.config import configure_logging, get_settings
from pay_structure_engine.database import dispose_db, init_db
from pay_structure_engine.errors import (
    ComputationError,
    ConcurrencyError,
    ConfigurationError,
    EvaluationError,
    IntegrityError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_BY_ERROR: dict[type[ComputationError], int] = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    EvaluationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ConfigurationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    IntegrityError: status.HTTP_409_CONFLICT,
    ConcurrencyError: status.HTTP_409_CONFLICT,
}


def status_for(error: ComputationError) -> int:
    for error_type in type(error).__mro__:
        if error_type in STATUS_BY_ERROR:
            return STATUS_BY_ERROR[error_type]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    configure_logging()
    init_db()
    yield
    # Shutdown
    await dispose_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    app = FastAPI(
        title="Pay Structure Engine API",
        description="Pay structure resolution and paycheck calculation",
        version=settings.engine_version,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(ComputationError)
    async def computation_exception_handler(
        request: Request, exc: ComputationError
    ) -> JSONResponse:
        """Map computation errors to client-facing status codes."""
        code = status_for(exc)
        if isinstance(exc, ConfigurationError):
            logger.warning(
                "Configuration error in template %s: %s", exc.template or "<unresolved>", exc
            )
        return JSONResponse(
            status_code=code,
            content={
                "detail": exc.message,
                "code": exc.kind.upper(),
                "employee_id": str(exc.employee_id) if exc.employee_id else None,
                "component_code": exc.component_code,
                "stage": exc.stage,
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(paychecks_router, prefix="/api/v1")
    app.include_router(formulas_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
