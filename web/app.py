"""
FastAPI application for the Appraisor API.

Production deployment configuration via environment variables.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.comp_engine import __version__
from core.db.session import create_all_tables, health_check
from utils.config import Config
from web.calculator_routes import router as calculator_router
from web.comparables_routes import router as comparables_router
from web.db_routes import router as db_router
from web.dependencies import get_config
from web.property_routes import router as property_router
from web.refurbishment_routes import router as refurbishment_router


logger = logging.getLogger(__name__)

# Development fallback only; production must set ALLOWED_ORIGINS
DEV_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return f"{location}: {message}" if location else message


def create_app(config: Config = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or get_config()
    debug = config.debug and not config.production

    app = FastAPI(
        title="Appraisor",
        description="Property investment analysis: comparables, valuation and deal calculator",
        version=__version__,
        docs_url=None if config.production else "/docs",
        redoc_url=None if config.production else "/redoc",
        openapi_url=None if config.production else "/openapi.json",
        debug=debug,
    )

    # ==========================================================================
    # Healthcheck endpoints are registered first and perform no IO.
    # ==========================================================================
    @app.get("/", include_in_schema=False)
    def root():
        return {"status": "ok"}

    @app.get("/health", include_in_schema=False)
    def health():
        return {"status": "healthy"}

    @app.get("/api/health")
    def api_health():
        """Health check including the database."""
        database_ok = health_check()
        return {
            "status": "healthy" if database_ok else "degraded",
            "database": "ok" if database_ok else "unavailable",
            "version": __version__,
            "environment": "production" if config.production else "development",
        }

    allowed_origins = config.allowed_origins or ([] if config.production else DEV_ORIGINS)
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
        )

    # ==========================================================================
    # Error bodies are always {"error": message}
    # ==========================================================================
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": _validation_message(exc)})

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError):
        logger.error(
            "Database error on %s %s", request.method, request.url.path, exc_info=exc
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.on_event("startup")
    def on_startup():
        create_all_tables()
        logger.info("Appraisor started (%s)", "production" if config.production else "development")

    app.include_router(comparables_router)
    app.include_router(db_router)
    app.include_router(calculator_router)
    app.include_router(property_router)
    app.include_router(refurbishment_router)

    return app


# Create app instance for uvicorn
app = create_app()
