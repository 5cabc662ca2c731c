"""
PerfPulse FastAPI application entry point.

Flow: submit → queue → worker → audit provider → stored result → polling
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from perfpulse import __version__
from perfpulse.config import get_settings
from perfpulse.db.session import check_db_connection, engine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info("PerfPulse starting")
    try:
        try:
            check_db_connection()
            logger.info("Database connection verified")
        except Exception as e:
            logger.critical("Database unreachable: %s", e)
            raise
        if not get_settings().pagespeed_api_key:
            logger.warning("PAGESPEED_API_KEY not set; audits will use the anonymous quota")
        yield
    finally:
        logger.info("PerfPulse shutting down")
        engine.dispose()
        logger.info("Database connection pool closed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    from perfpulse.api.internal import router as internal_router
    from perfpulse.api.runs import router as runs_router

    app.include_router(runs_router, prefix="/api/tests", tags=["tests"])

    # Token-authenticated endpoints for cron and scripts
    app.include_router(internal_router, tags=["internal"])

    @app.get("/health")
    def health() -> dict:
        """Health check endpoint. Confirms DB connectivity."""
        from sqlalchemy import text

        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return {
                "status": "ok",
                "version": __version__,
                "database": "connected",
            }
        except Exception:
            from fastapi.responses import JSONResponse

            return JSONResponse(
                status_code=503,
                content={
                    "status": "unhealthy",
                    "version": __version__,
                    "database": "disconnected",
                },
            )

    return app


app = create_app()
