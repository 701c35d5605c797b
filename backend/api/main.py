"""
Main FastAPI application entry point.

Responsibilities:
- Initialize FastAPI app
- Include routers
- Build the database engine and session factory on startup
"""
from __future__ import annotations

import logging
import sys

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.routes import jira
from config import log_missing_env_vars, settings
from models.database import close_db, init_db, make_engine, make_session_factory

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Jira Sync API", version="1.0.0")


# Global exception handler so unexpected failures still return JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all uncaught exceptions."""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Routes
app.include_router(jira.router, prefix="/api/jira", tags=["jira"])


@app.on_event("startup")
async def startup() -> None:
    """Create the engine, the session factory and any missing tables."""
    log_missing_env_vars(logging.getLogger("config"))
    engine = make_engine(settings.DATABASE_URL)
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    await init_db(engine)
    logger.info("Database connection pool ready")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Clean up database connections on shutdown."""
    engine = getattr(app.state, "engine", None)
    if engine is None:
        return
    logger.info("Shutting down, closing database connections...")
    await close_db(engine)
    logger.info("Database connections closed")


@app.get("/")
async def root_health_check() -> dict[str, str]:
    """Root endpoint exposing the health check payload."""
    logger.info("Root health check requested")
    return await health_check()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    logger.info("Health check requested")
    return {"status": "ok"}


@app.get("/health/db")
async def db_health_check() -> dict[str, object]:
    """Database health check: one round trip through the session factory."""
    session_factory = getattr(app.state, "session_factory", None)
    if session_factory is None:
        return {"status": "error", "error": "database not initialised"}
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return {"status": "error", "error": str(e)}
    return {"status": "ok"}
