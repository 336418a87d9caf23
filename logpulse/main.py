"""
Log Pulse - Main Application
============================

FastAPI application wrapping the log intelligence engine.

Responsibilities:
- Tail live log files and group their errors per source
- Import complete log files into queryable sessions
- Serve error groups, spikes and session entries
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.utils.logging import setup_logging, get_logger, set_correlation_id
from logpulse.config import get_settings
from logpulse.api.routes import router as api_router
from logpulse.core.entry_parser import EntryParser
from logpulse.core.error_store import ErrorStore
from logpulse.core.errors import FileAccessError, ImportFailed, NotFoundError, StoreFailure
from logpulse.core.importer import Importer
from logpulse.core.session_store import SessionStore
from logpulse.core.tail_manager import TailManager
from logpulse.db import Database


settings = get_settings()

# Initialize logging
setup_logging(
    service_name=settings.service_name,
    log_level=settings.log_level,
    json_output=settings.log_json
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    Builds the engine on app.state and stops every tail on shutdown.
    """
    logger.info(
        f"Starting {settings.service_name} v{settings.service_version}",
        extra={"version": settings.service_version, "database_url": settings.database_url}
    )

    database = Database(settings.database_url, echo=settings.database_echo)
    database.create_schema()

    parser = EntryParser()
    error_store = ErrorStore(database)
    session_store = SessionStore(database)

    app.state.database = database
    app.state.parser = parser
    app.state.error_store = error_store
    app.state.session_store = session_store
    app.state.tail_manager = TailManager(error_store, parser, settings)
    app.state.importer = Importer(session_store, error_store, parser, settings)

    yield

    # Shutdown
    logger.info("Shutting down log pulse...")
    await app.state.tail_manager.stop_all()
    database.dispose()
    logger.info("Log pulse shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Log Pulse",
    description="Live tailing, error grouping and session import for application logs",
    version=settings.service_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    """Middleware to extract or generate correlation ID."""
    correlation_id = request.headers.get("X-Correlation-ID")
    if not correlation_id:
        correlation_id = str(uuid.uuid4())

    set_correlation_id(correlation_id)
    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id

    return response


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=404,
        content={"error": "not_found", "message": str(exc)}
    )


@app.exception_handler(FileAccessError)
async def file_access_handler(request: Request, exc: FileAccessError):
    logger.warning(str(exc), extra={"path": exc.path})
    return JSONResponse(
        status_code=422,
        content={"error": "file_access", "message": str(exc), "path": exc.path}
    )


@app.exception_handler(ImportFailed)
async def import_failed_handler(request: Request, exc: ImportFailed):
    return JSONResponse(
        status_code=500,
        content={
            "error": "import_failed",
            "message": str(exc),
            "session_id": exc.session_id,
            "entries_written": exc.entries_written
        }
    )


@app.exception_handler(StoreFailure)
async def store_failure_handler(request: Request, exc: StoreFailure):
    return JSONResponse(
        status_code=503,
        content={
            "error": "store_unavailable",
            "message": str(exc),
            "operation": exc.operation
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(
        f"Unhandled exception: {exc}",
        extra={"path": request.url.path},
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "detail": str(exc) if settings.debug else None
        }
    )


# Health check
@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": settings.service_name,
        "version": settings.service_version
    }


@app.get("/ready", tags=["health"])
async def readiness_check(request: Request):
    """Readiness check endpoint."""
    database = getattr(request.app.state, "database", None)
    tail_manager = getattr(request.app.state, "tail_manager", None)

    return {
        "status": "ready" if database is not None else "starting",
        "service": settings.service_name,
        "active_tails": len(tail_manager.list_tails()) if tail_manager else 0
    }


# Include API routes
app.include_router(api_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "logpulse.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
