"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from utils.exceptions import AppError, InfrastructureError, ValidationError
from utils.perf_logger import WORKER_HANDOFF, perf_logger
from models.database import init_db, async_session
from engine.job_queue import TranscriptionQueue

# Configure logging to show INFO level logs (phase timings are logged at INFO)
logging.basicConfig(
    level=logging.INFO,
    format='%(message)s',  # perf_logger handles the timestamp formatting
    force=True  # Override any existing config
)

logger = logging.getLogger(__name__)


async def reconcile_stale_jobs():
    """
    Fail a processing job whose worker never reported back.
    Only runs when STALE_PROCESSING_MINUTES is set.
    """
    if settings.stale_processing_minutes <= 0:
        return
    async with async_session() as db:
        reaped = await TranscriptionQueue.get_instance().dispatcher.reap_stale(
            db, settings.stale_processing_minutes
        )
        if reaped:
            logger.info(f"Reconciliation complete: {reaped} stale processing job marked as failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup (init, reconciliation) and shutdown.
    """
    # === STARTUP ===
    logger.info("Starting application...")

    await init_db()
    await reconcile_stale_jobs()

    if not TranscriptionQueue.get_instance().gateway.is_configured:
        logger.warning("WORKER_URL is not set: queued jobs will fail on dispatch")

    logger.info("Application ready")

    yield

    # === SHUTDOWN ===
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    description="Single-concurrency transcription job queue",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "type": exc.kind}
    )


@app.exception_handler(AppError)
async def app_error_handler(request, exc: AppError):
    """Global handler for custom application errors."""
    if exc.status_code >= 500:
        logger.error(f"{exc.kind} on {request.url.path}: {exc.detail}")
    return _error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    """Malformed request bodies are a plain 400, like any other invalid input."""
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid input") if errors else "Invalid input"
    return _error_response(ValidationError(f"Invalid request: {message}"))


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request, exc: SQLAlchemyError):
    """Store failures surface as infrastructure errors."""
    logger.error(f"Database error on {request.url.path}: {exc}")
    return _error_response(InfrastructureError("Database operation failed", detail=str(exc)))


# Include routers
from routers import queue, subjects
app.include_router(queue.router, prefix="/api/queue", tags=["Queue"])
app.include_router(subjects.router, prefix="/api/subjects", tags=["Subjects"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    queue_service = TranscriptionQueue.get_instance()
    return {
        "status": "healthy",
        "app": settings.app_name,
        "worker_configured": queue_service.gateway.is_configured,
        "last_worker_handoff": perf_logger.last(WORKER_HANDOFF),
    }


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting server on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port)
