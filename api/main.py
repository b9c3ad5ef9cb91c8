"""
FastAPI API Service Entry Point
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from api.routes import appointments, messages, payments
from shared.circuit_breaker import get_breaker_status
from shared.config import get_settings
from shared.logging_config import configure_logging
from shared.redis_client import get_redis_client

# Configure structured JSON logging on startup
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Consult Booking Engine API",
    version="1.0.0",
)

settings = get_settings()
origins = settings.CORS_ORIGINS.split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(messages.router, prefix="/webhook", tags=["webhooks"])
app.include_router(appointments.router, prefix="/webhook", tags=["webhooks"])
app.include_router(payments.router, prefix="/webhook", tags=["webhooks"])


@app.on_event("startup")
async def recover_debounced_messages():
    """Process message batches that were pending when the previous process died."""
    try:
        recovered = await messages.get_debouncer().recover_pending_batches(messages.process_batch)
        logger.info(f"Startup batch recovery finished | recovered={recovered}")
    except Exception as e:
        logger.error(f"Startup batch recovery failed: {e}", exc_info=True)


@app.on_event("shutdown")
async def flush_debounced_messages():
    """Release pending batches so their waiting requests process them before exit."""
    released = await messages.get_debouncer().flush_all()
    logger.info(f"Shutdown flush finished | released={released}")


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Return 400 with validation error details."""
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "details": exc.errors()},
    )


@app.get("/health")
async def health_check() -> JSONResponse:
    """
    Health check endpoint for container health checks and monitoring.

    Checks:
    - Redis connectivity (PING command)
    - Circuit breaker states for the external APIs

    Returns:
        200 OK if Redis is reachable
        503 Service Unavailable otherwise
    """
    health_status = {
        "status": "healthy",
        "redis": "unknown",
        "circuit_breakers": get_breaker_status(),
    }
    status_code = 200

    try:
        await get_redis_client().ping()
        health_status["redis"] = "connected"
    except Exception:
        health_status["redis"] = "disconnected"
        health_status["status"] = "degraded"
        status_code = 503

    return JSONResponse(status_code=status_code, content=health_status)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint"""
    return {"message": "Consult Booking Engine API - Use /health for health checks"}
