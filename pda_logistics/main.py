import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from pda_logistics.config import settings
from pda_logistics.api.v1.router import api_router
from pda_logistics.core.exceptions import (
    LogisticsError,
    OrderNotFound,
    OrderKindMismatch,
    ConfirmationRequired,
    OrderAlreadyAssigned,
    InvalidTransition,
    CapacityExceeded,
    InvalidOTP,
    InvalidQRCode,
    InvalidDeliveryCode,
    GPSOutOfRadius,
    MissingConfirmationEvidence,
)
from pda_logistics.database import init_db, async_session_factory
from pda_logistics.jobs.scheduler import start_scheduler, shutdown_scheduler, get_job_status


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# HTTP status per domain error; subclasses not listed fall back to 400
ERROR_STATUS_CODES = {
    OrderNotFound: 404,
    OrderAlreadyAssigned: 409,
    InvalidTransition: 409,
    CapacityExceeded: 409,
    OrderKindMismatch: 422,
    ConfirmationRequired: 422,
    MissingConfirmationEvidence: 422,
    InvalidOTP: 400,
    InvalidQRCode: 400,
    InvalidDeliveryCode: 400,
    GPSOutOfRadius: 403,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create missing tables
    - Start background scheduler (commission approval, stuck orders)
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    if settings.SCHEDULER_ENABLED:
        start_scheduler()

    yield

    # Shutdown
    if settings.SCHEDULER_ENABLED:
        shutdown_scheduler()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Logistics", "description": "Order assignment, delivery status, handover confirmations and commissions"},
    {"name": "Health", "description": "Service health"},
]

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


def status_code_for(exc: LogisticsError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 400


@app.exception_handler(LogisticsError)
async def logistics_exception_handler(request: Request, exc: LogisticsError):
    """Render domain errors with their code and details."""
    return JSONResponse(status_code=status_code_for(exc), content=exc.to_dict())


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=400,
        content={"error": "VALIDATION_ERROR", "message": str(exc), "details": {}},
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    from sqlalchemy import text
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        },
        "jobs": get_job_status(),
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status
