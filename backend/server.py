from fastapi import FastAPI, APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
import logging
import time
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import traceback

# Load environment variables first
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Import configuration
from config import get_settings

# Import logging and error tracking
from logging_config import setup_logging, get_logger
from sentry_integration import init_sentry

# Import database and routers
from database import init_db, dispose_engine, get_engine
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

# Get settings
settings = get_settings()

# Configure structured logging
# Use JSON format in production, plain text in development
setup_logging(
    level=settings.LOG_LEVEL,
    json_format=settings.json_logs,
    service_name="recon-core"
)
logger = get_logger(__name__)

# Initialize Sentry error tracking
if settings.SENTRY_DSN:
    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=0.1 if settings.is_production else 0.0,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    logger.info("Starting reconciliation engine API...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    errors = settings.validate_production_config()
    for error in errors:
        logger.error(f"Configuration Error: {error}")
    if errors and settings.is_production:
        raise RuntimeError("Cannot start in production with invalid configuration")

    try:
        await init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    yield

    logger.info("Shutting down reconciliation engine API...")
    await dispose_engine()


app = FastAPI(
    title=settings.API_TITLE,
    description="""
    Reconciliation engine for gateway, bank and ledger transactions.

    ### Reconciliation (/api/reconciliation)
    - Matching cascade against open invoices
    - Ledger-code inference for unlinked gateway transactions
    - Bank inflow classification by payer name
    - Gateway disbursement matching
    - False-positive sweep
    """,
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
)

api_router = APIRouter(prefix="/api")


# ==================== HEALTH CHECK ENDPOINTS ====================

@api_router.get("/health", tags=["Health"])
async def health_check():
    """
    Health check for load balancers and uptime monitors.

    Returns 503 when the database is unreachable.
    """
    from sqlalchemy import text

    try:
        async with get_engine().begin() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        raise HTTPException(status_code=503, detail={"status": "unhealthy", "database": "disconnected"})

    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
    }


@api_router.get("/health/live", tags=["Health"])
async def liveness_check():
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(reconciliation_router)

app.include_router(api_router)


# ==================== MIDDLEWARE ====================

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log requests with timing information"""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", f"req-{int(start_time * 1000)}")

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(f"[{request_id}] Request failed: {str(e)}")
        raise

    process_time = time.time() - start_time
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

    if settings.debug_enabled or response.status_code >= 400:
        logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({process_time:.3f}s)")

    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions"""
    logger.error(f"Unhandled exception: {exc}")
    if settings.debug_enabled:
        logger.error(traceback.format_exc())

    if settings.is_production:
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc), "type": type(exc).__name__}
    )
