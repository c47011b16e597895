from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from config import settings
from database import init_db
from exceptions import InvariantViolation, LedgerError
from subscription_api import router as subscription_router
from affiliate_api import router as affiliate_router

app = FastAPI(title=settings.APP_NAME, version="2.0.0")

# Setup logging
logger = logging.getLogger(__name__)

# Strip whitespace from each origin to prevent configuration errors
CORS_ORIGINS = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=3600,  # Cache preflight responses for 1 hour
)


def _with_cors_headers(request: Request, response: JSONResponse) -> JSONResponse:
    origin = request.headers.get('origin')
    if origin and origin in CORS_ORIGINS:
        response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Access-Control-Allow-Credentials'] = 'true'
    return response


# ==================== CUSTOM EXCEPTION HANDLERS ====================

@app.exception_handler(LedgerError)
async def ledger_exception_handler(request: Request, exc: LedgerError):
    """
    Map ledger errors to their HTTP status.

    Invariant violations are logged with full details and answered with a
    generic processing error; callers never see the ledger internals.
    """
    if isinstance(exc, InvariantViolation):
        logger.error(f"❌ Invariant violation on {request.method} {request.url.path}: {exc.details}")
        response = JSONResponse(status_code=500, content={"detail": "Processing error"})
        return _with_cors_headers(request, response)

    response = JSONResponse(status_code=int(exc.status_code), content=exc.to_dict())
    if exc.retryable:
        response.headers['Retry-After'] = '30'
    return _with_cors_headers(request, response)


@app.exception_handler(StarletteHTTPException)
async def custom_http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Ensure CORS headers are included in error responses raised from dependencies."""
    response = await http_exception_handler(request, exc)
    return _with_cors_headers(request, response)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """
    Catch-all exception handler for unexpected errors.
    Ensures CORS headers are present even on 500 errors.
    """
    logger.error(f"Unexpected error: {exc}", exc_info=True)

    response = JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )
    return _with_cors_headers(request, response)

# ==================== END EXCEPTION HANDLERS ====================

# Include subscription routes
app.include_router(subscription_router)

# Include affiliate routes
app.include_router(affiliate_router)


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    logger.info("=" * 60)
    logger.info("Starting application initialization...")
    logger.info("=" * 60)

    try:
        await init_db()
        logger.info("Database initialization successful!")
    except ConnectionRefusedError as e:
        logger.error("=" * 60)
        logger.error("CRITICAL: Database connection refused!")
        logger.error(f"Error: {e}")
        logger.error("Possible causes:")
        logger.error("1. Incorrect DATABASE_URL format")
        logger.error("2. Database server not accessible")
        logger.error("=" * 60)
        raise
    except Exception as e:
        logger.error("=" * 60)
        logger.error(f"CRITICAL: Application startup failed: {e}")
        logger.error("=" * 60)
        raise

    # Start subscription scheduler for daily renewal checks and the stale-session sweep
    if settings.SCHEDULER_ENABLED:
        try:
            from subscription_scheduler import start_subscription_scheduler
            start_subscription_scheduler()
            logger.info("✅ Subscription scheduler started successfully")
        except Exception as e:
            logger.error(f"⚠️ Failed to start subscription scheduler: {e}")
            # Don't fail startup if scheduler fails

    # Validate SSLCommerz configuration
    from sslcommerz_service import sslcommerz_service
    config_status = sslcommerz_service.get_configuration_status()

    logger.info("=" * 60)
    logger.info("SSLCommerz Payment Configuration Status")
    logger.info("=" * 60)

    if config_status['is_configured']:
        logger.info(f"✅ SSLCommerz store is configured (mode: {config_status['mode']})")
        logger.info(f"   Store id: {config_status['store_id_preview']}")
        for issue in config_status['issues']:
            logger.warning(f"⚠️ {issue}")
    else:
        logger.warning("⚠️ SSLCommerz store is NOT configured - renewal payments will fail")
        for issue in config_status['issues']:
            logger.warning(f"   - {issue}")


@app.on_event("shutdown")
async def shutdown_event():
    from subscription_scheduler import stop_subscription_scheduler
    stop_subscription_scheduler()


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "billing"}
