"""
FundRaise FastAPI Application

Entry point for the crowdfunding ledger API: donations in, payouts out.
"""

import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError
import logging

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from api.routers import admin_payouts, connect, donations, payouts, webhooks  # noqa: E402
from database.db import SessionLocal  # noqa: E402
from services.exceptions import ConfigurationError, LedgerError, PersistenceError  # noqa: E402
from services.settings_service import load_settings  # noqa: E402

# Create FastAPI app
app = FastAPI(
    title="FundRaise API",
    description="Crowdfunding ledger: card donations, campaign balances and payouts",
    version="1.0.0"
)

# CORS configuration (allow web dashboard to call API)
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================
# Error Handling
# ============================================

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"{request.method} {request.url.path} database error: {exc}")
    error = PersistenceError("Database unavailable, nothing was applied")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"{request.method} {request.url.path} refused, invalid platform settings: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Service misconfigured, nothing was applied", "code": "configuration_error", "key": exc.key},
    )


# ============================================
# Health Check Endpoint
# ============================================

@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring.

    Returns server status and basic info.
    Used by:
    - Monitoring services (UptimeRobot, Pingdom)
    - Load balancers
    - Deployment systems (Railway, Render)
    """
    return {
        "status": "healthy",
        "service": "FundRaise API",
        "version": "1.0.0",
        "environment": os.getenv("APP_ENV", "development")
    }


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "message": "Welcome to FundRaise API",
        "documentation": "/docs",
        "health": "/health"
    }


# ============================================
# Routers
# ============================================

app.include_router(donations.router)
app.include_router(payouts.router)
app.include_router(admin_payouts.router)
app.include_router(connect.router)
app.include_router(webhooks.router)


# ============================================
# Startup/Shutdown Events
# ============================================

@app.on_event("startup")
async def startup_event():
    """
    Run on application startup.

    Loads the fee schedule once and keeps it on app.state for every
    request; a missing or invalid value raises
    ConfigurationError and the server refuses to start.
    """
    logger.info("FundRaise API starting up...")
    logger.info(f"Environment: {os.getenv('APP_ENV')}")

    db = SessionLocal()
    try:
        settings = load_settings(db)
    finally:
        db.close()
    app.state.platform_settings = settings

    logger.info(
        f"Fee schedule: platform {settings.platform_fee_percent}%, "
        f"processing {settings.processing_fee_percent}% + {settings.processing_fee_fixed}, "
        f"payout {settings.payout_fee_percent}%, minimum payout {settings.minimum_payout_amount}"
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown."""
    logger.info("FundRaise API shutting down...")


# ============================================
# Run Server (Development Only)
# ============================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("APP_PORT", 8000))
    host = os.getenv("APP_HOST", "0.0.0.0")

    logger.info(f"Starting server on {host}:{port}")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=True,  # Auto-reload on code changes (dev only!)
        log_level="info"
    )
