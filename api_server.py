"""
FastAPI Server for the Property Unlock API
Serves unlock, deal code and payment webhook endpoints for the frontend
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from config.config import validate_config, DATABASE_URL, FRONTEND_URL, ENVIRONMENT
from config.logging import setup_logging
from config.sentry import init_sentry
from src.api.errors import register_exception_handlers
from src.api.router import router as api_router
from src.cache import get_redis_manager
from src.database.engine import check_connection, dispose_engine, init_db

# Setup logging at module level (must run before app creation)
# This ensures logging works when uvicorn imports the module
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events
    """
    # Startup
    logger.info("Starting Property Unlock API Server...")
    init_sentry()

    # NOTE: Database tables managed by Alembic migrations
    # Run: alembic upgrade head
    # Local SQLite has no migrations
    if DATABASE_URL.startswith("sqlite"):
        await init_db()

    if not await check_connection():
        logger.error("Database connection check failed")

    redis_mgr = get_redis_manager()
    if await redis_mgr.initialize():
        logger.info("Redis cache connected")
    else:
        logger.warning("Redis unavailable - exchange rates cached in memory only")

    yield

    # Shutdown
    logger.info("Shutting down Property Unlock API Server...")

    await redis_mgr.close()
    await dispose_engine()
    logger.info("Database connections closed")


# Rate limiter (per IP)
rate_limit = os.getenv("API_RATE_LIMIT", "300/minute")

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[rate_limit],
    storage_uri=os.getenv("RATE_LIMIT_STORAGE_URI", "memory://"),
)

app = FastAPI(
    title="Property Unlock API",
    description="Address unlocks, deal codes and unlock payments",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_exception_handlers(app)


# CORS: exact origins only
allowed_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

if FRONTEND_URL and FRONTEND_URL not in allowed_origins:
    allowed_origins.append(FRONTEND_URL)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """
    Security headers for every response

    The API serves JSON only, so the CSP denies everything.
    """
    response = await call_next(request)

    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

    if ENVIRONMENT == "production" and request.url.scheme == "https":
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains; preload"
        )

    return response


# All API endpoints live under /api
app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    return {
        "service": "Property Unlock API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
    }


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Handle HTTPException properly - return correct status code and detail
    """
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {exc.detail}")
    elif exc.status_code >= 400:
        logger.warning(f"HTTP {exc.status_code}: {exc.detail}")

    content = exc.detail if isinstance(exc.detail, dict) else {"detail": exc.detail}
    return JSONResponse(
        status_code=exc.status_code,
        content=content
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unexpected errors
    """
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "detail": "An error occurred",
        }
    )


if __name__ == "__main__":
    import uvicorn

    try:
        validate_config()
    except ValueError as e:
        logger.error(str(e))
        raise SystemExit(1)

    logger.info("Configuration validated successfully")

    # Listen on localhost only, exposed through the reverse proxy
    uvicorn.run(
        "api_server:app",
        host="127.0.0.1",
        port=int(os.getenv("PORT", "8003")),
        reload=ENVIRONMENT == "development",
        log_level="info",
    )
