from contextlib import asynccontextmanager
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.api.v1.router import api_router
from app.api.v1.endpoints import tracking
from app.database import init_db, async_session_factory
from app.jobs.scheduler import start_scheduler, shutdown_scheduler
from app.middleware.affiliate_tracking import affiliate_tracking_middleware
from app.services.cache_service import build_cache

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables
    - Build the referral cache (Redis or in-memory)
    - Start background scheduler
    """
    # Startup
    print(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db()
    app.state.session_factory = async_session_factory
    app.state.cache = build_cache(settings)

    # Start background job scheduler
    start_scheduler()

    yield

    # Shutdown
    shutdown_scheduler()
    if app.state.cache is not None:
        await app.state.cache.close()
    print("Shutting down...")


# OpenAPI Tags with detailed descriptions
OPENAPI_TAGS = [
    {"name": "Affiliates", "description": "Affiliate registration, dashboard, links and payout requests"},
    {"name": "Vendor Affiliates", "description": "Program settings, commission rules and affiliate approval"},
    {"name": "Admin Affiliates", "description": "Platform stats, suspicious affiliates, payouts and reconciliation"},
    {"name": "Webhooks", "description": "Order completion/refund and payment confirmation signals"},
    {"name": "Tracking", "description": "Short link redirects with click tracking"},
]

FULL_API_DESCRIPTION = """
## Affiliate Commission Engine API

Referral tracking, conversion attribution, commission ledger and payouts
for a multi-vendor marketplace.

### Flow

| Step | Description |
|------|-------------|
| **Click** | `?ref=CODE` or `/r/{short_code}` records a click and sets tracking cookies |
| **Conversion** | Order completion webhook attributes the order to the referring affiliate |
| **Commission** | One ledger entry per (order, line item); duplicates are absorbed |
| **Refund** | Refund webhook cancels unpaid entries and reverses aggregates |
| **Payout** | Affiliate requests a payout; admin approves; payment webhook settles it |

### Authentication

User endpoints require a JWT bearer token. Webhooks require the
`X-Webhook-Secret` header.

### Error Codes

| Code | Description |
|------|-------------|
| 400 | Bad Request - Validation or business rule failed |
| 401 | Unauthorized - Invalid/expired token or webhook secret |
| 403 | Forbidden - Role or affiliate status does not allow the action |
| 404 | Not Found - Resource doesn't exist |
| 409 | Conflict - Commission already paid, concurrent payout |
| 500 | Internal Server Error |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=FULL_API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
    swagger_ui_parameters={
        "deepLinking": True,
        "persistAuthorization": True,
        "filter": True,
    },
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Record ?ref= clicks on any storefront GET
app.middleware("http")(affiliate_tracking_middleware)

# Include API router
app.include_router(api_router)
app.include_router(tracking.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a JSON 500 for unhandled errors; include the traceback in debug mode."""
    logging.getLogger(__name__).exception(f"Unhandled error on {request.method} {request.url.path}")

    error_detail = {
        "error": str(exc) if settings.DEBUG else "Internal server error",
        "type": type(exc).__name__,
        "path": str(request.url.path),
        "method": request.method,
    }
    if settings.DEBUG:
        error_detail["traceback"] = traceback.format_exc()

    # Get origin from request
    origin = request.headers.get("origin", "")

    response = JSONResponse(
        status_code=500,
        content=error_detail
    )

    # Add CORS headers if origin is allowed
    if origin in settings.cors_origins_list or "*" in settings.cors_origins_list:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "*"
        response.headers["Access-Control-Allow-Headers"] = "*"

    return response


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint with database validation."""
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown",
            "cache": "enabled" if getattr(request.app.state, "cache", None) else "disabled",
        }
    }

    # Check database connectivity
    session_factory = getattr(request.app.state, "session_factory", async_session_factory)
    try:
        async with session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except (SQLAlchemyError, OSError) as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
    }
