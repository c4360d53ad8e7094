from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from stockcount.config import settings
from stockcount.api.v1.router import api_router
from stockcount.core.exceptions import CountingError, ConflictError, NotFoundError, ValidationError
from stockcount.database import init_db, async_session_factory

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup creates missing tables; schema changes go through Alembic.
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    await init_db()

    yield

    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Stock Counts", "description": "Count groups, rounds, logs and review flags"},
    {"name": "Audits", "description": "Corrective movements after the third count"},
    {"name": "Health", "description": "Service health"},
]

API_DESCRIPTION = """
## Stock Count Reconciliation API

Three-round blind stock counting against an ERP snapshot.

| Module | Description |
|--------|-------------|
| **Counts** | Groups of products counted in up to three rounds |
| **Logs** | One count per user, round and location |
| **Audits** | REDUCE / INCLUDE / CORRECT movements after review |

### Error Codes

| Code | Description |
|------|-------------|
| 400 | Bad Request - Validation failed |
| 404 | Not Found - Resource doesn't exist |
| 409 | Conflict - Operation not allowed in the current state |
| 500 | Internal Server Error |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


def _error_response(request: Request, status_code: int, exc: CountingError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.message,
            "type": type(exc).__name__,
            "details": exc.details,
            "path": str(request.url.path),
            "method": request.method,
        },
    )


@app.exception_handler(CountingError)
async def counting_exception_handler(request: Request, exc: CountingError):
    """Map domain errors to HTTP status codes."""
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, ValidationError):
        status_code = 400
    elif isinstance(exc, ConflictError):
        status_code = 409
    else:
        status_code = 500
    return _error_response(request, status_code, exc)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": str(exc),
            "type": type(exc).__name__,
            "path": str(request.url.path),
            "method": request.method,
        },
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
        }
    }

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


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
    }
