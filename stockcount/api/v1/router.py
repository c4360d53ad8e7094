from fastapi import APIRouter

from stockcount.api.v1.endpoints import (
    counts,
    audits,
)

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Stock Counts ====================
api_router.include_router(
    counts.router,
    prefix="/counts",
    tags=["Stock Counts"]
)

# ==================== Audits ====================
api_router.include_router(
    audits.router,
    prefix="/audits",
    tags=["Audits"]
)
