"""
FastAPI Router for the Flywheel API
"""

from fastapi import APIRouter
from loguru import logger

from flywheel.api.flywheel import router as flywheel_router
from flywheel.database.engine import check_connection


# Main router
router = APIRouter()

# Include sub-routers (they carry their own prefixes)
router.include_router(flywheel_router)


@router.get("/health")
async def health_check():
    """Liveness + database connectivity."""
    db_ok = await check_connection()
    if not db_ok:
        logger.warning("Health check: database unreachable")
    return {"status": "ok" if db_ok else "degraded", "database": db_ok}
