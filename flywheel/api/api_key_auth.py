"""
API Key Authentication

Protects config writes, manual triggers and reconcile runs.

Usage:
    @router.put("/protected-endpoint")
    async def protected(api_key: str = Depends(verify_api_key)):
        # Only accessible with valid API key
        pass
"""
import hmac
from typing import Optional

from fastapi import Header, HTTPException
from loguru import logger

from config import config


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, description="Flywheel admin API key")
) -> str:
    """
    Verify API key from request header

    Headers:
        X-API-Key: your-secret-api-key

    Raises:
        HTTPException 401: If API key is missing or invalid
        HTTPException 500: If FLYWHEEL_API_KEY is not configured

    Returns:
        API key if valid
    """
    if not x_api_key:
        logger.warning("API key missing in request")
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Provide X-API-Key header."
        )

    if not config.FLYWHEEL_API_KEY:
        logger.error("FLYWHEEL_API_KEY not configured in .env")
        raise HTTPException(
            status_code=500,
            detail="API key authentication not configured"
        )

    if not hmac.compare_digest(x_api_key, config.FLYWHEEL_API_KEY):
        logger.warning(f"Invalid API key attempt: {x_api_key[:4]}...")
        raise HTTPException(
            status_code=401,
            detail="Invalid API key"
        )

    return x_api_key
