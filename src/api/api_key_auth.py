# coding: utf-8
"""
API Key Authentication

Protects internal endpoints (payment callbacks relayed by the platform,
admin analytics) with a shared key.

Usage:
    @router.get("/admin/analytics")
    async def analytics(api_key: str = Depends(verify_api_key)):
        pass
"""
import hmac
from typing import Optional

from fastapi import Header, HTTPException
from loguru import logger

from config.config import INTERNAL_API_KEY


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, description="Internal API key")
) -> str:
    """
    Verify API key from request header

    Headers:
        X-API-Key: your-secret-api-key

    Raises:
        HTTPException 401: If API key is missing or invalid
        HTTPException 500: If no key is configured

    Returns:
        API key if valid
    """
    if not x_api_key:
        logger.warning("API key missing in request")
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Provide X-API-Key header."
        )

    if not INTERNAL_API_KEY:
        logger.error("INTERNAL_API_KEY not configured in .env")
        raise HTTPException(
            status_code=500,
            detail="API key authentication not configured"
        )

    if not hmac.compare_digest(x_api_key, INTERNAL_API_KEY):
        logger.warning(f"Invalid API key attempt: {x_api_key[:4]}...")
        raise HTTPException(
            status_code=401,
            detail="Invalid API key"
        )

    return x_api_key
