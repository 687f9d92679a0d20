"""
Exception handlers

Domain errors become the standard response envelope:
    {"success": false, "message": ..., "error": <code>, "data": ...}
"""
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from src.core.exceptions import UnlockError
from src.services.exchange_rate_service import ExchangeRateUnavailable


class UnlockResponse(BaseModel):
    """Generic unlock response"""

    success: bool
    message: str
    error: str | None = None
    data: Dict[str, Any] | None = None


async def unlock_error_handler(request: Request, exc: UnlockError) -> JSONResponse:
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    body = UnlockResponse(success=False, message=exc.message, error=exc.code, data=exc.data)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


async def rate_unavailable_handler(request: Request, exc: ExchangeRateUnavailable) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path}: exchange rate unavailable: {exc}")
    body = UnlockResponse(
        success=False,
        message="Exchange rate temporarily unavailable, please retry shortly",
        error="exchange_rate_unavailable",
    )
    return JSONResponse(status_code=503, content=body.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(UnlockError, unlock_error_handler)
    app.add_exception_handler(ExchangeRateUnavailable, rate_unavailable_handler)
