# coding: utf-8
"""
Payment Webhook Handlers

Callbacks that move unlock payments to their final status:
- /webhooks/pawapay: PawaPay deposit callbacks (mobile money)
- /webhooks/xentripay: XentriPay collection callbacks (card)
- /webhooks/payment-callback: generic {reference, status} relay (X-API-Key)

Security:
- Gateway callbacks carry an HMAC-SHA256 hex signature of the raw body
- Signature failures answer 403; every other failure is logged and
  answered 200 so gateways do not retry into the same error
"""
import hashlib
import hmac
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Header, Request
from loguru import logger
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config.config import ENVIRONMENT, PAWAPAY_WEBHOOK_SECRET, XENTRIPAY_WEBHOOK_SECRET
from src.api.api_key_auth import verify_api_key
from src.database.engine import get_session
from src.database.models import PaymentStatus, PaymentType
from src.services.unlock_orchestrator import UnlockOrchestrator, get_unlock_orchestrator


router = APIRouter(prefix="/webhooks", tags=["webhooks"])

ACK = {"status": "ok"}


class PaymentCallbackRequest(BaseModel):
    """Status relayed by the platform for a transaction reference"""

    reference: str
    status: str


def verify_signature(body: bytes, signature: Optional[str], secret: str, provider: str) -> None:
    """
    Check the HMAC-SHA256 hex digest of the raw body

    Without a configured secret the check is skipped outside production.

    Raises:
        HTTPException 403: signature missing or wrong
    """
    if not secret:
        if ENVIRONMENT == "production":
            logger.error(f"{provider} webhook secret not configured, rejecting callback")
            raise HTTPException(status_code=403, detail="Webhook signature not configured")
        logger.warning(f"{provider} webhook secret not configured, skipping signature check")
        return

    if not signature:
        logger.error(f"Missing {provider} signature header")
        raise HTTPException(status_code=403, detail="Missing signature header")

    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip().lower()):
        logger.error(f"Invalid {provider} webhook signature")
        raise HTTPException(status_code=403, detail="Invalid signature")


async def _apply(
    orchestrator: UnlockOrchestrator,
    session: AsyncSession,
    rail: PaymentType,
    reference: Optional[str],
    raw_status: Optional[str],
) -> None:
    if not reference:
        logger.warning(f"{rail.value} callback without a reference ignored")
        return

    status = orchestrator.gateways.get(rail).normalize_status(raw_status)
    if status is None:
        logger.warning(f"{rail.value} callback for {reference} with unmapped status {raw_status!r}")
        return

    outcome = await orchestrator.process_payment_callback(session, reference, status)
    logger.info(
        f"{rail.value} callback {reference}: {raw_status} -> found={outcome.found}, "
        f"applied={outcome.applied}, status={outcome.payment_status}"
    )


@router.post("/pawapay")
async def pawapay_deposit_callback(
    request: Request,
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
    x_pawapay_signature: str | None = Header(None),
) -> Dict[str, Any]:
    """
    PawaPay deposit callback

    Body: {"depositId": "...", "status": "COMPLETED" | "FAILED" | ..., ...}
    """
    body = await request.body()
    verify_signature(body, x_pawapay_signature, PAWAPAY_WEBHOOK_SECRET, "PawaPay")

    try:
        payload = await request.json()
        logger.info(
            f"PawaPay callback: depositId={payload.get('depositId')}, status={payload.get('status')}"
        )
        await _apply(
            orchestrator, session, PaymentType.MOMO, payload.get("depositId"), payload.get("status")
        )
    except Exception as e:
        logger.exception(f"Error processing PawaPay callback: {e}")

    return ACK


@router.post("/xentripay")
async def xentripay_collection_callback(
    request: Request,
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
    x_xentripay_signature: str | None = Header(None),
) -> Dict[str, Any]:
    """
    XentriPay collection callback

    Body: {"refid": "...", "status": "SUCCESS" | "FAILED" | "PENDING", ...}
    """
    body = await request.body()
    verify_signature(body, x_xentripay_signature, XENTRIPAY_WEBHOOK_SECRET, "XentriPay")

    try:
        payload = await request.json()
        logger.info(f"XentriPay callback: refid={payload.get('refid')}, status={payload.get('status')}")
        await _apply(
            orchestrator, session, PaymentType.CARD, payload.get("refid"), payload.get("status")
        )
    except Exception as e:
        logger.exception(f"Error processing XentriPay callback: {e}")

    return ACK


@router.post("/payment-callback")
async def payment_callback(
    callback: PaymentCallbackRequest,
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """
    Generic status relay

    Body: {"reference": "UNLOCK-...", "status": "COMPLETED"}
    """
    try:
        status = PaymentStatus(callback.status.upper())
    except ValueError:
        logger.warning(f"Payment callback for {callback.reference} with unknown status {callback.status!r}")
        return ACK

    try:
        outcome = await orchestrator.process_payment_callback(session, callback.reference, status)
        logger.info(
            f"Payment callback {callback.reference}: {status.value} -> found={outcome.found}, "
            f"applied={outcome.applied}"
        )
    except Exception as e:
        logger.exception(f"Error processing payment callback {callback.reference}: {e}")

    return ACK
