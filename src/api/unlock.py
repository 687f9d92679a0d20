# coding: utf-8
"""
Address Unlock API endpoints

Handles:
- Unlock initiation (mobile money, card, deal code)
- Unlock status and payment status polling
- Fee breakdown for a property
- Appreciation feedback, cancellation, booking from a 30% unlock
- Guest deal codes, host requests, admin analytics
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from loguru import logger
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.api_key_auth import verify_api_key
from src.api.auth import get_current_user
from src.api.errors import UnlockResponse
from src.core.exceptions import UnlockError
from src.database.engine import get_session
from src.database.models import AppreciationLevel, PaymentType, UnlockPaymentMethod, User
from src.services.exchange_rate_service import ExchangeRateUnavailable
from src.services.unlock_orchestrator import (
    BookingRequest,
    UnlockOrchestrator,
    UnlockPaymentRequest,
    get_unlock_orchestrator,
)

# Create router
router = APIRouter(prefix="/unlocks", tags=["unlocks"])

# Per-route limits on top of the global one
limiter = Limiter(key_func=get_remote_address)

# Domain errors are rendered by the registered exception handlers
PASSTHROUGH = (HTTPException, UnlockError, ExchangeRateUnavailable)


# ===========================
# REQUEST MODELS
# ===========================


class InitiateUnlockRequest(BaseModel):
    """Request to unlock a property address"""

    property_id: int
    payment_method: UnlockPaymentMethod
    payment_type: Optional[PaymentType] = None  # "momo" | "cc"; omitted with a deal code
    deal_code: Optional[str] = None
    phone_number: Optional[str] = None
    momo_provider: Optional[str] = None  # "MTN" | "AIRTEL" | ...
    country_code: Optional[str] = None  # ISO2, e.g. "RW"
    payment_amount: Optional[Decimal] = None  # informational, never charged


class AppreciationRequest(BaseModel):
    level: AppreciationLevel
    feedback: Optional[str] = Field(None, max_length=2000)


class CancelUnlockRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)


class CreateBookingRequest(BaseModel):
    check_in: date
    check_out: date
    guests: int = 1
    total_price: Decimal
    message: Optional[str] = None
    special_requests: Optional[str] = None


class ValidateDealCodeRequest(BaseModel):
    code: str


# ===========================
# ENDPOINTS
# ===========================


@router.post("/initiate", response_model=UnlockResponse)
@limiter.limit("10/minute")
async def initiate_unlock(
    request: Request,  # Required by limiter
    body: InitiateUnlockRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
):
    """
    Start unlocking a property address

    Returns:
        UnlockResponse with unlock_id, payment_status and payment_url (card)
    """
    try:
        result = await orchestrator.initiate_unlock_payment(
            session,
            user.id,
            UnlockPaymentRequest(**body.model_dump()),
        )

        if result.deal_code_used:
            message = "Property unlocked with deal code"
        elif result.is_existing:
            message = "Unlock payment already in progress"
        else:
            message = "Unlock payment initiated"

        return UnlockResponse(success=True, message=message, data=result.to_dict())

    except PASSTHROUGH:
        raise
    except Exception as e:
        logger.exception(f"Error initiating unlock for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to initiate unlock")


@router.get("/mine", response_model=UnlockResponse)
async def get_my_unlocks(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
):
    try:
        unlocks = await orchestrator.get_user_unlocks(session, user.id)
        return UnlockResponse(
            success=True,
            message="Unlocks retrieved",
            data={"unlocks": unlocks, "total": len(unlocks)},
        )
    except PASSTHROUGH:
        raise
    except Exception as e:
        logger.exception(f"Error listing unlocks for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get unlocks")


@router.get("/deal-codes", response_model=UnlockResponse)
async def get_my_deal_codes(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
):
    try:
        data = await orchestrator.ledger.get_user_deal_codes(session, user.id)
        return UnlockResponse(success=True, message="Deal codes retrieved", data=data)
    except PASSTHROUGH:
        raise
    except Exception as e:
        logger.exception(f"Error listing deal codes for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get deal codes")


@router.post("/deal-codes/validate", response_model=UnlockResponse)
@limiter.limit("20/minute")
async def validate_deal_code(
    request: Request,  # Required by limiter
    body: ValidateDealCodeRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
):
    """Check a deal code without redeeming it"""
    try:
        validation = await orchestrator.ledger.validate(session, body.code, user.id)
        return UnlockResponse(
            success=validation.valid,
            message="Deal code is valid" if validation.valid else validation.reason,
            error=validation.rejection.value if validation.rejection else None,
            data=validation.to_dict(),
        )
    except PASSTHROUGH:
        raise
    except Exception as e:
        logger.exception(f"Error validating deal code for user {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to validate deal code")


@router.get("/host/requests", response_model=UnlockResponse)
async def get_host_requests(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
):
    """Guests who unlocked the current user's properties"""
    try:
        requests = await orchestrator.get_host_unlock_requests(session, user.id)
        return UnlockResponse(
            success=True,
            message="Unlock requests retrieved",
            data={"requests": requests, "total": len(requests)},
        )
    except PASSTHROUGH:
        raise
    except Exception as e:
        logger.exception(f"Error listing unlock requests for host {user.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get unlock requests")


@router.get("/admin/analytics", response_model=UnlockResponse)
async def get_admin_analytics(
    status: Optional[str] = Query(None),
    method: Optional[UnlockPaymentMethod] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    api_key: str = Depends(verify_api_key),
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
):
    try:
        data = await orchestrator.get_admin_unlock_analytics(
            session,
            status=status.upper() if status else None,
            method=method.value if method else None,
            limit=limit,
            offset=offset,
        )
        return UnlockResponse(success=True, message="Unlock analytics", data=data)
    except PASSTHROUGH:
        raise
    except Exception as e:
        logger.exception(f"Error building unlock analytics: {e}")
        raise HTTPException(status_code=500, detail="Failed to get analytics")


@router.get("/payments/{unlock_id}", response_model=UnlockResponse)
async def get_payment_status(
    unlock_id: str,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
):
    """Payment status of an unlock, reconciled with the gateway while in flight"""
    try:
        data = await orchestrator.check_payment_status(session, unlock_id, user.id)
        return UnlockResponse(success=True, message=f"Payment {data['payment_status']}", data=data)
    except PASSTHROUGH:
        raise
    except Exception as e:
        logger.exception(f"Error checking payment of {unlock_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to check payment status")


@router.get("/{property_id}/status", response_model=UnlockResponse)
async def get_unlock_status(
    property_id: int,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
):
    """
    Unlock state for a property

    Address and host contact are only returned once payment is COMPLETED.
    """
    try:
        data = await orchestrator.get_unlock_status(session, property_id, user.id)
        message = "Property unlocked" if data["is_unlocked"] else "Property not unlocked"
        return UnlockResponse(success=True, message=message, data=data)
    except PASSTHROUGH:
        raise
    except Exception as e:
        logger.exception(f"Error getting unlock status of property {property_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get unlock status")


@router.get("/{property_id}/fee", response_model=UnlockResponse)
async def get_unlock_fee(
    property_id: int,
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
):
    """Both unlock methods priced at the current exchange rate (public)"""
    try:
        data = await orchestrator.get_unlock_fee(session, property_id)
        return UnlockResponse(success=True, message="Unlock fees calculated", data=data)
    except PASSTHROUGH:
        raise
    except Exception as e:
        logger.exception(f"Error calculating unlock fee for property {property_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to calculate unlock fee")


@router.post("/{unlock_id}/appreciation", response_model=UnlockResponse)
async def submit_appreciation(
    unlock_id: str,
    body: AppreciationRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
):
    try:
        data = await orchestrator.submit_appreciation(
            session, unlock_id, user.id, body.level, body.feedback
        )
        message = "Thank you for your feedback"
        if data["deal_code"]:
            message += ", a deal code has been issued"
        return UnlockResponse(success=True, message=message, data=data)
    except PASSTHROUGH:
        raise
    except Exception as e:
        logger.exception(f"Error submitting appreciation for {unlock_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to submit feedback")


@router.post("/{unlock_id}/cancel", response_model=UnlockResponse)
async def cancel_unlock(
    unlock_id: str,
    body: CancelUnlockRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
):
    try:
        data = await orchestrator.cancel_unlock_request(session, unlock_id, user.id, body.reason)
        return UnlockResponse(success=True, message="Unlock cancelled", data=data)
    except PASSTHROUGH:
        raise
    except Exception as e:
        logger.exception(f"Error cancelling {unlock_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to cancel unlock")


@router.post("/{unlock_id}/booking", response_model=UnlockResponse)
async def create_booking(
    unlock_id: str,
    body: CreateBookingRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    orchestrator: UnlockOrchestrator = Depends(get_unlock_orchestrator),
):
    """Convert a completed 30% unlock into a booking"""
    try:
        data = await orchestrator.create_booking_from_unlock(
            session, user.id, unlock_id, BookingRequest(**body.model_dump())
        )
        message = "Booking already exists" if data["is_existing"] else "Booking created"
        return UnlockResponse(success=True, message=message, data=data)
    except PASSTHROUGH:
        raise
    except Exception as e:
        logger.exception(f"Error creating booking from {unlock_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to create booking")
