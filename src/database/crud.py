"""
CRUD operations for the Property Unlock service

Async database operations using SQLAlchemy 2.0. Functions here never commit;
the caller owns the transaction.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.models import (
    User,
    Property,
    Booking,
    PropertyAddressUnlock,
    DealCode,
    DealCodeUsage,
    AddressUnlockRefund,
    UnlockActivityLog,
    UnlockEventType,
    PaymentStatus,
)

logger = logging.getLogger(__name__)


# ===========================
# USERS & PROPERTIES
# ===========================


async def get_user_by_id(session: AsyncSession, user_id: int) -> Optional[User]:
    return await session.get(User, user_id)


async def get_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    """
    Get user by email (case-insensitive)

    Args:
        session: Database session
        email: Email address from the auth token

    Returns:
        User or None
    """
    stmt = select(User).where(func.lower(User.email) == email.lower())
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_property_by_id(session: AsyncSession, property_id: int) -> Optional[Property]:
    return await session.get(Property, property_id)


# ===========================
# UNLOCKS
# ===========================


async def get_unlock_for_user_property(
    session: AsyncSession, user_id: int, property_id: int
) -> Optional[PropertyAddressUnlock]:
    """Get the (unique) unlock record of a user for a property"""
    stmt = select(PropertyAddressUnlock).where(
        PropertyAddressUnlock.user_id == user_id,
        PropertyAddressUnlock.property_id == property_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_unlock_by_unlock_id(
    session: AsyncSession, unlock_id: str
) -> Optional[PropertyAddressUnlock]:
    stmt = select(PropertyAddressUnlock).where(PropertyAddressUnlock.unlock_id == unlock_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_unlock_by_reference(
    session: AsyncSession, reference: str
) -> Optional[PropertyAddressUnlock]:
    """Get unlock by gateway transaction reference"""
    stmt = select(PropertyAddressUnlock).where(
        PropertyAddressUnlock.transaction_reference == reference
    )
    result = await session.execute(stmt)
    return result.scalars().first()


async def get_user_unlocks(
    session: AsyncSession, user_id: int
) -> List[Tuple[PropertyAddressUnlock, Property]]:
    """All unlocks of a guest, newest first, with their property"""
    stmt = (
        select(PropertyAddressUnlock, Property)
        .join(Property, Property.id == PropertyAddressUnlock.property_id)
        .where(PropertyAddressUnlock.user_id == user_id)
        .order_by(PropertyAddressUnlock.created_at.desc())
    )
    result = await session.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]


async def get_host_unlocks(
    session: AsyncSession,
    host_id: int,
    statuses: Optional[List[PaymentStatus]] = None,
) -> List[Tuple[PropertyAddressUnlock, Property, User]]:
    """
    Unlocks of a host's properties with the guest who unlocked them

    Args:
        session: Database session
        host_id: Host user ID
        statuses: Restrict to these payment statuses

    Returns:
        List of (unlock, property, guest), newest first
    """
    stmt = (
        select(PropertyAddressUnlock, Property, User)
        .join(Property, Property.id == PropertyAddressUnlock.property_id)
        .join(User, User.id == PropertyAddressUnlock.user_id)
        .where(Property.host_id == host_id)
        .order_by(PropertyAddressUnlock.created_at.desc())
    )
    if statuses:
        stmt = stmt.where(
            PropertyAddressUnlock.payment_status.in_([s.value for s in statuses])
        )

    result = await session.execute(stmt)
    return [(row[0], row[1], row[2]) for row in result.all()]


async def list_unlocks(
    session: AsyncSession,
    status: Optional[str] = None,
    payment_method: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Tuple[PropertyAddressUnlock, Property, User]]:
    """Paginated unlocks for the admin dashboard"""
    stmt = (
        select(PropertyAddressUnlock, Property, User)
        .join(Property, Property.id == PropertyAddressUnlock.property_id)
        .join(User, User.id == PropertyAddressUnlock.user_id)
        .order_by(PropertyAddressUnlock.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    if status:
        stmt = stmt.where(PropertyAddressUnlock.payment_status == status)
    if payment_method:
        stmt = stmt.where(PropertyAddressUnlock.payment_method == payment_method)

    result = await session.execute(stmt)
    return [(row[0], row[1], row[2]) for row in result.all()]


async def get_unlock_overview(session: AsyncSession) -> Dict[str, Any]:
    """
    Aggregate unlock statistics

    Returns:
        Dict with totals by status and method, completed revenue,
        deal code and refund totals
    """
    by_status_rows = await session.execute(
        select(PropertyAddressUnlock.payment_status, func.count())
        .group_by(PropertyAddressUnlock.payment_status)
    )
    by_status = {status: count for status, count in by_status_rows.all()}

    by_method_rows = await session.execute(
        select(PropertyAddressUnlock.payment_method, func.count())
        .group_by(PropertyAddressUnlock.payment_method)
    )
    by_method = {method: count for method, count in by_method_rows.all()}

    revenue = await session.execute(
        select(
            func.coalesce(func.sum(PropertyAddressUnlock.payment_amount_local), 0),
            func.coalesce(func.sum(PropertyAddressUnlock.payment_amount_usd), 0),
        ).where(PropertyAddressUnlock.payment_status == PaymentStatus.COMPLETED.value)
    )
    revenue_local, revenue_usd = revenue.one()

    codes_issued = await session.scalar(select(func.count()).select_from(DealCode))
    codes_used = await session.scalar(select(func.count()).select_from(DealCodeUsage))
    refunds_total = await session.scalar(
        select(func.coalesce(func.sum(AddressUnlockRefund.refund_amount), 0))
    )

    return {
        "total_unlocks": sum(by_status.values()),
        "by_status": by_status,
        "by_method": by_method,
        "revenue_local": Decimal(str(revenue_local)),
        "revenue_usd": Decimal(str(revenue_usd)),
        "deal_codes_issued": codes_issued or 0,
        "deal_codes_used": codes_used or 0,
        "refunds_requested_local": Decimal(str(refunds_total or 0)),
    }


async def add_unlock_activity(
    session: AsyncSession,
    unlock: PropertyAddressUnlock,
    event_type: UnlockEventType,
    details: Optional[Dict[str, Any]] = None,
) -> UnlockActivityLog:
    """
    Append an activity event for an unlock (flushed with the caller's transaction)
    """
    entry = UnlockActivityLog(
        unlock_id=unlock.unlock_id,
        user_id=unlock.user_id,
        property_id=unlock.property_id,
        event_type=event_type.value,
        details=details,
    )
    session.add(entry)
    return entry


async def get_unlock_activity(
    session: AsyncSession, unlock_id: str
) -> List[UnlockActivityLog]:
    stmt = (
        select(UnlockActivityLog)
        .where(UnlockActivityLog.unlock_id == unlock_id)
        .order_by(UnlockActivityLog.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ===========================
# REFUNDS & BOOKINGS
# ===========================


async def get_refund_for_unlock(
    session: AsyncSession, unlock_id: str
) -> Optional[AddressUnlockRefund]:
    stmt = select(AddressUnlockRefund).where(AddressUnlockRefund.unlock_id == unlock_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_booking_for_unlock(session: AsyncSession, unlock_id: str) -> Optional[Booking]:
    stmt = select(Booking).where(Booking.unlock_id == unlock_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
