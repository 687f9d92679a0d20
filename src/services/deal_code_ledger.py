# coding: utf-8
"""
Deal Code Ledger

Deal codes let a guest unlock another property for free after an unsatisfying
or cancelled 30% unlock.

Features:
- Issue codes (one free unlock, expire after 180 days)
- Validate with a precise rejection reason
- Consume exactly once per unlock (usage row + conditional decrement)
- Usage history per user

Nothing here commits: issuing and consuming always happen inside the
transaction of the unlock operation that triggers them.
"""
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.unlock_pricing import DEFAULT_PRICING, UnlockPricing
from src.core.exceptions import InvalidDealCode
from src.database.models import DealCode, DealCodeUsage


CODE_ALPHABET = string.ascii_uppercase + string.digits


class DealCodeRejection(str, Enum):
    """Validation failures, in the order they are checked"""

    NOT_FOUND = "not_found"
    WRONG_OWNER = "wrong_owner"
    INACTIVE = "inactive"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"


REJECTION_REASONS = {
    DealCodeRejection.NOT_FOUND: "Deal code does not exist",
    DealCodeRejection.WRONG_OWNER: "This deal code belongs to another user",
    DealCodeRejection.INACTIVE: "Deal code is no longer active",
    DealCodeRejection.EXHAUSTED: "All unlocks have been used",
    DealCodeRejection.EXPIRED: "Deal code has expired",
}


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from the database"""
    return value if value.tzinfo else value.replace(tzinfo=UTC)


@dataclass
class DealCodeValidation:
    valid: bool
    deal_code: Optional[DealCode] = None
    rejection: Optional[DealCodeRejection] = None

    @property
    def reason(self) -> Optional[str]:
        return REJECTION_REASONS[self.rejection] if self.rejection else None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"valid": self.valid, "reason": self.reason}
        if self.valid and self.deal_code:
            data["code"] = self.deal_code.code
            data["remaining_unlocks"] = self.deal_code.remaining_unlocks
            data["expires_at"] = as_utc(self.deal_code.expires_at).isoformat()
        return data


class DealCodeLedger:
    """Issues, validates and consumes deal codes"""

    def __init__(
        self,
        pricing: UnlockPricing = DEFAULT_PRICING,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.pricing = pricing
        self.clock = clock or (lambda: datetime.now(UTC))

    @staticmethod
    def normalize(code: str) -> str:
        return (code or "").strip().upper()

    def generate_code(self) -> str:
        """UNLOCK-<epoch ms>-<7 random uppercase alphanumerics>"""
        timestamp = int(self.clock().timestamp() * 1000)
        suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(7))
        return f"UNLOCK-{timestamp}-{suffix}"

    async def get_by_code(self, session: AsyncSession, code: str) -> Optional[DealCode]:
        stmt = select(DealCode).where(DealCode.code == self.normalize(code))
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def validate(
        self, session: AsyncSession, code: str, user_id: int
    ) -> DealCodeValidation:
        """
        Check a code for a user

        Order: existence -> ownership -> active -> remaining -> expiry.
        The first failing check is reported.
        """
        deal_code = await self.get_by_code(session, code) if code else None

        if deal_code is None:
            rejection = DealCodeRejection.NOT_FOUND
        elif deal_code.user_id != user_id:
            rejection = DealCodeRejection.WRONG_OWNER
        elif not deal_code.is_active:
            rejection = DealCodeRejection.INACTIVE
        elif deal_code.remaining_unlocks <= 0:
            rejection = DealCodeRejection.EXHAUSTED
        elif as_utc(deal_code.expires_at) <= self.clock():
            rejection = DealCodeRejection.EXPIRED
        else:
            return DealCodeValidation(valid=True, deal_code=deal_code)

        return DealCodeValidation(valid=False, deal_code=deal_code, rejection=rejection)

    async def require_valid(self, session: AsyncSession, code: str, user_id: int) -> DealCode:
        """
        Raises:
            InvalidDealCode: with the specific rejection reason
        """
        validation = await self.validate(session, code, user_id)
        if not validation.valid:
            logger.info(f"Deal code rejected for user {user_id}: {validation.reason}")
            raise InvalidDealCode(validation.reason)
        return validation.deal_code

    async def issue(
        self, session: AsyncSession, user_id: int, source_property_id: int
    ) -> DealCode:
        """Create a fresh code for `user_id`, flushed but not committed"""
        now = self.clock()
        deal_code = DealCode(
            code=self.generate_code(),
            user_id=user_id,
            source_property_id=source_property_id,
            remaining_unlocks=self.pricing.deal_code_initial_unlocks,
            is_active=True,
            generated_at=now,
            expires_at=now + self.pricing.deal_code_validity,
        )
        session.add(deal_code)
        await session.flush()

        logger.info(
            f"Deal code {deal_code.code} issued to user {user_id} "
            f"(source property {source_property_id}, expires {deal_code.expires_at.date()})"
        )
        return deal_code

    async def consume(
        self,
        session: AsyncSession,
        deal_code: DealCode,
        unlock_id: str,
        property_id: int,
        user_id: int,
    ) -> DealCodeUsage:
        """
        Redeem one unlock from a code for `unlock_id`

        Idempotent per unlock: an existing usage row is returned without a
        second decrement.

        Raises:
            InvalidDealCode: no unlocks left (lost a concurrent redemption)
        """
        result = await session.execute(
            select(DealCodeUsage).where(DealCodeUsage.unlock_id == unlock_id)
        )
        existing = result.scalar_one_or_none()
        if existing:
            logger.debug(f"Deal code usage for {unlock_id} already recorded, skipping")
            return existing

        decrement = await session.execute(
            update(DealCode)
            .where(
                DealCode.id == deal_code.id,
                DealCode.remaining_unlocks > 0,
                DealCode.is_active.is_(True),
            )
            .values(remaining_unlocks=DealCode.remaining_unlocks - 1)
            .execution_options(synchronize_session=False)
        )
        if decrement.rowcount != 1:
            raise InvalidDealCode(REJECTION_REASONS[DealCodeRejection.EXHAUSTED])

        usage = DealCodeUsage(
            deal_code_id=deal_code.id,
            unlock_id=unlock_id,
            property_id=property_id,
            user_id=user_id,
            used_at=self.clock(),
        )
        session.add(usage)
        await session.flush()
        await session.refresh(deal_code)

        logger.info(
            f"Deal code {deal_code.code} redeemed for {unlock_id} "
            f"(remaining {deal_code.remaining_unlocks})"
        )
        return usage

    async def get_user_deal_codes(self, session: AsyncSession, user_id: int) -> Dict[str, Any]:
        """
        All codes of a user with usage history

        Returns:
            {"deal_codes": [...], "total": n, "active": n, "used": n}
        """
        result = await session.execute(
            select(DealCode)
            .where(DealCode.user_id == user_id)
            .order_by(DealCode.generated_at.desc())
        )
        codes: List[DealCode] = list(result.scalars().all())

        usage_by_code: Dict[int, List[DealCodeUsage]] = {}
        if codes:
            usage_rows = await session.execute(
                select(DealCodeUsage)
                .where(DealCodeUsage.deal_code_id.in_([c.id for c in codes]))
                .order_by(DealCodeUsage.used_at)
            )
            for usage in usage_rows.scalars().all():
                usage_by_code.setdefault(usage.deal_code_id, []).append(usage)

        now = self.clock()
        items = []
        for code in codes:
            is_expired = as_utc(code.expires_at) <= now
            items.append({
                "code": code.code,
                "source_property_id": code.source_property_id,
                "remaining_unlocks": code.remaining_unlocks,
                "is_active": code.is_active,
                "is_expired": is_expired,
                "is_valid": code.is_active and code.remaining_unlocks > 0 and not is_expired,
                "generated_at": as_utc(code.generated_at).isoformat(),
                "expires_at": as_utc(code.expires_at).isoformat(),
                "usage_history": [
                    {
                        "unlock_id": usage.unlock_id,
                        "property_id": usage.property_id,
                        "used_at": as_utc(usage.used_at).isoformat(),
                    }
                    for usage in usage_by_code.get(code.id, [])
                ],
            })

        return {
            "deal_codes": items,
            "total": len(items),
            "active": sum(1 for item in items if item["is_valid"]),
            "used": sum(1 for item in items if item["usage_history"]),
        }
