"""
Tests for deal code issuing, validation and redemption
"""

import re
import pytest
from datetime import timedelta

from sqlalchemy import select

from src.core.exceptions import InvalidDealCode
from src.database.models import DealCode, DealCodeUsage
from src.services.deal_code_ledger import DealCodeRejection


CODE_PATTERN = re.compile(r"^UNLOCK-\d{13}-[A-Z0-9]{7}$")


@pytest.mark.asyncio
async def test_issue_code(db_session, ledger, clock, guest, monthly_property):
    deal_code = await ledger.issue(db_session, guest.id, monthly_property.id)
    await db_session.commit()

    assert CODE_PATTERN.match(deal_code.code)
    assert deal_code.remaining_unlocks == 1
    assert deal_code.is_active
    assert deal_code.source_property_id == monthly_property.id
    assert deal_code.expires_at == clock() + timedelta(days=180)


@pytest.mark.asyncio
async def test_validate_valid_code_case_insensitive(db_session, ledger, guest, monthly_property):
    deal_code = await ledger.issue(db_session, guest.id, monthly_property.id)
    await db_session.commit()

    validation = await ledger.validate(db_session, deal_code.code.lower(), guest.id)

    assert validation.valid
    assert validation.reason is None
    assert validation.to_dict()["remaining_unlocks"] == 1


@pytest.mark.asyncio
async def test_validate_unknown_code(db_session, ledger, guest):
    validation = await ledger.validate(db_session, "UNLOCK-0-NOPE000", guest.id)

    assert not validation.valid
    assert validation.rejection == DealCodeRejection.NOT_FOUND
    assert validation.reason == "Deal code does not exist"


@pytest.mark.asyncio
async def test_validate_other_users_code(db_session, ledger, guest, other_guest, monthly_property):
    deal_code = await ledger.issue(db_session, guest.id, monthly_property.id)
    await db_session.commit()

    validation = await ledger.validate(db_session, deal_code.code, other_guest.id)

    assert validation.rejection == DealCodeRejection.WRONG_OWNER


@pytest.mark.asyncio
async def test_validate_inactive_code(db_session, ledger, guest, monthly_property):
    deal_code = await ledger.issue(db_session, guest.id, monthly_property.id)
    deal_code.is_active = False
    await db_session.commit()

    validation = await ledger.validate(db_session, deal_code.code, guest.id)

    assert validation.rejection == DealCodeRejection.INACTIVE


@pytest.mark.asyncio
async def test_validate_expired_code(db_session, ledger, clock, guest, monthly_property):
    deal_code = await ledger.issue(db_session, guest.id, monthly_property.id)
    await db_session.commit()

    clock.advance(days=180)
    validation = await ledger.validate(db_session, deal_code.code, guest.id)

    assert validation.rejection == DealCodeRejection.EXPIRED
    assert validation.reason == "Deal code has expired"


@pytest.mark.asyncio
async def test_validation_reports_first_failing_check(db_session, ledger, clock, guest, monthly_property):
    """Exhausted and expired: exhaustion is checked first"""
    deal_code = await ledger.issue(db_session, guest.id, monthly_property.id)
    deal_code.remaining_unlocks = 0
    await db_session.commit()
    clock.advance(days=365)

    validation = await ledger.validate(db_session, deal_code.code, guest.id)

    assert validation.rejection == DealCodeRejection.EXHAUSTED


@pytest.mark.asyncio
async def test_require_valid_raises_with_reason(db_session, ledger, guest):
    with pytest.raises(InvalidDealCode) as exc_info:
        await ledger.require_valid(db_session, "missing", guest.id)

    assert exc_info.value.reason == "Deal code does not exist"


@pytest.mark.asyncio
async def test_consume_once(db_session, ledger, guest, monthly_property):
    deal_code = await ledger.issue(db_session, guest.id, monthly_property.id)
    await db_session.commit()

    usage = await ledger.consume(db_session, deal_code, "unlock-1", monthly_property.id, guest.id)
    await db_session.commit()

    assert usage.unlock_id == "unlock-1"
    assert deal_code.remaining_unlocks == 0

    validation = await ledger.validate(db_session, deal_code.code, guest.id)
    assert validation.rejection == DealCodeRejection.EXHAUSTED


@pytest.mark.asyncio
async def test_consume_is_idempotent_per_unlock(db_session, ledger, guest, monthly_property):
    deal_code = await ledger.issue(db_session, guest.id, monthly_property.id)
    deal_code.remaining_unlocks = 2
    await db_session.commit()

    first = await ledger.consume(db_session, deal_code, "unlock-1", monthly_property.id, guest.id)
    second = await ledger.consume(db_session, deal_code, "unlock-1", monthly_property.id, guest.id)
    await db_session.commit()

    assert first.id == second.id
    await db_session.refresh(deal_code)
    assert deal_code.remaining_unlocks == 1

    usages = (await db_session.execute(select(DealCodeUsage))).scalars().all()
    assert len(usages) == 1


@pytest.mark.asyncio
async def test_consume_exhausted_code_fails(db_session, ledger, guest, monthly_property):
    deal_code = await ledger.issue(db_session, guest.id, monthly_property.id)
    await db_session.commit()

    await ledger.consume(db_session, deal_code, "unlock-1", monthly_property.id, guest.id)
    await db_session.commit()
    code_id = deal_code.id

    with pytest.raises(InvalidDealCode):
        await ledger.consume(db_session, deal_code, "unlock-2", monthly_property.id, guest.id)
    await db_session.rollback()

    remaining = await db_session.scalar(select(DealCode.remaining_unlocks).where(DealCode.id == code_id))
    assert remaining == 0


@pytest.mark.asyncio
async def test_user_deal_codes_with_history(db_session, ledger, clock, guest, monthly_property, premium_property):
    used = await ledger.issue(db_session, guest.id, monthly_property.id)
    clock.advance(minutes=1)
    await ledger.issue(db_session, guest.id, premium_property.id)
    await db_session.commit()
    await ledger.consume(db_session, used, "unlock-9", premium_property.id, guest.id)
    await db_session.commit()

    summary = await ledger.get_user_deal_codes(db_session, guest.id)

    assert summary["total"] == 2
    assert summary["active"] == 1
    assert summary["used"] == 1

    newest, oldest = summary["deal_codes"]
    assert newest["is_valid"] and newest["usage_history"] == []
    assert not oldest["is_valid"]
    assert oldest["usage_history"][0]["unlock_id"] == "unlock-9"
    assert oldest["usage_history"][0]["property_id"] == premium_property.id
