"""
Unit tests for the unlock payment state machine
"""

import pytest
from datetime import datetime, UTC
from decimal import Decimal
from types import SimpleNamespace

from src.core.exceptions import IllegalTransition
from src.core.unlock_states import (
    Cancelled,
    Completed,
    Failed,
    Pending,
    Submitted,
    apply_gateway_status,
    cancel,
    complete,
    fail,
    is_in_flight,
    state_of,
    submit,
)
from src.database.models import PaymentStatus


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def test_happy_path():
    state = submit(Pending())
    state = complete(state, NOW)

    assert isinstance(state, Completed)
    assert state.unlocked_at == NOW
    assert state.status == PaymentStatus.COMPLETED

    cancelled = cancel(state, Decimal("318450"))
    assert cancelled.status == PaymentStatus.CANCELLED
    assert cancelled.refund_amount == Decimal("318450")


def test_pending_can_complete_or_fail_directly():
    assert isinstance(complete(Pending(), NOW), Completed)
    assert isinstance(fail(Pending()), Failed)


@pytest.mark.parametrize(
    "state, target",
    [
        (Completed(unlocked_at=NOW), PaymentStatus.FAILED),
        (Completed(unlocked_at=NOW), PaymentStatus.SUBMITTED),
        (Completed(unlocked_at=NOW), PaymentStatus.COMPLETED),
        (Failed(), PaymentStatus.COMPLETED),
        (Failed(), PaymentStatus.SUBMITTED),
        (Cancelled(), PaymentStatus.COMPLETED),
        (Submitted(), PaymentStatus.SUBMITTED),
        (Pending(), PaymentStatus.PENDING),
        (Pending(), PaymentStatus.CANCELLED),
    ],
)
def test_illegal_gateway_transitions(state, target):
    with pytest.raises(IllegalTransition) as exc_info:
        apply_gateway_status(state, target, NOW)

    assert exc_info.value.current == state.status.value
    assert exc_info.value.target == target.value


def test_only_completed_can_be_cancelled():
    for state in (Pending(), Submitted(), Failed(), Cancelled()):
        with pytest.raises(IllegalTransition):
            cancel(state)


def test_in_flight():
    assert is_in_flight(Pending())
    assert is_in_flight(Submitted())
    assert not is_in_flight(Completed(unlocked_at=NOW))
    assert not is_in_flight(Failed())
    assert not is_in_flight(Cancelled())


@pytest.mark.parametrize(
    "status, expected",
    [
        ("PENDING", Pending),
        ("SUBMITTED", Submitted),
        ("COMPLETED", Completed),
        ("FAILED", Failed),
        ("CANCELLED", Cancelled),
    ],
)
def test_state_of_record(status, expected):
    record = SimpleNamespace(payment_status=status, unlocked_at=NOW, updated_at=NOW)

    assert isinstance(state_of(record), expected)
