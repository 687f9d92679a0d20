"""
Unlock payment state machine

    PENDING -> SUBMITTED -> COMPLETED -> CANCELLED
       |           |
       +-----------+------> FAILED

Each state is its own type; transition functions accept only the states
they are legal from and raise IllegalTransition otherwise. The database
keeps the status as a string, `state_of` lifts a record into a state.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import ClassVar, Optional, Union

from src.core.exceptions import IllegalTransition
from src.database.models import PaymentStatus, PropertyAddressUnlock


@dataclass(frozen=True)
class Pending:
    status: ClassVar[PaymentStatus] = PaymentStatus.PENDING


@dataclass(frozen=True)
class Submitted:
    status: ClassVar[PaymentStatus] = PaymentStatus.SUBMITTED


@dataclass(frozen=True)
class Completed:
    unlocked_at: datetime
    status: ClassVar[PaymentStatus] = PaymentStatus.COMPLETED


@dataclass(frozen=True)
class Failed:
    status: ClassVar[PaymentStatus] = PaymentStatus.FAILED


@dataclass(frozen=True)
class Cancelled:
    refund_amount: Optional[Decimal] = None
    status: ClassVar[PaymentStatus] = PaymentStatus.CANCELLED


UnlockState = Union[Pending, Submitted, Completed, Failed, Cancelled]
InFlight = Union[Pending, Submitted]


def _require(state: UnlockState, allowed: tuple, target: PaymentStatus) -> None:
    if not isinstance(state, allowed):
        raise IllegalTransition(state.status.value, target.value)


def submit(state: Pending) -> Submitted:
    _require(state, (Pending,), PaymentStatus.SUBMITTED)
    return Submitted()


def complete(state: InFlight, unlocked_at: datetime) -> Completed:
    _require(state, (Pending, Submitted), PaymentStatus.COMPLETED)
    return Completed(unlocked_at=unlocked_at)


def fail(state: InFlight) -> Failed:
    _require(state, (Pending, Submitted), PaymentStatus.FAILED)
    return Failed()


def cancel(state: Completed, refund_amount: Optional[Decimal] = None) -> Cancelled:
    _require(state, (Completed,), PaymentStatus.CANCELLED)
    return Cancelled(refund_amount=refund_amount)


def apply_gateway_status(
    state: UnlockState, target: PaymentStatus, at: datetime
) -> UnlockState:
    """
    Move a state according to a gateway-reported status

    Raises:
        IllegalTransition: status not reachable from `state`
            (includes replays of the current status)
    """
    if target == PaymentStatus.SUBMITTED:
        return submit(state)
    if target == PaymentStatus.COMPLETED:
        return complete(state, at)
    if target == PaymentStatus.FAILED:
        return fail(state)
    raise IllegalTransition(state.status.value, target.value)


def is_in_flight(state: UnlockState) -> bool:
    return isinstance(state, (Pending, Submitted))


def state_of(unlock: PropertyAddressUnlock) -> UnlockState:
    """Lift a persisted unlock record into its state"""
    status = PaymentStatus(unlock.payment_status)

    if status == PaymentStatus.PENDING:
        return Pending()
    if status == PaymentStatus.SUBMITTED:
        return Submitted()
    if status == PaymentStatus.COMPLETED:
        return Completed(unlocked_at=unlock.unlocked_at or unlock.updated_at)
    if status == PaymentStatus.FAILED:
        return Failed()
    return Cancelled()
