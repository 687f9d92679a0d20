# coding: utf-8
"""
Unlock Orchestrator

Drives an address unlock from initiation to completion and beyond:

- Initiation: fee computation, deal code redemption, gateway dispatch
- Gateway callbacks and status polling (compare-and-set transitions)
- Status query that reveals address and host contact only after payment
- Appreciation feedback, cancellation with refund and deal code
- Booking creation from a 30% deposit unlock
- Guest, host and admin listings

Collaborators are injected so tests can swap the rate feed, gateways and
mail delivery. Every public operation owns its transaction.
"""
import re
import secrets
import string
from dataclasses import asdict, dataclass
from datetime import date, datetime, UTC
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

from loguru import logger
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.config import FRONTEND_URL, LOCAL_CURRENCY
from config.sentry import capture_payment_anomaly
from config.unlock_pricing import DEFAULT_PRICING, UnlockPricing
from src.core.exceptions import (
    AlreadyAppreciated,
    AlreadyCancelled,
    AlreadyUnlocked,
    GatewayDispatchFailed,
    IllegalTransition,
    MethodNotSupported,
    PaymentNotCompleted,
    PendingPaymentNotCancellable,
    PropertyNotFound,
    Unauthorized,
    UnlockError,
    UnlockNotFound,
)
from src.core.unlock_states import (
    Completed,
    apply_gateway_status,
    cancel,
    is_in_flight,
    state_of,
)
from src.database.crud import (
    add_unlock_activity,
    get_booking_for_unlock,
    get_host_unlocks,
    get_property_by_id,
    get_unlock_by_reference,
    get_unlock_by_unlock_id,
    get_unlock_for_user_property,
    get_unlock_overview,
    get_user_by_id,
    get_user_unlocks,
    list_unlocks,
)
from src.database.models import (
    DEAL_CODE_PROVIDER,
    AddressUnlockRefund,
    AppreciationLevel,
    Booking,
    DealCode,
    PaymentStatus,
    PaymentType,
    Property,
    PropertyAddressUnlock,
    RefundStatus,
    UnlockEventType,
    UnlockPaymentMethod,
    User,
)
from src.services.deal_code_ledger import DealCodeLedger, as_utc
from src.services.notification_service import UnlockNotificationService
from src.services.payment_gateways import (
    GatewayCharge,
    GatewayError,
    GatewayReferenceUnknown,
    GatewayRegistry,
    GatewayTimeout,
    get_gateway_registry,
)
from src.services.payment_gateways.base import default_reference
from src.services.unlock_fee_calculator import (
    CENTS,
    calculate_fee_breakdown,
    calculate_refund,
    calculate_unlock_fee,
    require_monthly_price,
)


ID_ALPHABET = string.ascii_lowercase + string.digits
BOOKING_ALPHABET = string.ascii_uppercase + string.digits
MAPS_EMBED_URL = "https://maps.google.com/maps?q={query}&t=k&z=15&ie=UTF8&iwloc=&output=embed"
BOOKING_PAYMENT_STATUS = "PARTIAL"

# Levels that earn a deal code on a 30% unlock
DEAL_CODE_LEVELS = (AppreciationLevel.NEUTRAL, AppreciationLevel.NOT_APPRECIATED)


# ===========================
# REQUESTS & RESULTS
# ===========================


@dataclass
class UnlockPaymentRequest:
    property_id: int
    payment_method: UnlockPaymentMethod
    payment_type: Optional[PaymentType] = None
    deal_code: Optional[str] = None
    phone_number: Optional[str] = None
    momo_provider: Optional[str] = None
    country_code: Optional[str] = None
    # Client-computed amount, informational only
    payment_amount: Optional[Decimal] = None


@dataclass
class BookingRequest:
    check_in: date
    check_out: date
    guests: int
    total_price: Decimal
    message: Optional[str] = None
    special_requests: Optional[str] = None


@dataclass
class UnlockInitiation:
    unlock_id: str
    transaction_reference: str
    payment_status: str
    payment_method: str
    payment_type: str
    payment_provider: str
    amount_local: float
    amount_usd: float
    exchange_rate: float
    currency: str
    payment_url: Optional[str] = None
    is_existing: bool = False
    deal_code_used: Optional[str] = None
    unlock_data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        unlock_data = data.pop("unlock_data") or {}
        # Deal-code redemptions carry the revealed address and host contact
        return {**unlock_data, **data}


@dataclass
class CallbackOutcome:
    found: bool
    applied: bool
    unlock_id: Optional[str] = None
    previous_status: Optional[str] = None
    payment_status: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-") or "property"


def _amounts(unlock: PropertyAddressUnlock) -> Dict[str, Any]:
    return {
        "amount_local": float(unlock.payment_amount_local),
        "amount_usd": float(unlock.payment_amount_usd),
        "exchange_rate": float(unlock.exchange_rate_used),
        "currency": unlock.currency,
    }


def _deal_code_summary(deal_code: Optional[DealCode]) -> Optional[Dict[str, Any]]:
    if deal_code is None:
        return None
    return {
        "code": deal_code.code,
        "remaining_unlocks": deal_code.remaining_unlocks,
        "expires_at": _iso(deal_code.expires_at),
    }


class UnlockOrchestrator:
    """
    Address unlock workflow

    Args:
        rate_provider: Object with `async get_rate(base, quote) -> ExchangeRate`
        gateways: Payment rails by PaymentType
        ledger: Deal code ledger
        notifier: Email notifications
        pricing: Fee and deal code constants
        frontend_url: Base URL for redirect and booking payment links
        currency: Local currency charged
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        rate_provider,
        gateways: GatewayRegistry,
        ledger: DealCodeLedger,
        notifier: UnlockNotificationService,
        pricing: UnlockPricing = DEFAULT_PRICING,
        frontend_url: str = FRONTEND_URL,
        currency: str = LOCAL_CURRENCY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.rate_provider = rate_provider
        self.gateways = gateways
        self.ledger = ledger
        self.notifier = notifier
        self.pricing = pricing
        self.frontend_url = frontend_url.rstrip("/")
        self.currency = currency
        self.clock = clock or (lambda: datetime.now(UTC))

    # ===========================
    # IDENTIFIERS
    # ===========================

    def _new_unlock_id(self) -> str:
        timestamp = int(self.clock().timestamp() * 1000)
        suffix = "".join(secrets.choice(ID_ALPHABET) for _ in range(9))
        return f"unlock-{timestamp}-{suffix}"

    def _new_booking_id(self) -> str:
        timestamp = int(self.clock().timestamp() * 1000)
        suffix = "".join(secrets.choice(BOOKING_ALPHABET) for _ in range(6))
        return f"BK-{timestamp}-{suffix}"

    # ===========================
    # INITIATION
    # ===========================

    async def initiate_unlock_payment(
        self, session: AsyncSession, user_id: int, request: UnlockPaymentRequest
    ) -> UnlockInitiation:
        """
        Start (or resume) unlocking a property address

        Existing record of the user for the property:
            COMPLETED without deal code -> AlreadyUnlocked
            COMPLETED with deal code    -> replaced by the redeemed unlock
            PENDING / SUBMITTED         -> returned as is
            FAILED                      -> replaced by a fresh attempt
            CANCELLED                   -> AlreadyUnlocked

        Raises:
            PropertyNotFound, AlreadyUnlocked, InvalidDealCode,
            MethodNotSupported, MissingPhoneNumber, GatewayDispatchFailed
        """
        property_ = await get_property_by_id(session, request.property_id)
        if property_ is None:
            raise PropertyNotFound()

        user = await get_user_by_id(session, user_id)
        if user is None:
            raise Unauthorized("User not found")

        existing = await get_unlock_for_user_property(session, user_id, property_.id)
        if existing is not None:
            status = PaymentStatus(existing.payment_status)

            if status == PaymentStatus.CANCELLED:
                raise AlreadyUnlocked(
                    "This unlock was cancelled and cannot be restarted",
                    data={"unlock_id": existing.unlock_id},
                )
            if status == PaymentStatus.COMPLETED and not request.deal_code:
                raise AlreadyUnlocked(data={"unlock_id": existing.unlock_id})
            if status in (PaymentStatus.PENDING, PaymentStatus.SUBMITTED):
                logger.info(
                    f"Unlock {existing.unlock_id} already in progress for user {user_id}, "
                    f"property {property_.id}"
                )
                return self._initiation_from(existing, is_existing=True)

        if request.deal_code:
            return await self._redeem_deal_code(session, user, property_, existing, request)

        return await self._start_paid_unlock(session, user, property_, existing, request)

    async def _redeem_deal_code(
        self,
        session: AsyncSession,
        user: User,
        property_: Property,
        existing: Optional[PropertyAddressUnlock],
        request: UnlockPaymentRequest,
    ) -> UnlockInitiation:
        user_id, property_id = user.id, property_.id
        method = UnlockPaymentMethod(request.payment_method)
        require_monthly_price(property_.price_per_month)

        deal_code = await self.ledger.require_valid(session, request.deal_code, user_id)

        now = self.clock()
        try:
            if existing is not None:
                logger.info(
                    f"Replacing unlock {existing.unlock_id} ({existing.payment_status}) "
                    f"with deal code redemption"
                )
                await session.delete(existing)
                await session.flush()

            unlock = PropertyAddressUnlock(
                unlock_id=self._new_unlock_id(),
                property_id=property_id,
                user_id=user_id,
                payment_method=method.value,
                payment_amount_local=Decimal("0"),
                payment_amount_usd=Decimal("0"),
                exchange_rate_used=Decimal("0"),
                currency=self.currency,
                payment_type=PaymentType.DEAL_CODE.value,
                payment_provider=DEAL_CODE_PROVIDER,
                transaction_reference=default_reference(user_id, property_id, now),
                payment_status=PaymentStatus.COMPLETED.value,
                unlocked_at=now,
                deal_code_id=deal_code.id,
            )
            session.add(unlock)
            await session.flush()

            await self.ledger.consume(session, deal_code, unlock.unlock_id, property_id, user_id)
            await add_unlock_activity(
                session, unlock, UnlockEventType.DEAL_CODE_REDEEMED, {"code": deal_code.code}
            )
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return await self._resolve_conflict(session, user_id, property_id)
        except UnlockError:
            await session.rollback()
            raise

        logger.info(
            f"Property {property_id} unlocked for user {user_id} with deal code {deal_code.code} "
            f"({unlock.unlock_id})"
        )
        initiation = self._initiation_from(unlock, deal_code_used=deal_code.code)
        initiation.unlock_data = await self._unlocked_payload(session, unlock, property_)
        return initiation

    async def _start_paid_unlock(
        self,
        session: AsyncSession,
        user: User,
        property_: Property,
        existing: Optional[PropertyAddressUnlock],
        request: UnlockPaymentRequest,
    ) -> UnlockInitiation:
        user_id, property_id = user.id, property_.id
        method = UnlockPaymentMethod(request.payment_method)

        if request.payment_type is None:
            raise MethodNotSupported("payment_type is required without a deal code")
        try:
            gateway = self.gateways.get(PaymentType(request.payment_type))
        except (GatewayError, ValueError):
            raise MethodNotSupported(f"Unsupported payment type: {request.payment_type}")

        require_monthly_price(property_.price_per_month)
        rate = await self.rate_provider.get_rate("USD", self.currency)
        fee = calculate_unlock_fee(property_.price_per_month, method, rate.rate, self.pricing)

        if request.payment_amount is not None and Decimal(str(request.payment_amount)) != fee.amount_local:
            logger.warning(
                f"Client amount {request.payment_amount} differs from computed fee "
                f"{fee.amount_local} for property {property_id}, using computed fee"
            )

        now = self.clock()
        unlock_id = self._new_unlock_id()
        charge = GatewayCharge(
            reference=gateway.make_reference(user_id, property_id, now),
            unlock_id=unlock_id,
            user_id=user_id,
            property_id=property_id,
            property_name=property_.name,
            amount_local=fee.amount_local,
            amount_usd=fee.amount_usd,
            currency=self.currency,
            customer_email=user.email,
            customer_name=user.full_name,
            customer_phone=user.phone,
            payer_phone=request.phone_number,
            momo_provider=request.momo_provider,
            country_code=request.country_code,
            redirect_url=f"{self.frontend_url}/properties/{property_id}/unlock-success",
        )
        gateway.validate_charge(charge)

        try:
            if existing is not None:
                logger.info(f"Replacing failed unlock {existing.unlock_id} with a new attempt")
                await session.delete(existing)
                await session.flush()

            unlock = PropertyAddressUnlock(
                unlock_id=unlock_id,
                property_id=property_id,
                user_id=user_id,
                payment_method=method.value,
                payment_amount_local=Decimal(fee.amount_local),
                payment_amount_usd=fee.amount_usd,
                exchange_rate_used=fee.exchange_rate,
                currency=self.currency,
                payment_type=gateway.rail.value,
                payment_provider=gateway.provider_label(charge),
                transaction_reference=charge.reference,
                payment_status=PaymentStatus.PENDING.value,
            )
            session.add(unlock)
            await session.flush()
            await add_unlock_activity(
                session,
                unlock,
                UnlockEventType.INITIATED,
                {"amount_local": fee.amount_local, "rate_source": rate.source},
            )
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return await self._resolve_conflict(session, user_id, property_id)

        logger.info(
            f"Unlock {unlock_id} created: user={user_id}, property={property_id}, "
            f"method={method.value}, amount={fee.amount_local} {self.currency} via {gateway.name}"
        )

        try:
            dispatch = await gateway.dispatch(charge)
        except GatewayTimeout as e:
            logger.error(f"Dispatch of unlock {unlock_id} timed out, leaving PENDING: {e}")
            await add_unlock_activity(
                session, unlock, UnlockEventType.DISPATCH_FAILED, {"timeout": True, "error": str(e)}
            )
            await session.commit()
            raise GatewayDispatchFailed(
                "Payment provider did not respond; the payment status will be confirmed shortly",
                unlock_id=unlock_id,
                payment_status=PaymentStatus.PENDING.value,
            )
        except GatewayError as e:
            logger.error(f"Dispatch of unlock {unlock_id} rejected: {e}")
            await self._transition(session, unlock, PaymentStatus.FAILED, {"source": "dispatch"})
            await add_unlock_activity(
                session, unlock, UnlockEventType.DISPATCH_FAILED, {"error": str(e)}
            )
            await session.commit()
            raise GatewayDispatchFailed(
                f"Payment could not be started: {e}",
                unlock_id=unlock_id,
                payment_status=PaymentStatus.FAILED.value,
            )

        await session.execute(
            update(PropertyAddressUnlock)
            .where(PropertyAddressUnlock.id == unlock.id)
            .values(
                transaction_reference=dispatch.provider_reference or charge.reference,
                payment_url=dispatch.payment_url,
            )
            .execution_options(synchronize_session=False)
        )
        await add_unlock_activity(
            session,
            unlock,
            UnlockEventType.DISPATCHED,
            {"gateway": gateway.name, "status": dispatch.status.value},
        )
        if dispatch.status != PaymentStatus.PENDING:
            try:
                await self._transition(session, unlock, dispatch.status, {"source": "dispatch"})
            except IllegalTransition as e:
                # a callback already moved the record
                logger.info(f"Dispatch status for {unlock_id} ignored: {e.message}")
        await session.commit()
        await session.refresh(unlock)

        return self._initiation_from(unlock)

    async def _resolve_conflict(
        self, session: AsyncSession, user_id: int, property_id: int
    ) -> UnlockInitiation:
        """A concurrent request created the (user, property) record first"""
        winner = await get_unlock_for_user_property(session, user_id, property_id)
        if winner is None:
            raise UnlockError("Could not create unlock, please retry")

        logger.info(f"Concurrent unlock for user {user_id}, property {property_id}: using {winner.unlock_id}")
        if is_in_flight(state_of(winner)):
            return self._initiation_from(winner, is_existing=True)
        raise AlreadyUnlocked(data={"unlock_id": winner.unlock_id})

    def _initiation_from(
        self,
        unlock: PropertyAddressUnlock,
        is_existing: bool = False,
        deal_code_used: Optional[str] = None,
    ) -> UnlockInitiation:
        return UnlockInitiation(
            unlock_id=unlock.unlock_id,
            transaction_reference=unlock.transaction_reference,
            payment_status=unlock.payment_status,
            payment_method=unlock.payment_method,
            payment_type=unlock.payment_type,
            payment_provider=unlock.payment_provider,
            amount_local=float(unlock.payment_amount_local),
            amount_usd=float(unlock.payment_amount_usd),
            exchange_rate=float(unlock.exchange_rate_used),
            currency=unlock.currency,
            payment_url=unlock.payment_url,
            is_existing=is_existing,
            deal_code_used=deal_code_used,
        )

    # ===========================
    # PAYMENT STATUS
    # ===========================

    async def _transition(
        self,
        session: AsyncSession,
        unlock: PropertyAddressUnlock,
        target: PaymentStatus,
        details: Dict[str, Any],
    ) -> bool:
        """
        Compare-and-set the payment status (no commit)

        Returns:
            True if this call moved the record, False if another writer
            changed the status first

        Raises:
            IllegalTransition: target not reachable from the current status
        """
        current = state_of(unlock)
        now = self.clock()
        new_state = apply_gateway_status(current, target, now)

        values: Dict[str, Any] = {"payment_status": new_state.status.value}
        if isinstance(new_state, Completed):
            values["unlocked_at"] = new_state.unlocked_at

        result = await session.execute(
            update(PropertyAddressUnlock)
            .where(
                PropertyAddressUnlock.id == unlock.id,
                PropertyAddressUnlock.payment_status == current.status.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        await add_unlock_activity(
            session,
            unlock,
            UnlockEventType.STATUS_CHANGED,
            {"from": current.status.value, "to": new_state.status.value, **details},
        )
        return True

    async def process_payment_callback(
        self, session: AsyncSession, reference: str, status: PaymentStatus
    ) -> CallbackOutcome:
        """
        Apply a gateway-reported status to the unlock owning `reference`

        Replays and out-of-order statuses are ignored. Only the call that
        moves a record to COMPLETED notifies admins.
        """
        try:
            target = PaymentStatus(str(getattr(status, "value", status)).upper())
        except ValueError:
            logger.warning(f"Ignoring callback for {reference} with unknown status {status!r}")
            return CallbackOutcome(found=False, applied=False)

        unlock = await get_unlock_by_reference(session, reference)
        if unlock is None:
            logger.warning(f"Payment callback for unknown reference {reference}")
            return CallbackOutcome(found=False, applied=False)

        unlock_id = unlock.unlock_id
        previous = unlock.payment_status
        ignored = CallbackOutcome(
            found=True, applied=False, unlock_id=unlock_id,
            previous_status=previous, payment_status=previous,
        )

        if target == PaymentStatus.PENDING or previous == target.value:
            logger.debug(f"Callback {target.value} for {unlock_id} is a no-op (currently {previous})")
            return ignored

        try:
            applied = await self._transition(session, unlock, target, {"source": "callback"})
        except IllegalTransition as e:
            if previous == PaymentStatus.FAILED.value and target == PaymentStatus.COMPLETED:
                capture_payment_anomaly(
                    "Payment completed after unlock was marked FAILED",
                    unlock_id=unlock_id,
                    reference=reference,
                )
            logger.warning(f"Callback for {unlock_id} ignored: {e.message}")
            return ignored

        if not applied:
            await session.rollback()
            logger.info(f"Callback {target.value} for {unlock_id} lost a concurrent update")
            return CallbackOutcome(found=True, applied=False, unlock_id=unlock_id, previous_status=previous)

        await session.commit()
        await session.refresh(unlock)
        logger.info(f"Unlock {unlock_id}: {previous} -> {target.value}")

        if target == PaymentStatus.COMPLETED:
            await self._notify_completed(session, unlock)

        return CallbackOutcome(
            found=True,
            applied=True,
            unlock_id=unlock_id,
            previous_status=previous,
            payment_status=target.value,
        )

    async def reconcile_payment(
        self, session: AsyncSession, unlock: PropertyAddressUnlock
    ) -> Optional[CallbackOutcome]:
        """
        Poll the owning gateway for an in-flight unlock

        A PENDING record the gateway has never heard of is failed once it is
        older than the confirmation grace period.
        """
        if not is_in_flight(state_of(unlock)):
            return None

        try:
            gateway = self.gateways.get(PaymentType(unlock.payment_type))
        except (GatewayError, ValueError):
            return None

        reference = unlock.transaction_reference
        if unlock.payment_type == PaymentType.CARD.value and not unlock.payment_url:
            # Card status is keyed by the provider refid; a timed-out dispatch
            # never got one, and with no checkout link the guest cannot have paid
            return await self._fail_if_stale(session, unlock, f"{gateway.name} issued no refid for {reference}")

        try:
            status = await gateway.fetch_status(reference)
        except GatewayReferenceUnknown:
            return await self._fail_if_stale(session, unlock, f"{gateway.name} has no record of {reference}")
        except GatewayError as e:
            logger.warning(f"Could not reconcile {unlock.unlock_id} with {gateway.name}: {e}")
            return None

        if status is None or status == PaymentStatus.PENDING:
            return None
        return await self.process_payment_callback(session, reference, status)

    async def _fail_if_stale(
        self, session: AsyncSession, unlock: PropertyAddressUnlock, reason: str
    ) -> Optional[CallbackOutcome]:
        """Fail a PENDING unlock once it is older than the confirmation grace period"""
        age = self.clock() - as_utc(unlock.created_at)
        if unlock.payment_status != PaymentStatus.PENDING.value or age <= self.pricing.pending_confirmation_grace:
            return None
        logger.warning(f"{reason} after {age}, failing unlock {unlock.unlock_id}")
        return await self.process_payment_callback(session, unlock.transaction_reference, PaymentStatus.FAILED)

    async def _owned_unlock(
        self, session: AsyncSession, unlock_id: str, user_id: int
    ) -> PropertyAddressUnlock:
        unlock = await get_unlock_by_unlock_id(session, unlock_id)
        if unlock is None:
            raise UnlockNotFound()
        if unlock.user_id != user_id:
            raise Unauthorized()
        return unlock

    async def check_payment_status(
        self, session: AsyncSession, unlock_id: str, user_id: int
    ) -> Dict[str, Any]:
        unlock = await self._owned_unlock(session, unlock_id, user_id)

        if is_in_flight(state_of(unlock)):
            await self.reconcile_payment(session, unlock)
            unlock = await self._owned_unlock(session, unlock_id, user_id)
            await session.refresh(unlock)

        status = unlock.payment_status
        return {
            "unlock_id": unlock.unlock_id,
            "property_id": unlock.property_id,
            "payment_status": status,
            "payment_method": unlock.payment_method,
            "payment_type": unlock.payment_type,
            "payment_url": unlock.payment_url,
            "transaction_reference": unlock.transaction_reference,
            "can_retry": status in (PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value),
            "unlocked_at": _iso(unlock.unlocked_at),
            **_amounts(unlock),
        }

    async def get_unlock_status(
        self, session: AsyncSession, property_id: int, user_id: int
    ) -> Dict[str, Any]:
        """
        Unlock state of a property for a guest

        Address and host contact are only included once payment is COMPLETED.
        """
        unlock = await get_unlock_for_user_property(session, user_id, property_id)
        if unlock is None:
            return {"is_unlocked": False, "property_id": property_id, "payment_status": None}

        if unlock.payment_status != PaymentStatus.COMPLETED.value:
            return {
                "is_unlocked": False,
                "property_id": property_id,
                "unlock_id": unlock.unlock_id,
                "payment_status": unlock.payment_status,
                "payment_url": unlock.payment_url if is_in_flight(state_of(unlock)) else None,
            }

        property_ = await get_property_by_id(session, property_id)
        if property_ is None:
            raise PropertyNotFound()
        return await self._unlocked_payload(session, unlock, property_)

    async def _unlocked_payload(
        self, session: AsyncSession, unlock: PropertyAddressUnlock, property_: Property
    ) -> Dict[str, Any]:
        """Address, map link and host contact of a COMPLETED unlock"""
        host = await get_user_by_id(session, property_.host_id)
        address = property_.full_address or property_.location or ""

        return {
            "is_unlocked": True,
            "unlock_id": unlock.unlock_id,
            "property_id": property_.id,
            "payment_status": unlock.payment_status,
            "payment_method": unlock.payment_method,
            "address": address,
            "coordinates": {"latitude": property_.latitude, "longitude": property_.longitude},
            "google_maps_url": MAPS_EMBED_URL.format(query=quote(address)),
            "host_contact_info": {
                "host_id": property_.host_id,
                "host_name": host.full_name if host else None,
                "host_phone": host.phone if host else None,
                "host_email": host.email if host else None,
                "host_profile_image": host.profile_image if host else None,
                "preferred_contact_method": host.preferred_contact_method if host else None,
            },
            "unlocked_at": _iso(unlock.unlocked_at),
            "appreciation_submitted": unlock.appreciation_submitted,
            **_amounts(unlock),
        }

    async def get_unlock_fee(self, session: AsyncSession, property_id: int) -> Dict[str, Any]:
        """Both unlock methods priced for a property at the current rate"""
        property_ = await get_property_by_id(session, property_id)
        if property_ is None:
            raise PropertyNotFound()

        rate = await self.rate_provider.get_rate("USD", self.currency)
        breakdown = calculate_fee_breakdown(property_.price_per_month, rate.rate, self.pricing)
        breakdown.update({
            "property_id": property_id,
            "currency": self.currency,
            "exchange_rate_source": rate.source,
        })
        return breakdown

    # ===========================
    # FEEDBACK & CANCELLATION
    # ===========================

    async def submit_appreciation(
        self,
        session: AsyncSession,
        unlock_id: str,
        user_id: int,
        level: AppreciationLevel,
        feedback: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Record the guest's verdict on an unlocked property (once)

        A neutral or negative verdict on a 30% unlock earns a deal code.

        Raises:
            UnlockNotFound, Unauthorized, PaymentNotCompleted, AlreadyAppreciated
        """
        try:
            level = AppreciationLevel(level)
        except ValueError:
            raise UnlockError(f"Invalid appreciation level: {level}")
        if level == AppreciationLevel.CANCELLED:
            raise UnlockError("Use cancellation to cancel an unlock")

        unlock = await self._owned_unlock(session, unlock_id, user_id)
        if unlock.appreciation_submitted:
            raise AlreadyAppreciated()
        if unlock.payment_status != PaymentStatus.COMPLETED.value:
            raise PaymentNotCompleted()

        property_id = unlock.property_id
        method = UnlockPaymentMethod(unlock.payment_method)
        now = self.clock()

        result = await session.execute(
            update(PropertyAddressUnlock)
            .where(
                PropertyAddressUnlock.id == unlock.id,
                PropertyAddressUnlock.appreciation_submitted.is_(False),
                PropertyAddressUnlock.payment_status == PaymentStatus.COMPLETED.value,
            )
            .values(
                appreciation_submitted=True,
                appreciation_level=level.value,
                appreciation_feedback=feedback,
                appreciation_submitted_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            raise AlreadyAppreciated()

        await add_unlock_activity(
            session, unlock, UnlockEventType.APPRECIATION_SUBMITTED, {"level": level.value}
        )

        deal_code = None
        if level in DEAL_CODE_LEVELS and method == UnlockPaymentMethod.THREE_MONTH_30_PERCENT:
            deal_code = await self.ledger.issue(session, user_id, property_id)
            await add_unlock_activity(
                session, unlock, UnlockEventType.DEAL_CODE_ISSUED, {"code": deal_code.code}
            )

        await session.commit()
        await session.refresh(unlock)
        logger.info(
            f"Appreciation {level.value} recorded for {unlock_id}"
            + (f", deal code {deal_code.code} issued" if deal_code else "")
        )

        return {
            "unlock_id": unlock_id,
            "appreciation_level": level.value,
            "deal_code": _deal_code_summary(deal_code),
        }

    async def cancel_unlock_request(
        self,
        session: AsyncSession,
        unlock_id: str,
        user_id: int,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Cancel a completed unlock before giving feedback

        A 30% unlock gets a refund request (paid minus the service fee) and a
        deal code. The non-refundable fee gets neither.

        Raises:
            UnlockNotFound, Unauthorized, AlreadyCancelled,
            PendingPaymentNotCancellable, AlreadyAppreciated
        """
        unlock = await self._owned_unlock(session, unlock_id, user_id)

        if unlock.payment_status == PaymentStatus.CANCELLED.value:
            raise AlreadyCancelled()
        if unlock.payment_status != PaymentStatus.COMPLETED.value:
            raise PendingPaymentNotCancellable()
        if unlock.appreciation_submitted:
            raise AlreadyAppreciated("Feedback already submitted, the unlock can no longer be cancelled")

        method = UnlockPaymentMethod(unlock.payment_method)
        refund_eligible = method == UnlockPaymentMethod.THREE_MONTH_30_PERCENT
        refund_amount = (
            calculate_refund(unlock.payment_amount_local, self.pricing) if refund_eligible else None
        )
        cancelled = cancel(state_of(unlock), refund_amount)
        property_id = unlock.property_id
        payment_type = unlock.payment_type
        now = self.clock()

        result = await session.execute(
            update(PropertyAddressUnlock)
            .where(
                PropertyAddressUnlock.id == unlock.id,
                PropertyAddressUnlock.payment_status == PaymentStatus.COMPLETED.value,
                PropertyAddressUnlock.appreciation_submitted.is_(False),
            )
            .values(
                payment_status=cancelled.status.value,
                appreciation_submitted=True,
                appreciation_level=AppreciationLevel.CANCELLED.value,
                appreciation_feedback=reason,
                appreciation_submitted_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            raise AlreadyCancelled()

        await add_unlock_activity(
            session, unlock, UnlockEventType.CANCELLED, {"reason": reason, "refund_eligible": refund_eligible}
        )

        deal_code = None
        if refund_eligible:
            deal_code = await self.ledger.issue(session, user_id, property_id)
            session.add(AddressUnlockRefund(
                unlock_id=unlock_id,
                user_id=user_id,
                refund_amount=cancelled.refund_amount,
                refund_status=RefundStatus.PENDING.value,
                refund_method=payment_type,
                requested_at=now,
            ))
            await add_unlock_activity(
                session, unlock, UnlockEventType.DEAL_CODE_ISSUED, {"code": deal_code.code}
            )
            await add_unlock_activity(
                session,
                unlock,
                UnlockEventType.REFUND_REQUESTED,
                {"amount": str(cancelled.refund_amount)},
            )

        await session.commit()
        await session.refresh(unlock)
        logger.info(
            f"Unlock {unlock_id} cancelled by user {user_id} "
            f"(refund={cancelled.refund_amount}, deal_code={deal_code.code if deal_code else None})"
        )

        property_ = await get_property_by_id(session, property_id)
        guest = await get_user_by_id(session, user_id)
        host = await get_user_by_id(session, property_.host_id) if property_ else None
        if property_ and guest:
            await self._notify(
                f"cancellation of {unlock_id}",
                self.notifier.notify_unlock_cancelled,
                unlock, property_, guest, host, cancelled.refund_amount, deal_code,
            )

        return {
            "unlock_id": unlock_id,
            "payment_status": cancelled.status.value,
            "refund_eligible": refund_eligible,
            "refund_amount": float(cancelled.refund_amount) if refund_eligible else None,
            "deal_code": _deal_code_summary(deal_code),
        }

    # ===========================
    # BOOKING
    # ===========================

    async def create_booking_from_unlock(
        self,
        session: AsyncSession,
        user_id: int,
        unlock_id: str,
        request: BookingRequest,
    ) -> Dict[str, Any]:
        """
        Turn a completed 30% unlock into a booking

        The unlock deposit covers 30% of the booking total; the guest is sent
        to pay the rest. One booking per unlock.
        """
        unlock = await self._owned_unlock(session, unlock_id, user_id)
        if unlock.payment_method != UnlockPaymentMethod.THREE_MONTH_30_PERCENT.value:
            raise MethodNotSupported("Only 30% deposit unlocks can be converted into a booking")
        if unlock.payment_status != PaymentStatus.COMPLETED.value:
            raise PaymentNotCompleted()

        property_ = await get_property_by_id(session, unlock.property_id)
        if property_ is None:
            raise PropertyNotFound()

        existing = await get_booking_for_unlock(session, unlock_id)
        if existing is not None:
            return self._booking_payload(existing, property_, is_existing=True)

        if request.check_out <= request.check_in:
            raise UnlockError("Check-out must be after check-in")
        if request.guests < 1:
            raise UnlockError("At least one guest is required")
        total = Decimal(str(request.total_price)).quantize(CENTS, rounding=ROUND_HALF_UP)
        if total <= 0:
            raise UnlockError("Total price must be positive")

        paid = (total * self.pricing.deposit_share).quantize(CENTS, rounding=ROUND_HALF_UP)
        booking = Booking(
            id=self._new_booking_id(),
            property_id=property_.id,
            guest_id=user_id,
            check_in=request.check_in,
            check_out=request.check_out,
            guests=request.guests,
            total_price=total,
            paid_amount=paid,
            remaining_amount=total - paid,
            payment_status=BOOKING_PAYMENT_STATUS,
            status="pending",
            message=request.message,
            special_requests=request.special_requests,
            unlock_id=unlock_id,
        )
        session.add(booking)
        await add_unlock_activity(
            session, unlock, UnlockEventType.BOOKING_CREATED, {"booking_id": booking.id}
        )

        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            existing = await get_booking_for_unlock(session, unlock_id)
            if existing is None:
                raise
            property_ = await get_property_by_id(session, existing.property_id)
            return self._booking_payload(existing, property_, is_existing=True)

        logger.info(f"Booking {booking.id} created from unlock {unlock_id}: total={total}, paid={paid}")

        payload = self._booking_payload(booking, property_)
        guest = await get_user_by_id(session, user_id)
        if guest:
            await self._notify(
                f"booking {booking.id}",
                self.notifier.notify_booking_created,
                booking, property_, guest, payload["payment_url"],
            )
        return payload

    def _booking_payload(
        self, booking: Booking, property_: Property, is_existing: bool = False
    ) -> Dict[str, Any]:
        payment_url = (
            f"{self.frontend_url}/spaces/{_slugify(property_.name)}-{property_.id}"
            f"/confirm-and-pay?bookingId={booking.id}"
        )
        return {
            "booking_id": booking.id,
            "unlock_id": booking.unlock_id,
            "property_id": booking.property_id,
            "check_in": booking.check_in.isoformat(),
            "check_out": booking.check_out.isoformat(),
            "guests": booking.guests,
            "total_price": float(booking.total_price),
            "paid_amount": float(booking.paid_amount),
            "remaining_amount": float(booking.remaining_amount),
            "payment_status": booking.payment_status,
            "status": booking.status,
            "payment_url": payment_url,
            "is_existing": is_existing,
        }

    # ===========================
    # LISTINGS
    # ===========================

    async def get_user_unlocks(self, session: AsyncSession, user_id: int) -> List[Dict[str, Any]]:
        """A guest's unlocks; the address is included only for COMPLETED ones"""
        items = []
        for unlock, property_ in await get_user_unlocks(session, user_id):
            completed = unlock.payment_status == PaymentStatus.COMPLETED.value
            items.append({
                "unlock_id": unlock.unlock_id,
                "property_id": property_.id,
                "property_name": property_.name,
                "address": (property_.full_address or property_.location) if completed else None,
                "payment_status": unlock.payment_status,
                "payment_method": unlock.payment_method,
                "payment_type": unlock.payment_type,
                "appreciation_submitted": unlock.appreciation_submitted,
                "appreciation_level": unlock.appreciation_level,
                "unlocked_at": _iso(unlock.unlocked_at),
                "created_at": _iso(unlock.created_at),
                **_amounts(unlock),
            })
        return items

    async def get_host_unlock_requests(
        self, session: AsyncSession, host_id: int
    ) -> List[Dict[str, Any]]:
        """Guests who unlocked a host's properties (no payment amounts)"""
        rows = await get_host_unlocks(
            session, host_id, statuses=[PaymentStatus.COMPLETED, PaymentStatus.CANCELLED]
        )
        return [
            {
                "unlock_id": unlock.unlock_id,
                "property_id": property_.id,
                "property_name": property_.name,
                "payment_status": unlock.payment_status,
                "guest": {
                    "id": guest.id,
                    "name": guest.full_name,
                    "email": guest.email,
                    "phone": guest.phone,
                    "profile_image": guest.profile_image,
                },
                "appreciation_level": unlock.appreciation_level,
                "appreciation_feedback": unlock.appreciation_feedback,
                "unlocked_at": _iso(unlock.unlocked_at),
            }
            for unlock, property_, guest in rows
        ]

    async def get_admin_unlock_analytics(
        self,
        session: AsyncSession,
        status: Optional[str] = None,
        method: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        overview = await get_unlock_overview(session)
        rows = await list_unlocks(session, status=status, payment_method=method, limit=limit, offset=offset)

        return {
            "overview": {
                **overview,
                "revenue_local": float(overview["revenue_local"]),
                "revenue_usd": float(overview["revenue_usd"]),
                "refunds_requested_local": float(overview["refunds_requested_local"]),
            },
            "unlocks": [
                {
                    "unlock_id": unlock.unlock_id,
                    "property_id": property_.id,
                    "property_name": property_.name,
                    "user_id": guest.id,
                    "user_email": guest.email,
                    "payment_status": unlock.payment_status,
                    "payment_method": unlock.payment_method,
                    "payment_type": unlock.payment_type,
                    "payment_provider": unlock.payment_provider,
                    "transaction_reference": unlock.transaction_reference,
                    "appreciation_level": unlock.appreciation_level,
                    "created_at": _iso(unlock.created_at),
                    "unlocked_at": _iso(unlock.unlocked_at),
                    **_amounts(unlock),
                }
                for unlock, property_, guest in rows
            ],
            "limit": limit,
            "offset": offset,
        }

    # ===========================
    # NOTIFICATIONS
    # ===========================

    async def _notify_completed(self, session: AsyncSession, unlock: PropertyAddressUnlock) -> None:
        property_ = await get_property_by_id(session, unlock.property_id)
        guest = await get_user_by_id(session, unlock.user_id)
        if property_ is None or guest is None:
            return
        await self._notify(
            f"completion of {unlock.unlock_id}",
            self.notifier.notify_unlock_completed,
            unlock, property_, guest,
        )

    async def _notify(self, description: str, send, *args) -> None:
        try:
            await send(*args)
        except Exception:
            logger.exception(f"Notification for {description} failed")


# Global instance
_orchestrator: Optional[UnlockOrchestrator] = None


def get_unlock_orchestrator() -> UnlockOrchestrator:
    """Get or create the global orchestrator"""
    global _orchestrator
    if _orchestrator is None:
        from src.services.exchange_rate_service import get_exchange_rate_service

        _orchestrator = UnlockOrchestrator(
            rate_provider=get_exchange_rate_service(),
            gateways=get_gateway_registry(),
            ledger=DealCodeLedger(),
            notifier=UnlockNotificationService(),
        )
    return _orchestrator
