"""
Database models for the Property Unlock service

SQLAlchemy 2.0 models with full type hints
"""

from datetime import datetime, date, UTC
from typing import Optional
from enum import Enum
from decimal import Decimal

from sqlalchemy import (
    String,
    Text,
    Integer,
    Float,
    Boolean,
    DateTime,
    Date,
    ForeignKey,
    UniqueConstraint,
    Numeric,
    Index,
    JSON,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models"""

    pass


def utc_now() -> datetime:
    return datetime.now(UTC)


# ===========================
# ENUMS
# ===========================


class UnlockPaymentMethod(str, Enum):
    """How the guest pays for an address unlock"""

    NON_REFUNDABLE_FEE = "non_refundable_fee"  # Flat tiered fee
    THREE_MONTH_30_PERCENT = "three_month_30_percent"  # 30% of 3 months incl. tax


class PaymentStatus(str, Enum):
    """Unlock payment lifecycle"""

    PENDING = "PENDING"  # Record persisted, gateway not confirmed
    SUBMITTED = "SUBMITTED"  # Gateway accepted the request
    COMPLETED = "COMPLETED"  # Paid, address revealed
    FAILED = "FAILED"  # Gateway rejected or dispatch failed
    CANCELLED = "CANCELLED"  # Guest cancelled a completed unlock


class PaymentType(str, Enum):
    """Payment rail"""

    MOMO = "momo"  # Mobile money (PawaPay)
    CARD = "cc"  # Hosted card page (XentriPay)
    DEAL_CODE = "deal_code"  # Redeemed deal code, no gateway


class AppreciationLevel(str, Enum):
    """Post-unlock guest feedback"""

    APPRECIATED = "appreciated"
    NEUTRAL = "neutral"
    NOT_APPRECIATED = "not_appreciated"
    CANCELLED = "cancelled"  # Set by cancellation, not submittable


class RefundStatus(str, Enum):
    """Refund processing status"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class UnlockEventType(str, Enum):
    """Append-only unlock activity events"""

    INITIATED = "initiated"
    DEAL_CODE_REDEEMED = "deal_code_redeemed"
    DISPATCHED = "dispatched"
    DISPATCH_FAILED = "dispatch_failed"
    STATUS_CHANGED = "status_changed"
    APPRECIATION_SUBMITTED = "appreciation_submitted"
    DEAL_CODE_ISSUED = "deal_code_issued"
    CANCELLED = "cancelled"
    REFUND_REQUESTED = "refund_requested"
    BOOKING_CREATED = "booking_created"


DEAL_CODE_PROVIDER = "DEAL_CODE"
CARD_PROVIDER = "XENTRIPAY_CARD"


# ===========================
# EXTERNAL ENTITIES
# ===========================
# Owned by the wider platform; only the columns the unlock workflow touches.


class User(Base):
    """Platform user (guest or host)"""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    profile_image: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    preferred_contact_method: Mapped[Optional[str]] = mapped_column(
        String(20), nullable=True, comment="phone, email or whatsapp"
    )
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    @property
    def full_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or self.email

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class Property(Base):
    """Rental property"""

    __tablename__ = "properties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, comment="Public, approximate location"
    )
    full_address: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, comment="Exact address, revealed only after unlock"
    )
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    price_per_month: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True, comment="Monthly price in USD"
    )
    price_per_night: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True, comment="Nightly price in USD"
    )
    host_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)

    def __repr__(self) -> str:
        return f"<Property(id={self.id}, name={self.name})>"


class Booking(Base):
    """Booking, created here only through the unlock bridge"""

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    property_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("properties.id", ondelete="CASCADE"), index=True, nullable=False
    )
    guest_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    check_in: Mapped[date] = mapped_column(Date, nullable=False)
    check_out: Mapped[date] = mapped_column(Date, nullable=False)
    guests: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False
    )
    remaining_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False
    )
    payment_status: Mapped[str] = mapped_column(
        String(20), default="PENDING", nullable=False, comment="PENDING, PARTIAL, PAID"
    )
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    special_requests: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    unlock_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        unique=True,
        nullable=True,
        comment="Address unlock whose 30% payment was applied as deposit",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )


# ===========================
# UNLOCK MODELS
# ===========================


class PropertyAddressUnlock(Base):
    """
    Address unlock record

    One per (user, property). Lifecycle in src/core/unlock_states.py
    """

    __tablename__ = "property_address_unlocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    unlock_id: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, comment="Public id, unlock-<ts>-<rand>"
    )
    property_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("properties.id", ondelete="CASCADE"), index=True, nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )

    # Commercial
    payment_method: Mapped[str] = mapped_column(
        String(40), nullable=False, comment="non_refundable_fee, three_month_30_percent"
    )
    payment_amount_local: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, comment="Charged amount in local currency"
    )
    payment_amount_usd: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, comment="Charged amount in USD"
    )
    exchange_rate_used: Mapped[Decimal] = mapped_column(
        Numeric(14, 4), nullable=False, comment="USD->local rate applied"
    )
    currency: Mapped[str] = mapped_column(String(3), default="RWF", nullable=False)

    # Payment rail
    payment_type: Mapped[str] = mapped_column(
        String(20), nullable=False, comment="momo, cc, deal_code"
    )
    payment_provider: Mapped[str] = mapped_column(
        String(40), nullable=False, comment="MTN_RW, XENTRIPAY_CARD, DEAL_CODE, ..."
    )
    transaction_reference: Mapped[str] = mapped_column(
        String(128), index=True, nullable=False, comment="Gateway lookup key"
    )
    payment_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lifecycle
    payment_status: Mapped[str] = mapped_column(
        String(20), default=PaymentStatus.PENDING.value, index=True, nullable=False
    )
    unlocked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Set only on COMPLETED"
    )

    # Feedback (write-once)
    appreciation_submitted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    appreciation_level: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    appreciation_feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    appreciation_submitted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    deal_code_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("deal_codes.id", ondelete="SET NULL"),
        nullable=True,
        comment="Deal code that paid for this unlock",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "property_id", name="uq_unlock_user_property"),
        Index("idx_unlock_status_created", "payment_status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PropertyAddressUnlock(unlock_id={self.unlock_id}, user_id={self.user_id}, "
            f"property_id={self.property_id}, status={self.payment_status})>"
        )


class DealCode(Base):
    """Single-use, time-limited token for a free unlock"""

    __tablename__ = "deal_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    source_property_id: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="Property whose unlock produced this code"
    )
    remaining_unlocks: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<DealCode(code={self.code}, user_id={self.user_id}, remaining={self.remaining_unlocks})>"


class DealCodeUsage(Base):
    """Append-only redemption audit, one row per redeemed unlock"""

    __tablename__ = "deal_code_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_code_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("deal_codes.id", ondelete="CASCADE"), index=True, nullable=False
    )
    # Plain column: survives replacement of the unlock record
    unlock_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    property_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )


class AddressUnlockRefund(Base):
    """Refund owed after cancelling a 30% unlock"""

    __tablename__ = "address_unlock_refunds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    unlock_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    refund_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, comment="Local currency, paid minus service fee"
    )
    refund_status: Mapped[str] = mapped_column(
        String(20), default=RefundStatus.PENDING.value, nullable=False
    )
    refund_method: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    refund_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class UnlockActivityLog(Base):
    """Append-only unlock event log"""

    __tablename__ = "unlock_activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    unlock_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    property_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
