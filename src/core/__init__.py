"""
Core module - unlock errors and the payment state machine.
"""

from src.core.exceptions import (
    AlreadyAppreciated,
    AlreadyCancelled,
    AlreadyUnlocked,
    GatewayDispatchFailed,
    IllegalTransition,
    InvalidDealCode,
    MethodNotSupported,
    MissingPhoneNumber,
    PaymentNotCompleted,
    PendingPaymentNotCancellable,
    PropertyNotFound,
    Unauthorized,
    UnlockError,
    UnlockNotFound,
)

__all__ = [
    "AlreadyAppreciated",
    "AlreadyCancelled",
    "AlreadyUnlocked",
    "GatewayDispatchFailed",
    "IllegalTransition",
    "InvalidDealCode",
    "MethodNotSupported",
    "MissingPhoneNumber",
    "PaymentNotCompleted",
    "PendingPaymentNotCancellable",
    "PropertyNotFound",
    "Unauthorized",
    "UnlockError",
    "UnlockNotFound",
]
