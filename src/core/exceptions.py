"""
Unlock workflow errors

Each error carries a stable machine-readable code and the HTTP status the API
layer answers with.
"""

from typing import Any, Dict, Optional


class UnlockError(Exception):
    """Base class for all unlock workflow errors"""

    code = "unlock_error"
    status_code = 400

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.data = data


class AlreadyUnlocked(UnlockError):
    code = "already_unlocked"
    status_code = 409

    def __init__(self, message: str = "Property address already unlocked", **kwargs):
        super().__init__(message, **kwargs)


class InvalidDealCode(UnlockError):
    """Deal code rejected; `reason` names the first failing check"""

    code = "invalid_deal_code"
    status_code = 400

    def __init__(self, reason: str, **kwargs):
        super().__init__(reason, **kwargs)
        self.reason = reason


class MethodNotSupported(UnlockError):
    code = "method_not_supported"
    status_code = 400


class MissingPhoneNumber(UnlockError):
    code = "missing_phone_number"
    status_code = 400

    def __init__(self, message: str = "Phone number is required for mobile money payments", **kwargs):
        super().__init__(message, **kwargs)


class GatewayDispatchFailed(UnlockError):
    """
    Payment gateway call failed

    `payment_status` is FAILED when the gateway rejected the charge and
    PENDING when the outcome is unknown (timeout).
    """

    code = "gateway_dispatch_failed"
    status_code = 502

    def __init__(self, message: str, unlock_id: str, payment_status: str, **kwargs):
        kwargs.setdefault("data", {"unlock_id": unlock_id, "payment_status": payment_status})
        super().__init__(message, **kwargs)
        self.unlock_id = unlock_id
        self.payment_status = payment_status


class UnlockNotFound(UnlockError):
    code = "unlock_not_found"
    status_code = 404

    def __init__(self, message: str = "Unlock not found", **kwargs):
        super().__init__(message, **kwargs)


class PropertyNotFound(UnlockError):
    code = "property_not_found"
    status_code = 404

    def __init__(self, message: str = "Property not found", **kwargs):
        super().__init__(message, **kwargs)


class Unauthorized(UnlockError):
    """Unlock belongs to another user"""

    code = "unauthorized"
    status_code = 403

    def __init__(self, message: str = "This unlock belongs to another user", **kwargs):
        super().__init__(message, **kwargs)


class AlreadyAppreciated(UnlockError):
    code = "already_appreciated"
    status_code = 409

    def __init__(self, message: str = "Feedback already submitted for this unlock", **kwargs):
        super().__init__(message, **kwargs)


class PendingPaymentNotCancellable(UnlockError):
    code = "pending_payment_not_cancellable"
    status_code = 409

    def __init__(self, message: str = "Only completed unlocks can be cancelled", **kwargs):
        super().__init__(message, **kwargs)


class AlreadyCancelled(UnlockError):
    code = "already_cancelled"
    status_code = 409

    def __init__(self, message: str = "Unlock already cancelled", **kwargs):
        super().__init__(message, **kwargs)


class PaymentNotCompleted(UnlockError):
    code = "payment_not_completed"
    status_code = 409

    def __init__(self, message: str = "Unlock payment is not completed", **kwargs):
        super().__init__(message, **kwargs)


class IllegalTransition(UnlockError):
    """Requested payment status change is not allowed from the current state"""

    code = "illegal_transition"
    status_code = 409

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move unlock from {current} to {target}")
        self.current = current
        self.target = target
