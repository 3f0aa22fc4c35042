"""
Service errors

Every failure a handler can report maps onto one of these classes. The API layer
turns them into the `{status: 'error', message}` envelope with the class's HTTP
status code; anything else escaping a handler is reported as a 500.
"""

from typing import Any, Optional


class ServiceError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, data: Any = None):
        self.message = message or self.default_message
        self.data = data
        super().__init__(self.message)


class ValidationError(ServiceError):
    status_code = 400
    default_message = "Invalid request"


class UnauthenticatedError(ServiceError):
    status_code = 401
    default_message = "Authentication required"


class ForbiddenError(ServiceError):
    status_code = 403
    default_message = "You do not have permission to perform this action"


class NotFoundError(ServiceError):
    status_code = 404
    default_message = "Resource not found"


class InvalidStateError(ServiceError):
    status_code = 400
    default_message = "Operation not allowed in the current state"


class ConflictError(ServiceError):
    status_code = 409
    default_message = "Resource already exists"


class InternalError(ServiceError):
    status_code = 500


class InvalidPackageError(ValidationError):
    default_message = "Invalid coupon package selected"


class NotRedeemableError(InvalidStateError):
    default_message = "Coupon is not valid or has expired"


class DailyLimitReachedError(InvalidStateError):
    default_message = "Daily redemption limit reached for this coupon"


class IllegalStageTransitionError(InvalidStateError):
    def __init__(self, current: str, target: str, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Coupon cannot move from {current} to {target}")


class InsufficientBalanceError(InvalidStateError):
    default_message = "Insufficient balance"


class CouponNotPendingError(NotFoundError):
    default_message = "Coupon not found or already redeemed"
