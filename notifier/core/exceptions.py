"""
Custom Exception Hierarchy

Structured exceptions for the webhook management surface. Delivery failures
(timeouts, refused connections, non-2xx answers) are never raised through
this hierarchy: the worker records them on the delivery instead.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"

    # Subscription errors (2xxx)
    SUBSCRIPTION_NOT_FOUND = "ERR_2001"
    INVALID_WEBHOOK_URL = "ERR_2002"
    UNKNOWN_EVENT = "ERR_2003"
    INVALID_HEADERS = "ERR_2004"

    # Delivery errors (3xxx)
    DELIVERY_NOT_FOUND = "ERR_3001"
    DELIVERY_ALREADY_SUCCEEDED = "ERR_3002"
    DELIVERY_CONFLICT = "ERR_3003"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class SubscriptionNotFoundError(NotFoundException):
    """Raised when a webhook subscription does not exist (or belongs to another organization)"""

    def __init__(self, subscription_id: str):
        super().__init__(
            resource="Webhook subscription",
            identifier=subscription_id,
            error_code=ErrorCode.SUBSCRIPTION_NOT_FOUND,
        )


class DeliveryNotFoundError(NotFoundException):
    """Raised when a delivery record does not exist"""

    def __init__(self, delivery_id: str):
        super().__init__(
            resource="Webhook delivery",
            identifier=delivery_id,
            error_code=ErrorCode.DELIVERY_NOT_FOUND,
        )


class DeliveryAlreadySucceededError(AppException):
    """Raised on manual retry of a delivery that already reached DELIVERED"""

    def __init__(self, delivery_id: str):
        super().__init__(
            message=f"Delivery {delivery_id} already succeeded",
            error_code=ErrorCode.DELIVERY_ALREADY_SUCCEEDED,
            status_code=400,
            details={"delivery_id": delivery_id},
        )


class DeliveryConflictError(AppException):
    """Raised when a delivery changed underneath a manual retry (another attempt won the race)"""

    def __init__(self, delivery_id: str, current_status: str):
        super().__init__(
            message=f"Delivery {delivery_id} was modified concurrently (status '{current_status}')",
            error_code=ErrorCode.DELIVERY_CONFLICT,
            status_code=409,
            details={"delivery_id": delivery_id, "current_status": current_status},
        )
