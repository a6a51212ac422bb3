"""
Custom Exception Hierarchy

Every error carries a stable error code plus a machine-readable ``reason``
in ``details`` so clients can branch on it without parsing messages.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    CONFLICT = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # Idempotency errors (2xxx)
    IDEMPOTENCY_KEY_REUSED = "ERR_2001"

    # Order errors (3xxx)
    ORDER_NOT_FOUND = "ERR_3001"
    ORDER_STATUS_LOCKED = "ERR_3002"
    INVALID_STATUS_TRANSITION = "ERR_3003"
    ORDER_NOT_LINKED = "ERR_3004"
    ORDER_REF_IN_USE = "ERR_3005"

    # Notes / members (4xxx)
    NOTE_NOT_FOUND = "ERR_4001"
    MEMBER_NOT_FOUND = "ERR_4002"
    CUSTOMER_NOT_FOUND = "ERR_4003"

    # External service / delivery errors (5xxx)
    UPSTREAM_FAILURE = "ERR_5001"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5002"
    LINKAGE_MISSING = "ERR_5003"


class AppException(Exception):
    """Base exception for all application errors"""

    reason: str = "internal_error"

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
        self.details.setdefault("reason", self.reason)

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

    reason = "validation_error"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    reason = "not_found"

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


class OrderNotFoundError(NotFoundException):
    reason = "order_not_found"

    def __init__(self, identifier: Any):
        super().__init__("Order", identifier, error_code=ErrorCode.ORDER_NOT_FOUND)


class NoteNotFoundError(NotFoundException):
    reason = "note_not_found"

    def __init__(self, identifier: Any):
        super().__init__("Note", identifier, error_code=ErrorCode.NOTE_NOT_FOUND)


class MemberNotFoundError(NotFoundException):
    reason = "member_not_found"

    def __init__(self, identifier: Any):
        super().__init__("Member", identifier, error_code=ErrorCode.MEMBER_NOT_FOUND)


class CustomerNotFoundError(NotFoundException):
    """The pharmacy has no customer for the lookup key"""

    reason = "customer_not_found"

    def __init__(self, identifier: Any):
        super().__init__("Pharmacy customer", identifier, error_code=ErrorCode.CUSTOMER_NOT_FOUND)


class ConflictException(AppException):
    """Raised when the request collides with current resource state (409)"""

    reason = "conflict"

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFLICT,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class IdempotencyConflictError(ConflictException):
    """Raised when an idempotency key is reused with a different payload"""

    reason = "idempotency_key_reused"

    def __init__(self, endpoint: str, idempotency_key: str):
        super().__init__(
            message="Idempotency key reuse with different payload",
            error_code=ErrorCode.IDEMPOTENCY_KEY_REUSED,
            details={"endpoint": endpoint, "idempotency_key": idempotency_key}
        )


class OrderStatusLockedError(ConflictException):
    """Raised when the order is in a status that admits no transition"""

    reason = "order_status_locked"

    def __init__(self, order_number: str, current_status: str, target_status: str):
        super().__init__(
            message=f"Order {order_number} is locked in status '{current_status}'",
            error_code=ErrorCode.ORDER_STATUS_LOCKED,
            details={
                "order_number": order_number,
                "current_status": current_status,
                "target_status": target_status,
            }
        )


class InvalidStatusTransitionError(ConflictException):
    """Raised when the transition graph has no edge current -> target"""

    reason = "invalid_status_transition"

    def __init__(self, order_number: str, current_status: str | None, target_status: str):
        super().__init__(
            message=f"Invalid transition from '{current_status}' to '{target_status}'",
            error_code=ErrorCode.INVALID_STATUS_TRANSITION,
            details={
                "order_number": order_number,
                "current_status": current_status,
                "target_status": target_status,
            }
        )


class PharmacyOrderRefInUseError(ConflictException):
    """Raised when another order of the tenant already holds the pharmacy order reference"""

    reason = "pharmacy_order_ref_in_use"

    def __init__(self, pharmacy_order_ref: str, order_id: int, holder_order_id: int | None = None):
        super().__init__(
            message=f"Pharmacy order reference {pharmacy_order_ref} is already linked to another order",
            error_code=ErrorCode.ORDER_REF_IN_USE,
            details={
                "pharmacy_order_ref": pharmacy_order_ref,
                "order_id": order_id,
                "holder_order_id": holder_order_id,
            }
        )


class OrderNotLinkedError(AppException):
    """Raised when a write needs order linkage (member / pharmacy ref) that is absent"""

    reason = "order_not_linked"

    def __init__(self, message: str, order_id: int):
        super().__init__(
            message=message,
            error_code=ErrorCode.ORDER_NOT_LINKED,
            status_code=422,
            details={"order_id": order_id}
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    reason = "upstream_failure"

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.UPSTREAM_FAILURE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class UpstreamFailureError(ExternalServiceException):
    """Raised when a subscriber or the pharmacy API answers with a non-2xx status"""

    def __init__(self, service_name: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name=service_name,
            message=message,
            error_code=ErrorCode.UPSTREAM_FAILURE,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        service_name: str,
        status_code: int,
        body: str = "",
        *,
        max_response_chars: int = 500
    ) -> "UpstreamFailureError":
        """Build the error from an HTTP status/body pair, truncating the body."""
        return cls(
            service_name=service_name,
            message=f"HTTP {status_code}",
            details={
                "status_code": status_code,
                "response_text": (body or "")[:max_response_chars],
            },
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    reason = "upstream_timeout"

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class LinkageMissingError(AppException):
    """
    Raised by a subscriber transform when cross-reference data it needs
    (pharmacy order reference, the note itself) is absent.

    Recoverable: the dispatcher records it on the delivery row and retries.
    """

    reason = "linkage_missing"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.LINKAGE_MISSING,
            status_code=422,
            details=details
        )
