"""
Custom exception classes and error handling.

HTTP-facing errors subclass APIException so routers can raise them directly.
Domain errors below carry no HTTP coupling; routers translate them.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ValidationError(APIException):
    """Validation error."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            error_code=error_code
        )


class UnauthorizedError(APIException):
    """Authentication required."""

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="UNAUTHORIZED",
        )


class ConflictError(APIException):
    """Resource conflict (e.g., gift already redeemed)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="CONFLICT"
        )


class ServiceUnavailableError(APIException):
    """A payment gateway or other dependency is not configured / reachable."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="SERVICE_UNAVAILABLE"
        )


# --- Domain errors ---------------------------------------------------------


class DomainError(Exception):
    """Base class for business-rule failures raised by services."""


class PaymentVerificationError(DomainError):
    """Inbound payment event failed authentication."""


class MalformedPayloadError(PaymentVerificationError):
    """Authenticated payment event whose content cannot be interpreted."""


class UnknownPlanError(DomainError):
    def __init__(self, plan_id: str):
        super().__init__(f"Unknown plan: {plan_id}")
        self.plan_id = plan_id


class UnknownUserError(DomainError):
    def __init__(self, identifier: Any):
        super().__init__(f"Unknown user: {identifier}")
        self.identifier = identifier


class GiftNotFoundError(DomainError):
    def __init__(self, token: str):
        super().__init__("Gift not found")
        self.token = token


class GiftNotPaidError(DomainError):
    def __init__(self, token: str):
        super().__init__("Gift is not paid yet")
        self.token = token


class GiftAlreadyRedeemedError(DomainError):
    def __init__(self, token: str):
        super().__init__("Gift already redeemed")
        self.token = token


class GatewayUnavailableError(DomainError):
    """Gateway is not configured or its API call failed."""


class DeliveryError(DomainError):
    """Outbound message could not be delivered (transport/API failure)."""
