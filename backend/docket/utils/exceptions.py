"""
Custom exception classes

Every error carries a stable machine-readable ``code``; FastAPI renders the
``detail`` dict as the response body.
"""
from typing import Any, Optional

from fastapi import HTTPException, status


class DocketError(HTTPException):
    """Base class: detail is {"code", "message", **context}"""
    default_status = status.HTTP_400_BAD_REQUEST
    default_code = "ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        self.code = code or self.default_code
        self.message = message
        self.context = context
        super().__init__(
            status_code=status_code or self.default_status,
            detail={"code": self.code, "message": message, **context},
        )


class ValidationError(DocketError):
    """Malformed input, rejected before any guard runs"""
    default_code = "VALIDATION_ERROR"


class PolicyViolation(DocketError):
    """A guard refused the operation (transition, capacity, time gate...)"""
    default_code = "POLICY_VIOLATION"


class ConflictError(DocketError):
    """Slot or application race lost; context tells the caller how to react"""
    default_status = status.HTTP_409_CONFLICT
    default_code = "CONFLICT"


class NotFoundError(DocketError):
    default_status = status.HTTP_404_NOT_FOUND
    default_code = "NOT_FOUND"


class ExternalServiceError(DocketError):
    """Communication provider call failed"""
    default_status = status.HTTP_502_BAD_GATEWAY
    default_code = "PROVIDER_ERROR"

    def __init__(self, message: str, provider_status: Optional[int] = None, **context: Any):
        self.provider_status = provider_status
        super().__init__(message, **context)


class CaseNotFoundError(NotFoundError):
    """Raised when case doesn't exist"""
    def __init__(self, case_id: int):
        super().__init__(f"Case {case_id} not found", code="CASE_NOT_FOUND")


class UnauthorizedError(PolicyViolation):
    """Raised when user doesn't own resource"""
    def __init__(self, message: str = "You don't have permission to access this resource"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)
