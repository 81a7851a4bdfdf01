"""
Custom exception classes and error handling.

Provides consistent error responses across the API. Plan services raise
these directly so the router can let them propagate.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any, List


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


class ConflictError(APIException):
    """Resource conflict (e.g., a job run already in progress)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="CONFLICT"
        )


class IncompleteProfileError(ValidationError):
    """User profile lacks fields the plan provider requires. Never retried."""

    def __init__(self, plan_type: str, missing_fields: List[str]):
        super().__init__(
            detail=(
                f"Cannot generate {plan_type} plan, profile is missing: "
                f"{', '.join(missing_fields)}"
            )
        )
        self.error_code = "INCOMPLETE_PROFILE"
        self.plan_type = plan_type
        self.missing_fields = list(missing_fields)


class PlanProviderError(APIException):
    """External plan provider failed or returned an unusable payload."""

    def __init__(self, provider: str, detail: str):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"{provider} failed: {detail}",
            error_code="PLAN_PROVIDER_ERROR"
        )
        self.provider = provider


class PlanProviderTimeoutError(PlanProviderError):
    """External plan provider did not answer within the configured bound."""

    def __init__(self, provider: str, timeout_s: float):
        super().__init__(provider, f"no response within {timeout_s}s")
        self.status_code = status.HTTP_504_GATEWAY_TIMEOUT
        self.error_code = "PLAN_PROVIDER_TIMEOUT"
        self.timeout_s = timeout_s


class PlanPersistenceError(APIException):
    """The plan write transaction failed and was rolled back."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="PLAN_PERSISTENCE_ERROR"
        )
