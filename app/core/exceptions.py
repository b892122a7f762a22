"""
Custom exception classes and error handlers
Provides consistent error responses across the settlement API
"""

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from typing import Any, Dict, Optional

class SettlementException(HTTPException):
    """Base exception class for the settlement application"""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code

class ValidationError(SettlementException):
    """400 Malformed or out-of-range input"""

    def __init__(self, detail: str, error_code: str = "VALIDATION_ERROR"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code=error_code
        )

class ForbiddenError(SettlementException):
    """403 Forbidden"""

    def __init__(self, detail: str = "Forbidden", error_code: str = "FORBIDDEN"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
            error_code=error_code
        )

class NotFoundError(SettlementException):
    """404 Missing entity"""

    def __init__(self, detail: str = "Not found", error_code: str = "NOT_FOUND"):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail,
            error_code=error_code
        )

class ConflictError(SettlementException):
    """409 Duplicate or already-processed request"""

    def __init__(self, detail: str, error_code: str = "CONFLICT"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code=error_code
        )

class ExternalServiceError(SettlementException):
    """502 Gateway unreachable, 503 when short-circuited"""

    def __init__(
        self,
        detail: str = "External service error",
        error_code: str = "EXTERNAL_SERVICE_ERROR",
        status_code: int = status.HTTP_502_BAD_GATEWAY,
    ):
        super().__init__(
            status_code=status_code,
            detail=detail,
            error_code=error_code
        )

class ServiceUnavailableError(ExternalServiceError):
    """503 Circuit open"""

    def __init__(
        self,
        detail: str = "Service temporarily unavailable",
        error_code: str = "SERVICE_UNAVAILABLE"
    ):
        super().__init__(
            detail=detail,
            error_code=error_code,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

class DatabaseError(SettlementException):
    """500 Persistence failure"""

    def __init__(
        self,
        detail: str = "Database operation failed",
        error_code: str = "DATABASE_ERROR"
    ):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=detail,
            error_code=error_code
        )

# Business logic exceptions
class InsufficientBalanceError(ValidationError):
    """Wallet cannot cover a debit"""

    def __init__(self, detail: str = "Insufficient wallet balance"):
        super().__init__(
            detail=detail,
            error_code="INSUFFICIENT_BALANCE"
        )

class InvalidSignatureError(ValidationError):
    """Webhook signature verification failed"""

    def __init__(self, detail: str = "Invalid webhook signature"):
        super().__init__(
            detail=detail,
            error_code="INVALID_SIGNATURE"
        )

async def settlement_exception_handler(request: Request, exc: SettlementException) -> JSONResponse:
    """Render settlement errors as {"error": {"code", "message"}}"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": exc.error_code or "ERROR",
                "message": exc.detail,
            }
        },
        headers=exc.headers,
    )
