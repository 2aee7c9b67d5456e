from enum import Enum
from fastapi import HTTPException, status
from typing import Optional, Dict, Any

class BaseAPIException(HTTPException):
    """Base exception for API errors"""
    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}

        super().__init__(
            status_code=status_code,
            detail={
                "success": False,
                "error": {
                    "code": error_code,
                    "message": message,
                    "details": self.details
                }
            }
        )

    def __str__(self) -> str:  # Ensure str(e) returns the human message
        return self.message

class AuthenticationError(BaseAPIException):
    """Authentication related errors"""
    def __init__(self, message: str = "Authentication failed", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="AUTH_001",
            message=message,
            details=details
        )

class AuthorizationError(BaseAPIException):
    """Authorization related errors"""
    def __init__(self, message: str = "Access forbidden", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="AUTH_002",
            message=message,
            details=details
        )

class ValidationError(BaseAPIException):
    """Validation errors"""
    def __init__(self, message: str = "Validation failed", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="VALIDATION_001",
            message=message,
            details=details
        )

class NotFoundError(BaseAPIException):
    """Resource not found errors"""
    def __init__(self, message: str = "Resource not found", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="NOT_FOUND_001",
            message=message,
            details=details
        )

class InternalServerError(BaseAPIException):
    """Internal server errors"""
    def __init__(self, message: str = "Internal server error", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="INTERNAL_001",
            message=message,
            details=details
        )

# ---------------------------------------------------------------------------
# Economy errors - 예상 가능한 검증 실패는 재시도 없이 그대로 호출자에게 전달
# ---------------------------------------------------------------------------

class InsufficientFundsError(BaseAPIException):
    """Balance would drop below zero"""
    def __init__(self, message: str = "Insufficient balance", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="BALANCE_001",
            message=message,
            details=details
        )

class AlreadyClaimedError(BaseAPIException):
    """Check-in or milestone reward already claimed"""
    def __init__(self, message: str = "Reward already claimed", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error_code="REWARD_001",
            message=message,
            details=details
        )

class NotEligibleError(BaseAPIException):
    """Milestone threshold not reached"""
    def __init__(self, message: str = "Not eligible for this reward", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="REWARD_002",
            message=message,
            details=details
        )

class InvalidCodeError(BaseAPIException):
    """No active giftcode matches"""
    def __init__(self, message: str = "Invalid giftcode", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="GIFTCODE_001",
            message=message,
            details=details
        )

class LimitReachedError(BaseAPIException):
    """Giftcode global usage limit reached"""
    def __init__(self, message: str = "Giftcode usage limit reached", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error_code="GIFTCODE_002",
            message=message,
            details=details
        )

class AlreadyRedeemedError(BaseAPIException):
    """Per-user giftcode cap reached"""
    def __init__(self, message: str = "Giftcode already redeemed", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error_code="GIFTCODE_003",
            message=message,
            details=details
        )

class AlreadySettledError(BaseAPIException):
    """Transaction already settled to the requested outcome (idempotent success)"""
    def __init__(self, message: str = "Transaction already settled", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error_code="TOPUP_001",
            message=message,
            details=details
        )

class ConflictingSettlementError(BaseAPIException):
    """Transaction already settled to a different terminal state"""
    def __init__(self, message: str = "Transaction settled with a different outcome", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error_code="TOPUP_002",
            message=message,
            details=details
        )

class NoCredentialsAvailableError(BaseAPIException):
    """Credential pool has no active credential"""
    def __init__(self, message: str = "No AI credentials available", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code="CREDENTIAL_001",
            message=message,
            details=details
        )

class ExternalFailureCause(str, Enum):
    """외부 AI 서비스 오류 분류 - 모두 환불 대상"""
    SAFETY_REJECTED = "safety_rejected"
    QUOTA_EXCEEDED = "quota_exceeded"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

class ExternalServiceFailure(BaseAPIException):
    """External AI service failed (refund already applied when raised by the cost guard)"""
    def __init__(
        self,
        cause: ExternalFailureCause = ExternalFailureCause.UNKNOWN,
        message: str = "External AI service failed",
        details: Optional[Dict] = None,
    ):
        self.cause = cause
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code="EXTERNAL_001",
            message=message,
            details={"cause": cause.value, **(details or {})}
        )

class RefundFailedError(BaseAPIException):
    """Refund could not be applied; requires manual reconciliation"""
    def __init__(self, message: str = "Refund failed; flagged for manual reconciliation", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="REFUND_001",
            message=message,
            details=details
        )

class JobAlreadyCompletedError(BaseAPIException):
    """Generation job already succeeded; its charge is final and cannot be refunded"""
    def __init__(self, message: str = "Generation job already completed", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error_code="GENERATION_001",
            message=message,
            details=details
        )
