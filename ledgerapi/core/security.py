import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from ledgerapi.config import settings
from ledgerapi.core.exceptions import AuthenticationError, AuthorizationError
from ledgerapi.database.session import get_db
from ledgerapi.repositories.user_repository import UserRepository

logger = logging.getLogger(__name__)


def create_access_token(
    user_id: str, is_admin: bool = False, expires_delta: Optional[timedelta] = None
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"sub": user_id, "is_admin": is_admin, "exp": expire}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


# Security scheme
security = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    user_id: str
    is_admin: bool = False


def verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CurrentUser:
    """JWT 토큰을 검증하고 사용자 정보를 반환합니다."""
    if credentials is None:
        raise AuthenticationError("Authentication required")

    try:
        payload = jwt.decode(
            credentials.credentials, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
        )
        return CurrentUser(
            user_id=str(payload["sub"]), is_admin=bool(payload.get("is_admin", False))
        )
    except (JWTError, KeyError, PydanticValidationError):
        raise AuthenticationError("Invalid authentication credentials")


def get_current_user(current_user: CurrentUser = Depends(verify_token)) -> CurrentUser:
    """현재 인증된 사용자"""
    return current_user


def admin_required(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CurrentUser:
    """관리자 권한 확인 - 토큰 클레임 또는 users.is_admin"""
    if current_user.is_admin or UserRepository(db).is_admin(current_user.user_id):
        return CurrentUser(user_id=current_user.user_id, is_admin=True)

    logger.warning(f"Admin access denied for user {current_user.user_id}")
    raise AuthorizationError("Admin privileges required")


def _check_shared_secret(provided: Optional[str], expected: str, name: str) -> None:
    if not expected or not provided or not secrets.compare_digest(provided, expected):
        logger.warning(f"Rejected request with invalid {name}")
        raise AuthorizationError(f"Invalid {name}")


def verify_cron_secret(x_cron_secret: Optional[str] = Header(None)) -> None:
    """스케줄러 호출 보호 (X-Cron-Secret 헤더)"""
    _check_shared_secret(x_cron_secret, settings.CRON_SECRET, "cron secret")


def verify_webhook_secret(x_webhook_secret: Optional[str] = Header(None)) -> None:
    """결제 게이트웨이 이벤트 보호 (X-Webhook-Secret 헤더)"""
    _check_shared_secret(x_webhook_secret, settings.PAYMENT_WEBHOOK_SECRET, "webhook secret")
