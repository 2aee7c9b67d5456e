"""
원장 저장소 경계의 일시적 오류 재시도

연결 끊김/잠금 대기 초과(OperationalError 계열)만 재시도합니다.
IntegrityError 등 제약 조건 위반은 비즈니스 신호이므로 그대로 전달합니다.
재시도되는 작업은 ref_id 멱등성 키를 사용하므로 커밋 응답 유실 후 재실행되어도 이중 반영되지 않습니다.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ledgerapi.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_store_error(exc: BaseException) -> bool:
    """재시도 가능한 저장소 오류인지 판별"""
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def with_store_retry(
    db: Session,
    operation: Callable[[], T],
    label: str = "store operation",
    attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
) -> T:
    """operation을 실행하고 일시적 저장소 오류 시 롤백 후 제한 횟수만큼 재시도"""
    max_attempts = max(1, attempts or settings.STORE_RETRY_ATTEMPTS)
    backoff = (
        settings.STORE_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
    )

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except DBAPIError as e:
            if not is_transient_store_error(e):
                raise
            db.rollback()
            if attempt >= max_attempts:
                logger.error(
                    f"{label} failed after {attempt} attempts (store unavailable): {str(e)}"
                )
                raise
            logger.warning(
                f"{label} hit transient store error (attempt {attempt}/{max_attempts}): {str(e)}"
            )
            time.sleep(backoff * attempt)

    raise RuntimeError("unreachable")  # pragma: no cover
