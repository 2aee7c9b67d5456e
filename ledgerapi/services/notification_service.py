import logging
from typing import Callable, Iterable

from sqlalchemy.orm import Session

from ledgerapi.repositories.notification_repository import NotificationRepository
from ledgerapi.schemas.effects import NotifyUser

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """커밋된 경제 트랜잭션의 알림 효과 실행

    알림 실패는 이미 커밋된 잔액 변경에 영향을 주지 않습니다.
    실패는 로그만 남기고 다음 효과를 계속 처리합니다.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def dispatch(self, effect: NotifyUser) -> bool:
        db = self._session_factory()
        try:
            NotificationRepository(db).create(
                user_id=effect.user_id,
                sender_id=effect.sender_id,
                message=effect.message,
            )
            logger.info(f"Notification delivered to user {effect.user_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to deliver notification to user {effect.user_id}: {str(e)}")
            return False
        finally:
            db.close()

    def dispatch_all(self, effects: Iterable[NotifyUser]) -> int:
        delivered = 0
        for effect in effects:
            if self.dispatch(effect):
                delivered += 1
        return delivered


class NotificationService:
    """사용자 알림 조회/읽음 처리"""

    def __init__(self, db: Session):
        self.db = db
        self.notification_repo = NotificationRepository(db)

    def list_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50):
        limit = max(1, min(limit, 100))
        return self.notification_repo.list_for_user(user_id, unread_only=unread_only, limit=limit)

    def mark_read(self, user_id: str, notification_id: int) -> bool:
        return self.notification_repo.mark_read(user_id, notification_id)
