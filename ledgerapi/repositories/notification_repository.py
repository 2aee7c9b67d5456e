from typing import List

from sqlalchemy import update
from sqlalchemy.orm import Session

from ledgerapi.models.notification import Notification
from ledgerapi.repositories.base import BaseRepository
from ledgerapi.schemas.notification import NotificationSchema


class NotificationRepository(BaseRepository[Notification, NotificationSchema]):
    def __init__(self, db: Session):
        super().__init__(Notification, NotificationSchema, db)

    def list_for_user(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> List[NotificationSchema]:
        query = self.db.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.is_read.is_(False))
        rows = query.order_by(Notification.id.desc()).limit(limit).all()
        return [self._to_schema(row) for row in rows]

    def mark_read(self, user_id: str, notification_id: int) -> bool:
        result = self.db.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount > 0
