from unittest.mock import MagicMock

from ledgerapi.models import Notification
from ledgerapi.schemas.effects import NotifyUser
from ledgerapi.services.notification_service import NotificationDispatcher, NotificationService


class TestNotificationDispatcher:
    """커밋 후 알림 효과 실행 테스트"""

    def test_dispatch_all_creates_notifications(self, db, session_factory, make_user):
        first, second = make_user(), make_user()
        dispatcher = NotificationDispatcher(session_factory)

        delivered = dispatcher.dispatch_all(
            [
                NotifyUser(user_id=first, message="Top-up confirmed"),
                NotifyUser(user_id=second, message="Weekly reward", sender_id="system-bot"),
            ]
        )

        assert delivered == 2
        rows = db.query(Notification).order_by(Notification.id).all()
        assert [(r.user_id, r.message, r.sender_id) for r in rows] == [
            (first, "Top-up confirmed", None),
            (second, "Weekly reward", "system-bot"),
        ]

    def test_failed_delivery_does_not_stop_others(self, session_factory, user_id):
        broken = MagicMock()
        broken.add.side_effect = RuntimeError("store down")
        sessions = iter([broken, session_factory()])
        dispatcher = NotificationDispatcher(lambda: next(sessions))

        delivered = dispatcher.dispatch_all(
            [
                NotifyUser(user_id=user_id, message="lost"),
                NotifyUser(user_id=user_id, message="kept"),
            ]
        )

        assert delivered == 1
        broken.close.assert_called_once()


class TestNotificationService:
    def test_list_and_mark_read(self, db, user_id):
        db.add_all(
            [
                Notification(user_id=user_id, message="one", is_read=False),
                Notification(user_id=user_id, message="two", is_read=True),
            ]
        )
        db.commit()
        service = NotificationService(db)

        unread = service.list_notifications(user_id, unread_only=True)
        assert [n.message for n in unread] == ["one"]

        assert service.mark_read(user_id, unread[0].id) is True
        assert service.list_notifications(user_id, unread_only=True) == []
        assert len(service.list_notifications(user_id, limit=500)) == 2
