from fastapi import APIRouter, Depends, Path, Query

from ledgerapi.core.exceptions import NotFoundError
from ledgerapi.core.security import CurrentUser, get_current_user
from ledgerapi.deps import get_notification_service
from ledgerapi.schemas.notification import NotificationListResponse
from ledgerapi.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListResponse)
async def list_my_notifications(
    unread_only: bool = Query(False, description="읽지 않은 알림만"),
    limit: int = Query(50, ge=1, le=100),
    current_user: CurrentUser = Depends(get_current_user),
    notification_service: NotificationService = Depends(get_notification_service),
) -> NotificationListResponse:
    notifications = notification_service.list_notifications(
        current_user.user_id, unread_only=unread_only, limit=limit
    )
    return NotificationListResponse(notifications=notifications, unread_only=unread_only)


@router.post("/{notification_id}/read")
async def mark_notification_read(
    notification_id: int = Path(..., gt=0),
    current_user: CurrentUser = Depends(get_current_user),
    notification_service: NotificationService = Depends(get_notification_service),
) -> dict:
    if not notification_service.mark_read(current_user.user_id, notification_id):
        raise NotFoundError(f"Notification {notification_id} not found")
    return {"success": True}
