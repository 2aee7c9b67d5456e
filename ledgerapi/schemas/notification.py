from typing import List, Optional
from pydantic import BaseModel, Field


class NotificationSchema(BaseModel):
    id: int
    user_id: str
    sender_id: Optional[str] = None
    message: str
    is_read: bool = False

    class Config:
        from_attributes = True


class NotificationListResponse(BaseModel):
    notifications: List[NotificationSchema] = Field(default_factory=list)
    unread_only: bool = False
