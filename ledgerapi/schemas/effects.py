from typing import Optional
from pydantic import BaseModel, Field


class NotifyUser(BaseModel):
    """커밋 이후 실행될 알림 요청 (경제 트랜잭션과 분리된 부수 효과)"""

    user_id: str = Field(..., description="수신 사용자 ID")
    message: str = Field(..., description="알림 메시지")
    sender_id: Optional[str] = Field(None, description="발신자 ID (시스템이면 None)")
