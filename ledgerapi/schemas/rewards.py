from datetime import date
from typing import List, Optional

from pydantic import BaseModel, Field

from ledgerapi.schemas.effects import NotifyUser


class CheckInResponse(BaseModel):
    """체크인 결과"""

    user_id: str = Field(..., description="사용자 ID")
    check_in_date: date = Field(..., description="체크인 날짜 (시스템 타임존)")
    reward_amount: int = Field(..., description="지급된 다이아몬드")
    new_balance: int = Field(..., description="지급 후 잔액")
    monthly_count: int = Field(..., description="이번 달 체크인 횟수")
    streak: int = Field(..., description="연속 체크인 일수")


class MilestoneStatus(BaseModel):
    """마일스톤 진행 상태"""

    day: int = Field(..., description="필요 체크인 일수")
    reward_amount: int = Field(..., description="보상 다이아몬드")
    eligible: bool = Field(..., description="수령 가능 여부")
    claimed: bool = Field(..., description="이번 사이클 수령 여부")


class CheckInStatusResponse(BaseModel):
    """체크인 현황"""

    user_id: str
    today: date
    checked_in_today: bool
    daily_reward: int
    monthly_count: int
    streak: int
    cycle_key: str = Field(..., description="마일스톤 사이클 (YYYY-MM)")
    milestones: List[MilestoneStatus] = Field(default_factory=list)


class MilestoneClaimResponse(BaseModel):
    """마일스톤 보상 수령 결과"""

    user_id: str
    milestone_day: int
    cycle_key: str
    reward_amount: int
    new_balance: int


class ReferralCodeResponse(BaseModel):
    """내 추천 코드"""

    user_id: str
    referral_code: str = Field(..., description="사용자 ID 앞 8자리 (대문자)")
    bonus_amount: int = Field(..., description="추천인/가입자 각각 받는 다이아몬드")


class ReferralClaimRequest(BaseModel):
    referral_code: str = Field(..., min_length=8, max_length=36, pattern=r"^[A-Za-z0-9-]+$")


class ReferralClaimResponse(BaseModel):
    """추천 코드 보상 결과"""

    user_id: str
    referrer_id: str
    bonus_amount: int
    new_balance: int
    effects: List[NotifyUser] = Field(default_factory=list, exclude=True)


class CheckInRewardConfigSchema(BaseModel):
    """체크인 보상 설정"""

    id: int
    consecutive_days: int
    diamond_reward: int
    is_active: bool

    class Config:
        from_attributes = True


class CheckInRewardConfigCreate(BaseModel):
    consecutive_days: int = Field(..., ge=1, description="1: 일일 보상, 그 외: 마일스톤 일수")
    diamond_reward: int = Field(..., ge=0)
    is_active: bool = True


class CheckInRewardConfigUpdate(BaseModel):
    diamond_reward: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class WeeklyPointsRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    points: int = Field(..., gt=0)


class WeeklyWinner(BaseModel):
    """주간 리더보드 수상자"""

    user_id: str
    rank: int
    weekly_points: int
    reward_amount: int
    paid: bool = Field(..., description="이번 실행에서 새로 지급되었는지 (False면 이미 지급됨)")


class WeeklyResetResponse(BaseModel):
    """주간 리셋 결과"""

    week_start_date: date
    winners: List[WeeklyWinner] = Field(default_factory=list)
    reset_count: int = Field(0, description="점수가 초기화된 사용자 수")
    effects: List[NotifyUser] = Field(default_factory=list, exclude=True)
