from datetime import date
from typing import Optional

from sqlalchemy import BigInteger, Boolean, Date, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.schema import UniqueConstraint

from ledgerapi.models.base import BaseModel

_PK = BigInteger().with_variant(Integer, "sqlite")


class CheckInRecord(BaseModel):
    """일일 체크인 기록 - (user_id, check_in_date) 유니크 제약이 중복 체크인을 막는 관문"""

    __tablename__ = "daily_check_ins"
    __table_args__ = (
        UniqueConstraint("user_id", "check_in_date", name="uq_daily_check_ins_user_date"),
    )

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    check_in_date: Mapped[date] = mapped_column(Date, nullable=False)


class MilestoneClaim(BaseModel):
    """마일스톤(누적 체크인) 보상 수령 기록 - 월(cycle_key)당 1회"""

    __tablename__ = "milestone_claims"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "milestone_day", "cycle_key", name="uq_milestone_claims_user_day_cycle"
        ),
    )

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    milestone_day: Mapped[int] = mapped_column(Integer, nullable=False)
    cycle_key: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM
    reward_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class CheckInRewardConfig(BaseModel):
    """체크인 보상 설정 - consecutive_days=1은 일일 보상, 그 외는 마일스톤 보상"""

    __tablename__ = "check_in_rewards"
    __table_args__ = (UniqueConstraint("consecutive_days", name="uq_check_in_rewards_days"),)

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    consecutive_days: Mapped[int] = mapped_column(Integer, nullable=False)
    diamond_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class WeeklyRewardLog(BaseModel):
    """주간 리더보드 보상 지급 기록 - 재실행 시 중복 지급 방지"""

    __tablename__ = "weekly_rewards_log"
    __table_args__ = (
        UniqueConstraint("user_id", "week_start_date", name="uq_weekly_rewards_user_week"),
    )

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    reward_desc: Mapped[str] = mapped_column(Text, nullable=False)
    reward_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    weekly_points: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class ReferralClaim(BaseModel):
    """추천 코드 보상 기록 - invitee_id 유니크 제약이 1인 1회 수령의 관문"""

    __tablename__ = "referral_claims"
    __table_args__ = (UniqueConstraint("invitee_id", name="uq_referral_claims_invitee"),)

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    invitee_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    referrer_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    referral_code: Mapped[str] = mapped_column(String(36), nullable=False)
    bonus_amount: Mapped[int] = mapped_column(Integer, nullable=False)
