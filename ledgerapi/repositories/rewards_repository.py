from datetime import date
from typing import Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from ledgerapi.models.rewards import (
    CheckInRecord,
    CheckInRewardConfig,
    MilestoneClaim,
    ReferralClaim,
    WeeklyRewardLog,
)
from ledgerapi.schemas.rewards import CheckInRewardConfigSchema
from ledgerapi.repositories.base import BaseRepository

DAILY_REWARD_DAYS = 1


class RewardsRepository(BaseRepository[CheckInRewardConfig, CheckInRewardConfigSchema]):
    """체크인/마일스톤/주간 보상 리포지토리

    중복 방지는 유니크 제약으로만 판단합니다. add_* 메서드는 flush만 수행하며
    충돌 시 IntegrityError를 그대로 전달합니다.
    """

    def __init__(self, db: Session):
        super().__init__(CheckInRewardConfig, CheckInRewardConfigSchema, db)

    # ------------------------------------------------------------------
    # 보상 설정
    # ------------------------------------------------------------------
    def get_daily_reward(self) -> Optional[int]:
        config = (
            self.db.query(CheckInRewardConfig)
            .filter(
                CheckInRewardConfig.consecutive_days == DAILY_REWARD_DAYS,
                CheckInRewardConfig.is_active.is_(True),
            )
            .first()
        )
        return config.diamond_reward if config else None

    def get_milestone_rewards(self) -> Dict[int, int]:
        """활성 마일스톤 설정 {일수: 보상}"""
        configs = (
            self.db.query(CheckInRewardConfig)
            .filter(
                CheckInRewardConfig.consecutive_days != DAILY_REWARD_DAYS,
                CheckInRewardConfig.is_active.is_(True),
            )
            .order_by(CheckInRewardConfig.consecutive_days)
            .all()
        )
        return {c.consecutive_days: c.diamond_reward for c in configs}

    def list_configs(self) -> List[CheckInRewardConfigSchema]:
        return self.list_ordered(CheckInRewardConfig.consecutive_days)

    # ------------------------------------------------------------------
    # 체크인
    # ------------------------------------------------------------------
    def add_check_in(self, user_id: str, check_in_date: date) -> CheckInRecord:
        record = CheckInRecord(user_id=user_id, check_in_date=check_in_date)
        self.db.add(record)
        self.db.flush()
        return record

    def has_check_in(self, user_id: str, check_in_date: date) -> bool:
        return (
            self.db.query(CheckInRecord.id)
            .filter(
                CheckInRecord.user_id == user_id,
                CheckInRecord.check_in_date == check_in_date,
            )
            .first()
            is not None
        )

    def count_check_ins(self, user_id: str, start: date, end: date) -> int:
        """[start, end) 구간 체크인 수"""
        return (
            self.db.query(CheckInRecord)
            .filter(
                CheckInRecord.user_id == user_id,
                CheckInRecord.check_in_date >= start,
                CheckInRecord.check_in_date < end,
            )
            .count()
        )

    def get_recent_check_in_dates(self, user_id: str, limit: int = 400) -> List[date]:
        rows = (
            self.db.query(CheckInRecord.check_in_date)
            .filter(CheckInRecord.user_id == user_id)
            .order_by(desc(CheckInRecord.check_in_date))
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # 마일스톤
    # ------------------------------------------------------------------
    def add_milestone_claim(
        self, user_id: str, milestone_day: int, cycle_key: str, reward_amount: int
    ) -> MilestoneClaim:
        claim = MilestoneClaim(
            user_id=user_id,
            milestone_day=milestone_day,
            cycle_key=cycle_key,
            reward_amount=reward_amount,
        )
        self.db.add(claim)
        self.db.flush()
        return claim

    def get_claimed_milestones(self, user_id: str, cycle_key: str) -> List[int]:
        rows = (
            self.db.query(MilestoneClaim.milestone_day)
            .filter(
                MilestoneClaim.user_id == user_id,
                MilestoneClaim.cycle_key == cycle_key,
            )
            .all()
        )
        return sorted(row[0] for row in rows)

    # ------------------------------------------------------------------
    # 주간 리더보드
    # ------------------------------------------------------------------
    def add_weekly_log(
        self,
        user_id: str,
        rank: int,
        reward_amount: int,
        week_start_date: date,
        weekly_points: int,
    ) -> WeeklyRewardLog:
        log = WeeklyRewardLog(
            user_id=user_id,
            rank=rank,
            reward_desc=f"{reward_amount} diamonds (rank {rank})",
            reward_amount=reward_amount,
            week_start_date=week_start_date,
            weekly_points=weekly_points,
        )
        self.db.add(log)
        self.db.flush()
        return log

    def has_weekly_log(self, user_id: str, week_start_date: date) -> bool:
        return (
            self.db.query(WeeklyRewardLog.id)
            .filter(
                WeeklyRewardLog.user_id == user_id,
                WeeklyRewardLog.week_start_date == week_start_date,
            )
            .first()
            is not None
        )

    # ------------------------------------------------------------------
    # 추천 코드
    # ------------------------------------------------------------------
    def add_referral_claim(
        self, invitee_id: str, referrer_id: str, referral_code: str, bonus_amount: int
    ) -> ReferralClaim:
        claim = ReferralClaim(
            invitee_id=invitee_id,
            referrer_id=referrer_id,
            referral_code=referral_code,
            bonus_amount=bonus_amount,
        )
        self.db.add(claim)
        self.db.flush()
        return claim

    def has_referral_claim(self, invitee_id: str) -> bool:
        return (
            self.db.query(ReferralClaim.id)
            .filter(ReferralClaim.invitee_id == invitee_id)
            .first()
            is not None
        )
