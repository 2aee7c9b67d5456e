import logging
from datetime import date, timedelta
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerapi.config import Settings
from ledgerapi.core.exceptions import (
    AlreadyClaimedError,
    NotEligibleError,
    NotFoundError,
    ValidationError,
)
from ledgerapi.models.ledger import LedgerKind
from ledgerapi.repositories.rewards_repository import RewardsRepository
from ledgerapi.repositories.user_repository import UserRepository
from ledgerapi.schemas.effects import NotifyUser
from ledgerapi.schemas.rewards import (
    CheckInResponse,
    CheckInRewardConfigCreate,
    CheckInRewardConfigSchema,
    CheckInRewardConfigUpdate,
    CheckInStatusResponse,
    MilestoneClaimResponse,
    MilestoneStatus,
    ReferralClaimResponse,
    ReferralCodeResponse,
    WeeklyResetResponse,
    WeeklyWinner,
)
from ledgerapi.services.ledger_service import BalanceLedger
from ledgerapi.utils.store_retry import with_store_retry
from ledgerapi.utils.timezone_utils import (
    closing_week_start,
    cycle_key,
    get_local_date,
    month_bounds,
    week_start,
)

logger = logging.getLogger(__name__)


def referral_code_for(user_id: str) -> str:
    """추천 코드 - 사용자 ID 앞 8자리 대문자"""
    return user_id[:8].upper()


class RewardClaimService:
    """체크인/마일스톤/주간 리더보드 보상

    모든 "이미 받았는지" 판단은 유니크 제약 충돌로 확정합니다.
    날짜 경계는 시스템 타임존(settings.TIMEZONE) 기준입니다.
    """

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings
        self.rewards_repo = RewardsRepository(db)
        self.user_repo = UserRepository(db)
        self.ledger = BalanceLedger(db)

    # ------------------------------------------------------------------
    # 보상 테이블
    # ------------------------------------------------------------------
    def _daily_reward(self) -> int:
        configured = self.rewards_repo.get_daily_reward()
        return configured if configured is not None else self.settings.DAILY_CHECK_IN_REWARD

    def _milestone_rewards(self) -> Dict[int, int]:
        configured = self.rewards_repo.get_milestone_rewards()
        if configured:
            return configured
        return dict(zip(self.settings.MILESTONE_DAYS, self.settings.MILESTONE_DEFAULT_REWARDS))

    def _streak(self, user_id: str, today: date) -> int:
        dates = self.rewards_repo.get_recent_check_in_dates(user_id)
        if not dates:
            return 0

        # 오늘 체크인 전이면 어제까지의 연속 기록을 유지
        expected = today if dates[0] == today else today - timedelta(days=1)
        streak = 0
        for day in dates:
            if day != expected:
                break
            streak += 1
            expected -= timedelta(days=1)
        return streak

    # ------------------------------------------------------------------
    # 체크인
    # ------------------------------------------------------------------
    def check_in(self, user_id: str, today: Optional[date] = None) -> CheckInResponse:
        """일일 체크인 - 기록 생성과 보상 지급을 하나의 트랜잭션으로 처리

        Raises:
            AlreadyClaimedError: 오늘 이미 체크인한 경우
        """
        today = today or get_local_date()
        reward = self._daily_reward()

        def operation():
            try:
                self.rewards_repo.add_check_in(user_id, today)
                result = self.ledger.apply_delta(
                    user_id=user_id,
                    amount=reward,
                    kind=LedgerKind.REWARD,
                    description=f"Daily check-in {today.isoformat()}",
                    ref_id=f"checkin:{user_id}:{today.isoformat()}",
                    commit=False,
                )
                self.db.commit()
                return result
            except IntegrityError:
                self.db.rollback()
                if self.rewards_repo.has_check_in(user_id, today):
                    logger.info(f"User {user_id} already checked in on {today}")
                    raise AlreadyClaimedError(
                        "Already checked in today",
                        details={"check_in_date": today.isoformat()},
                    )
                raise
            except Exception:
                self.db.rollback()
                raise

        result = with_store_retry(self.db, operation, label=f"check_in[{user_id}]")

        start, end = month_bounds(today)
        monthly_count = self.rewards_repo.count_check_ins(user_id, start, end)
        streak = self._streak(user_id, today)
        logger.info(
            f"User {user_id} checked in on {today}: +{reward}, monthly={monthly_count}, streak={streak}"
        )

        return CheckInResponse(
            user_id=user_id,
            check_in_date=today,
            reward_amount=reward,
            new_balance=result.new_balance,
            monthly_count=monthly_count,
            streak=streak,
        )

    def get_check_in_status(
        self, user_id: str, today: Optional[date] = None
    ) -> CheckInStatusResponse:
        """체크인 현황 - 월간 횟수와 연속 일수는 기록에서 매번 계산"""
        today = today or get_local_date()
        start, end = month_bounds(today)
        key = cycle_key(today)

        monthly_count = self.rewards_repo.count_check_ins(user_id, start, end)
        claimed = set(self.rewards_repo.get_claimed_milestones(user_id, key))

        milestones = [
            MilestoneStatus(
                day=day,
                reward_amount=reward,
                eligible=monthly_count >= day and day not in claimed,
                claimed=day in claimed,
            )
            for day, reward in sorted(self._milestone_rewards().items())
        ]

        return CheckInStatusResponse(
            user_id=user_id,
            today=today,
            checked_in_today=self.rewards_repo.has_check_in(user_id, today),
            daily_reward=self._daily_reward(),
            monthly_count=monthly_count,
            streak=self._streak(user_id, today),
            cycle_key=key,
            milestones=milestones,
        )

    # ------------------------------------------------------------------
    # 마일스톤
    # ------------------------------------------------------------------
    def claim_milestone(
        self, user_id: str, day: int, today: Optional[date] = None
    ) -> MilestoneClaimResponse:
        """마일스톤 보상 수령 (월 단위 사이클)

        Raises:
            NotEligibleError: 마일스톤이 아니거나 이번 달 체크인 수가 부족한 경우
            AlreadyClaimedError: 이번 사이클에 이미 수령한 경우
        """
        today = today or get_local_date()
        rewards = self._milestone_rewards()
        if day not in rewards:
            raise NotEligibleError(
                f"{day} is not a milestone",
                details={"milestone_days": sorted(rewards.keys())},
            )

        start, end = month_bounds(today)
        monthly_count = self.rewards_repo.count_check_ins(user_id, start, end)
        if monthly_count < day:
            raise NotEligibleError(
                f"Milestone {day} requires {day} check-ins this month",
                details={"required": day, "current": monthly_count},
            )

        key = cycle_key(today)
        reward = rewards[day]

        def operation():
            try:
                self.rewards_repo.add_milestone_claim(user_id, day, key, reward)
                result = self.ledger.apply_delta(
                    user_id=user_id,
                    amount=reward,
                    kind=LedgerKind.REWARD,
                    description=f"Milestone {day} days ({key})",
                    ref_id=f"milestone:{user_id}:{day}:{key}",
                    commit=False,
                )
                self.db.commit()
                return result
            except IntegrityError:
                self.db.rollback()
                if day in self.rewards_repo.get_claimed_milestones(user_id, key):
                    logger.info(f"User {user_id} already claimed milestone {day} for {key}")
                    raise AlreadyClaimedError(
                        "Milestone reward already claimed",
                        details={"milestone_day": day, "cycle_key": key},
                    )
                raise
            except Exception:
                self.db.rollback()
                raise

        result = with_store_retry(
            self.db, operation, label=f"claim_milestone[{user_id}:{day}]"
        )
        logger.info(f"User {user_id} claimed milestone {day} ({key}): +{reward}")

        return MilestoneClaimResponse(
            user_id=user_id,
            milestone_day=day,
            cycle_key=key,
            reward_amount=reward,
            new_balance=result.new_balance,
        )

    # ------------------------------------------------------------------
    # 추천 코드
    # ------------------------------------------------------------------
    def get_referral_code(self, user_id: str) -> ReferralCodeResponse:
        return ReferralCodeResponse(
            user_id=user_id,
            referral_code=referral_code_for(user_id),
            bonus_amount=self.settings.REFERRAL_BONUS,
        )

    def claim_referral(self, user_id: str, referral_code: str) -> ReferralClaimResponse:
        """추천 코드 입력 보상 - 가입자와 추천인에게 각각 지급 (가입자당 1회)

        수령 기록(invitee_id 유니크)과 두 건의 지급을 하나의 트랜잭션으로 처리합니다.

        Raises:
            NotFoundError: 코드에 해당하는 사용자가 없는 경우
            ValidationError: 자기 자신의 코드인 경우
            AlreadyClaimedError: 이미 추천 보상을 받은 경우
        """
        code = referral_code.strip().upper()
        if not code.replace("-", "").isalnum():
            raise NotFoundError("Referral code not found", details={"referral_code": code})

        if self.rewards_repo.has_referral_claim(user_id):
            raise AlreadyClaimedError("Referral code already used")

        referrer = self.user_repo.find_by_id_prefix(code)
        if referrer is None:
            raise NotFoundError("Referral code not found", details={"referral_code": code})
        if referrer.id == user_id:
            raise ValidationError("Cannot use your own referral code")

        referrer_id = referrer.id
        bonus = self.settings.REFERRAL_BONUS

        def operation():
            try:
                self.rewards_repo.add_referral_claim(user_id, referrer_id, code, bonus)
                result = self.ledger.apply_delta(
                    user_id=user_id,
                    amount=bonus,
                    kind=LedgerKind.REWARD,
                    description=f"Referral code {code}",
                    ref_id=f"referral:received:{user_id}",
                    commit=False,
                )
                self.ledger.apply_delta(
                    user_id=referrer_id,
                    amount=bonus,
                    kind=LedgerKind.REWARD,
                    description="Referral bonus for inviting a new user",
                    ref_id=f"referral:given:{user_id}",
                    commit=False,
                )
                self.db.commit()
                return result
            except IntegrityError:
                self.db.rollback()
                if self.rewards_repo.has_referral_claim(user_id):
                    logger.info(f"User {user_id} already used a referral code")
                    raise AlreadyClaimedError("Referral code already used")
                raise
            except Exception:
                self.db.rollback()
                raise

        result = with_store_retry(self.db, operation, label=f"claim_referral[{user_id}]")
        logger.info(f"Referral {code}: user {user_id} and referrer {referrer_id} +{bonus} each")

        return ReferralClaimResponse(
            user_id=user_id,
            referrer_id=referrer_id,
            bonus_amount=bonus,
            new_balance=result.new_balance,
            effects=[
                NotifyUser(
                    user_id=referrer_id,
                    message=f"A new user joined with your referral code. You received {bonus} diamonds.",
                )
            ],
        )

    # ------------------------------------------------------------------
    # 주간 리더보드
    # ------------------------------------------------------------------
    def add_weekly_points(self, user_id: str, points: int) -> int:
        """주간 점수 증가 - 증가 후 점수 반환"""
        if points <= 0:
            raise ValidationError("points must be positive", details={"points": points})

        def operation():
            try:
                if not self.user_repo.increment_weekly_points(user_id, points):
                    raise NotFoundError(f"User {user_id} not found")
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        with_store_retry(self.db, operation, label=f"add_weekly_points[{user_id}]")
        return self.user_repo.get_weekly_points(user_id)

    def reset_weekly_rewards(
        self, week_start_date: Optional[date] = None
    ) -> WeeklyResetResponse:
        """
        주간 리더보드 정산 후 점수 초기화

        수상자별로 (지급 기록 + 보상 지급)을 하나의 트랜잭션으로 처리합니다.
        (user_id, week_start_date) 유니크 충돌은 이미 지급된 것으로 보고 건너뜁니다.
        중간에 실패해도 다시 실행하면 남은 수상자만 지급하고 점수를 초기화합니다.

        week_start_date가 없으면 closing_week_start()로 정산 대상 주를 정하므로
        주 경계(월요일 0시)를 넘긴 재시도도 같은 키를 씁니다. 주어진 날짜는 해당 주 월요일로 맞춥니다.
        """
        if week_start_date is None:
            week_start_date = closing_week_start(
                get_local_date(), self.settings.WEEKLY_RESET_LOOKBACK_DAYS
            )
        else:
            week_start_date = week_start(week_start_date)
        amounts: List[int] = list(self.settings.WEEKLY_REWARD_AMOUNTS)
        leaders = self.user_repo.find_weekly_leaders(len(amounts))

        winners: List[WeeklyWinner] = []
        effects: List[NotifyUser] = []

        for rank, (user, amount) in enumerate(zip(leaders, amounts), start=1):
            user_id, points = user.id, user.weekly_points

            def pay(user_id=user_id, points=points, rank=rank, amount=amount) -> bool:
                try:
                    self.rewards_repo.add_weekly_log(
                        user_id, rank, amount, week_start_date, points
                    )
                    self.ledger.apply_delta(
                        user_id=user_id,
                        amount=amount,
                        kind=LedgerKind.REWARD,
                        description=f"Weekly leaderboard rank {rank} ({week_start_date.isoformat()})",
                        ref_id=f"weekly:{user_id}:{week_start_date.isoformat()}",
                        commit=False,
                    )
                    self.db.commit()
                    return True
                except IntegrityError:
                    self.db.rollback()
                    if self.rewards_repo.has_weekly_log(user_id, week_start_date):
                        return False
                    raise
                except Exception:
                    self.db.rollback()
                    raise

            paid = with_store_retry(self.db, pay, label=f"weekly_reward[{user_id}]")
            if paid:
                logger.info(
                    f"Weekly reward paid: user {user_id} rank {rank} (+{amount}, {points} pts)"
                )
                effects.append(
                    NotifyUser(
                        user_id=user_id,
                        message=(
                            f"Congratulations! You finished #{rank} on this week's leaderboard "
                            f"with {points} points and received {amount} diamonds."
                        ),
                        sender_id=self.settings.WEEKLY_REWARD_SENDER_ID,
                    )
                )
            else:
                logger.info(
                    f"Weekly reward for user {user_id} ({week_start_date}) already paid, skipping"
                )

            winners.append(
                WeeklyWinner(
                    user_id=user_id,
                    rank=rank,
                    weekly_points=points,
                    reward_amount=amount,
                    paid=paid,
                )
            )

        def reset() -> int:
            try:
                count = self.user_repo.reset_weekly_points()
                self.db.commit()
                return count
            except Exception:
                self.db.rollback()
                raise

        reset_count = with_store_retry(self.db, reset, label="reset_weekly_points")
        logger.info(
            f"Weekly reset for {week_start_date}: {len(winners)} winners, {reset_count} scores zeroed"
        )

        return WeeklyResetResponse(
            week_start_date=week_start_date,
            winners=winners,
            reset_count=reset_count,
            effects=effects,
        )

    # ------------------------------------------------------------------
    # 관리자 보상 설정
    # ------------------------------------------------------------------
    def list_reward_configs(self) -> List[CheckInRewardConfigSchema]:
        return self.rewards_repo.list_configs()

    def create_reward_config(
        self, request: CheckInRewardConfigCreate
    ) -> CheckInRewardConfigSchema:
        try:
            config = self.rewards_repo.create(**request.model_dump())
        except IntegrityError:
            raise ValidationError(
                f"Reward config for {request.consecutive_days} days already exists"
            )
        logger.info(
            f"Created check-in reward config: {request.consecutive_days} days -> {request.diamond_reward}"
        )
        return CheckInRewardConfigSchema.model_validate(config)

    def update_reward_config(
        self, config_id: int, request: CheckInRewardConfigUpdate
    ) -> CheckInRewardConfigSchema:
        config = self.rewards_repo.update(
            config_id, **request.model_dump(exclude_none=True)
        )
        if config is None:
            raise NotFoundError(f"Reward config {config_id} not found")
        logger.info(f"Updated check-in reward config {config_id}")
        return CheckInRewardConfigSchema.model_validate(config)

    def delete_reward_config(self, config_id: int) -> bool:
        if not self.rewards_repo.delete(config_id):
            raise NotFoundError(f"Reward config {config_id} not found")
        logger.info(f"Deleted check-in reward config {config_id}")
        return True
