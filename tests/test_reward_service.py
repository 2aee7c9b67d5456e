import threading
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from ledgerapi.config import Settings, settings
from ledgerapi.core.exceptions import (
    AlreadyClaimedError,
    NotEligibleError,
    NotFoundError,
    ValidationError,
)
from ledgerapi.models import CheckInRewardConfig, LedgerEntry, User, WeeklyRewardLog
from ledgerapi.schemas.rewards import CheckInRewardConfigCreate, CheckInRewardConfigUpdate
from ledgerapi.services.ledger_service import BalanceLedger
from ledgerapi.services.reward_service import RewardClaimService
from ledgerapi.utils.timezone_utils import (
    closing_week_start,
    cycle_key,
    get_local_date,
    month_bounds,
    week_start,
)

TODAY = date(2024, 3, 20)


@pytest.fixture
def reward_service(db):
    return RewardClaimService(db, settings)


def _check_in_days(service, user_id, first_day, count):
    for offset in range(count):
        service.check_in(user_id, today=first_day + timedelta(days=offset))


class TestDailyCheckIn:
    """일일 체크인 테스트"""

    def test_check_in_credits_daily_reward(self, reward_service, user_id):
        # Act
        result = reward_service.check_in(user_id, today=TODAY)

        # Assert
        assert result.reward_amount == settings.DAILY_CHECK_IN_REWARD
        assert result.new_balance == settings.DAILY_CHECK_IN_REWARD
        assert result.monthly_count == 1
        assert result.streak == 1

    def test_second_check_in_same_day_is_rejected(self, reward_service, user_id, db):
        """같은 날 두 번째 체크인은 AlreadyClaimed, 잔액 변화 없음"""
        reward_service.check_in(user_id, today=TODAY)

        with pytest.raises(AlreadyClaimedError):
            reward_service.check_in(user_id, today=TODAY)

        assert BalanceLedger(db).get_balance(user_id).balance == settings.DAILY_CHECK_IN_REWARD

    def test_configured_daily_reward_overrides_default(self, reward_service, user_id, db):
        """check_in_rewards 설정(1일)이 있으면 해당 금액 지급"""
        db.add(CheckInRewardConfig(consecutive_days=1, diamond_reward=12, is_active=True))
        db.commit()

        result = reward_service.check_in(user_id, today=TODAY)

        assert result.reward_amount == 12

    def test_streak_counts_consecutive_days(self, reward_service, user_id):
        """연속 일수는 끊긴 날 이후부터 계산"""
        reward_service.check_in(user_id, today=TODAY - timedelta(days=5))
        _check_in_days(reward_service, user_id, TODAY - timedelta(days=2), 3)

        status = reward_service.get_check_in_status(user_id, today=TODAY)

        assert status.streak == 3
        assert status.monthly_count == 4
        assert status.checked_in_today is True

    def test_streak_kept_before_today_check_in(self, reward_service, user_id):
        """오늘 체크인 전에는 어제까지의 연속 기록 유지"""
        _check_in_days(reward_service, user_id, TODAY - timedelta(days=2), 2)

        status = reward_service.get_check_in_status(user_id, today=TODAY)

        assert status.checked_in_today is False
        assert status.streak == 2

    def test_concurrent_check_ins_pay_once(self, user_id, session_factory):
        """동시 체크인 10건 중 정확히 1건만 지급"""
        # Arrange
        successes, rejected = [], []
        lock = threading.Lock()

        def worker():
            session = session_factory()
            try:
                RewardClaimService(session, settings).check_in(user_id, today=TODAY)
                with lock:
                    successes.append(1)
            except AlreadyClaimedError:
                with lock:
                    rejected.append(1)
            finally:
                session.close()

        # Act
        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # Assert
        check = session_factory()
        try:
            assert len(successes) == 1
            assert len(rejected) == 9
            assert check.query(LedgerEntry).filter(LedgerEntry.user_id == user_id).count() == 1
            assert BalanceLedger(check).get_balance(user_id).balance == settings.DAILY_CHECK_IN_REWARD
        finally:
            check.close()


class TestMilestones:
    """월간 마일스톤 테스트"""

    def test_claim_after_reaching_threshold(self, reward_service, user_id):
        # Arrange
        _check_in_days(reward_service, user_id, date(2024, 3, 1), 7)
        balance_before = 7 * settings.DAILY_CHECK_IN_REWARD

        # Act
        result = reward_service.claim_milestone(user_id, 7, today=date(2024, 3, 7))

        # Assert
        assert result.cycle_key == "2024-03"
        assert result.reward_amount == 20
        assert result.new_balance == balance_before + 20

    def test_claim_twice_in_same_cycle_is_rejected(self, reward_service, user_id):
        _check_in_days(reward_service, user_id, date(2024, 3, 1), 7)
        reward_service.claim_milestone(user_id, 7, today=date(2024, 3, 7))

        with pytest.raises(AlreadyClaimedError):
            reward_service.claim_milestone(user_id, 7, today=date(2024, 3, 8))

    def test_claim_below_threshold_is_not_eligible(self, reward_service, user_id):
        _check_in_days(reward_service, user_id, date(2024, 3, 1), 6)

        with pytest.raises(NotEligibleError) as exc_info:
            reward_service.claim_milestone(user_id, 7, today=date(2024, 3, 6))

        assert exc_info.value.details == {"required": 7, "current": 6}

    def test_unknown_milestone_day_is_not_eligible(self, reward_service, user_id):
        with pytest.raises(NotEligibleError):
            reward_service.claim_milestone(user_id, 8, today=TODAY)

    def test_new_month_starts_new_cycle(self, reward_service, user_id):
        """다음 달에는 체크인 수가 다시 0부터 계산됨"""
        _check_in_days(reward_service, user_id, date(2024, 3, 25), 7)

        # 3월 25~31일 7회 -> 3월 사이클에서 수령 가능
        reward_service.claim_milestone(user_id, 7, today=date(2024, 3, 31))

        with pytest.raises(NotEligibleError):
            reward_service.claim_milestone(user_id, 7, today=date(2024, 4, 1))

    def test_status_lists_milestones(self, reward_service, user_id):
        _check_in_days(reward_service, user_id, date(2024, 3, 1), 7)
        reward_service.claim_milestone(user_id, 7, today=date(2024, 3, 7))

        status = reward_service.get_check_in_status(user_id, today=date(2024, 3, 7))

        by_day = {m.day: m for m in status.milestones}
        assert sorted(by_day) == [7, 14, 30]
        assert by_day[7].claimed is True
        assert by_day[7].eligible is False
        assert by_day[14].eligible is False


class TestWeeklyLeaderboard:
    """주간 리더보드 정산 테스트"""

    def test_top_three_are_paid_and_points_reset(self, db, make_user, session_factory):
        # Arrange
        first = make_user(weekly_points=300)
        second = make_user(weekly_points=200)
        third = make_user(weekly_points=100)
        fourth = make_user(weekly_points=50)
        week = date(2024, 3, 18)

        # Act
        result = RewardClaimService(db, settings).reset_weekly_rewards(week)

        # Assert
        assert [w.user_id for w in result.winners] == [first, second, third]
        assert [w.reward_amount for w in result.winners] == [100, 50, 30]
        assert all(w.paid for w in result.winners)
        assert [e.user_id for e in result.effects] == [first, second, third]
        assert result.reset_count == 4

        check = session_factory()
        try:
            ledger = BalanceLedger(check)
            assert ledger.get_balance(first).balance == 100
            assert ledger.get_balance(fourth).balance == 0
            assert check.query(User).filter(User.weekly_points != 0).count() == 0
        finally:
            check.close()

    def test_running_twice_does_not_double_pay(self, db, make_user, session_factory):
        """같은 주 재실행 - 추가 지급 없음"""
        winner = make_user(weekly_points=10)
        week = date(2024, 3, 18)
        service = RewardClaimService(db, settings)

        service.reset_weekly_rewards(week)
        second = service.reset_weekly_rewards(week)

        assert second.winners == []
        assert second.effects == []
        assert BalanceLedger(db).get_balance(winner).balance == 100

    def test_rerun_after_partial_payout_skips_paid_winner(self, db, make_user):
        """중간 실패 후 재실행 - 이미 지급된 수상자는 건너뜀"""
        # Arrange
        first = make_user(weekly_points=30)
        second = make_user(weekly_points=20)
        week = date(2024, 3, 18)
        service = RewardClaimService(db, settings)
        db.add(
            WeeklyRewardLog(
                user_id=first,
                rank=1,
                reward_desc="100 diamonds (rank 1)",
                reward_amount=100,
                week_start_date=week,
                weekly_points=30,
            )
        )
        db.commit()

        # Act
        result = service.reset_weekly_rewards(week)

        # Assert
        assert [(w.user_id, w.paid) for w in result.winners] == [(first, False), (second, True)]
        assert [e.user_id for e in result.effects] == [second]
        assert BalanceLedger(db).get_balance(second).balance == 50

    def test_retry_after_monday_midnight_uses_same_week(self, db, make_user):
        """일요일 밤 실행이 점수 초기화 전에 실패 -> 월요일 재시도는 같은 주로 처리, 중복 지급 없음"""
        # Arrange
        first = make_user(weekly_points=30)
        second = make_user(weekly_points=20)
        service = RewardClaimService(db, settings)
        target = "ledgerapi.services.reward_service.get_local_date"

        with patch(target, return_value=date(2024, 3, 24)):
            with patch.object(
                service.user_repo, "reset_weekly_points", side_effect=RuntimeError("store down")
            ):
                with pytest.raises(RuntimeError):
                    service.reset_weekly_rewards()

        # Act
        with patch(target, return_value=date(2024, 3, 25)):
            retry = service.reset_weekly_rewards()

        # Assert
        assert retry.week_start_date == date(2024, 3, 18)
        assert [w.paid for w in retry.winners] == [False, False]
        assert retry.effects == []
        assert BalanceLedger(db).get_balance(first).balance == 100
        assert BalanceLedger(db).get_balance(second).balance == 50
        assert db.query(User).filter(User.weekly_points != 0).count() == 0

    def test_explicit_date_is_normalized_to_monday(self, db, make_user):
        make_user(weekly_points=5)

        result = RewardClaimService(db, settings).reset_weekly_rewards(date(2024, 3, 21))

        assert result.week_start_date == date(2024, 3, 18)

    def test_ties_are_broken_by_signup_order(self, db, make_user):
        early = make_user(weekly_points=10)
        late = make_user(weekly_points=10)
        db.query(User).filter(User.id == early).update(
            {User.created_at: datetime(2024, 1, 1, tzinfo=timezone.utc)}
        )
        db.query(User).filter(User.id == late).update(
            {User.created_at: datetime(2024, 2, 1, tzinfo=timezone.utc)}
        )
        db.commit()

        result = RewardClaimService(db, settings).reset_weekly_rewards(date(2024, 3, 18))

        assert [w.user_id for w in result.winners] == [early, late]

    def test_sender_id_is_attached_to_notifications(self, db, make_user):
        make_user(weekly_points=5)
        custom = Settings(WEEKLY_REWARD_SENDER_ID="system-bot")

        result = RewardClaimService(db, custom).reset_weekly_rewards(date(2024, 3, 18))

        assert result.effects[0].sender_id == "system-bot"

    def test_add_weekly_points(self, reward_service, user_id):
        assert reward_service.add_weekly_points(user_id, 5) == 5
        assert reward_service.add_weekly_points(user_id, 7) == 12

        with pytest.raises(ValidationError):
            reward_service.add_weekly_points(user_id, 0)
        with pytest.raises(NotFoundError):
            reward_service.add_weekly_points("missing-user", 3)


class TestReferral:
    """추천 코드 보상 테스트"""

    def test_claim_credits_invitee_and_referrer(self, reward_service, make_user, db, session_factory):
        # Arrange
        referrer = make_user()
        invitee = make_user()
        code = reward_service.get_referral_code(referrer).referral_code

        # Act
        result = reward_service.claim_referral(invitee, code.lower())

        # Assert
        assert code == referrer[:8].upper()
        assert result.referrer_id == referrer
        assert result.new_balance == settings.REFERRAL_BONUS
        assert BalanceLedger(db).get_balance(referrer).balance == settings.REFERRAL_BONUS
        assert [e.user_id for e in result.effects] == [referrer]
        check = session_factory()
        try:
            refs = sorted(
                ref for (ref,) in check.query(LedgerEntry.ref_id)
                .filter(LedgerEntry.ref_id.like("referral:%"))
                .all()
            )
        finally:
            check.close()
        assert refs == [f"referral:given:{invitee}", f"referral:received:{invitee}"]

    def test_second_claim_is_rejected(self, reward_service, make_user, db):
        """다른 추천인 코드로 다시 시도해도 1회만 지급"""
        first_referrer = make_user()
        second_referrer = make_user()
        invitee = make_user()
        reward_service.claim_referral(invitee, first_referrer[:8])

        with pytest.raises(AlreadyClaimedError):
            reward_service.claim_referral(invitee, second_referrer[:8])

        assert BalanceLedger(db).get_balance(invitee).balance == settings.REFERRAL_BONUS
        assert BalanceLedger(db).get_balance(second_referrer).balance == 0

    def test_self_referral_is_rejected(self, reward_service, user_id, session_factory):
        with pytest.raises(ValidationError):
            reward_service.claim_referral(user_id, user_id[:8])

        check = session_factory()
        try:
            assert check.query(LedgerEntry).filter(LedgerEntry.user_id == user_id).count() == 0
        finally:
            check.close()

    @pytest.mark.parametrize("code", ["ZZZZZZZZ", "%%%%%%%%"])
    def test_unknown_code(self, reward_service, user_id, code):
        with pytest.raises(NotFoundError):
            reward_service.claim_referral(user_id, code)


class TestRewardConfigAdmin:
    """체크인 보상 설정 관리 테스트"""

    def test_config_crud(self, reward_service):
        created = reward_service.create_reward_config(
            CheckInRewardConfigCreate(consecutive_days=7, diamond_reward=40)
        )
        assert created.diamond_reward == 40

        with pytest.raises(ValidationError):
            reward_service.create_reward_config(
                CheckInRewardConfigCreate(consecutive_days=7, diamond_reward=10)
            )

        updated = reward_service.update_reward_config(
            created.id, CheckInRewardConfigUpdate(diamond_reward=45)
        )
        assert updated.diamond_reward == 45
        assert [c.consecutive_days for c in reward_service.list_reward_configs()] == [7]

        assert reward_service.delete_reward_config(created.id) is True
        with pytest.raises(NotFoundError):
            reward_service.delete_reward_config(created.id)


class TestTimezoneUtils:
    """시스템 타임존 날짜 경계 테스트"""

    def test_local_date_uses_system_timezone(self):
        # 2024-03-19 20:00 UTC == 2024-03-20 03:00 (UTC+7)
        now = datetime(2024, 3, 19, 20, 0, tzinfo=timezone.utc)
        assert get_local_date(now) == date(2024, 3, 20)

    def test_month_and_week_boundaries(self):
        assert month_bounds(date(2024, 12, 15)) == (date(2024, 12, 1), date(2025, 1, 1))
        assert cycle_key(date(2024, 2, 29)) == "2024-02"
        assert week_start(date(2024, 3, 24)) == date(2024, 3, 18)

    def test_closing_week_start(self):
        # 일요일 실행과 월요일 재시도는 같은 주, 목요일 실행은 그 주
        assert closing_week_start(date(2024, 3, 24)) == date(2024, 3, 18)
        assert closing_week_start(date(2024, 3, 25)) == date(2024, 3, 18)
        assert closing_week_start(date(2024, 3, 27)) == date(2024, 3, 18)
        assert closing_week_start(date(2024, 3, 28)) == date(2024, 3, 25)
