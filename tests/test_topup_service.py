import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ledgerapi.config import settings
from ledgerapi.core.exceptions import (
    AlreadySettledError,
    ConflictingSettlementError,
    NotFoundError,
)
from ledgerapi.models import CreditPackage, LedgerEntry, LedgerKind, Promotion, TopupStatusEnum
from ledgerapi.schemas.topup import PaymentEvent, PromotionCreate, SettlementOutcome
from ledgerapi.services.ledger_service import BalanceLedger
from ledgerapi.services.topup_service import TopupService, compute_coins


@pytest.fixture
def make_package(session_factory):
    def _make(credits_amount=50, bonus_percent=10, is_active=True, price=Decimal("50000")):
        session = session_factory()
        try:
            package = CreditPackage(
                name=f"Pack {credits_amount}",
                credits_amount=credits_amount,
                price_vnd=price,
                bonus_percent=bonus_percent,
                is_active=is_active,
            )
            session.add(package)
            session.commit()
            return package.id
        finally:
            session.close()

    return _make


@pytest.fixture
def topup_service(db):
    return TopupService(db, settings)


def _ledger_entries(session_factory, user_id):
    session = session_factory()
    try:
        return session.query(LedgerEntry).filter(LedgerEntry.user_id == user_id).all()
    finally:
        session.close()


class TestComputeCoins:
    def test_bonus_is_floored(self):
        assert compute_coins(50, 10) == 55
        assert compute_coins(15, 10) == 16
        assert compute_coins(100, 0) == 100

    def test_promotion_bonus_is_added_to_package_bonus(self):
        assert compute_coins(100, 10, 20) == 130
        assert compute_coins(15, 10, 10) == 17


class TestTopupCreation:
    """충전 거래 생성 테스트"""

    def test_create_pending_transaction(self, topup_service, user_id, make_package):
        package_id = make_package(credits_amount=50, bonus_percent=10)

        transaction = topup_service.create_transaction(user_id, package_id)

        assert transaction.status == TopupStatusEnum.PENDING
        assert transaction.coins_to_credit == 55
        assert transaction.bonus_percent == 10
        assert transaction.code == f"{settings.TOPUP_CODE_PREFIX}{transaction.order_code}"

    def test_best_active_promotion_stacks_on_package_bonus(
        self, topup_service, user_id, make_package, db
    ):
        # Arrange
        package_id = make_package(credits_amount=100, bonus_percent=5)
        now = datetime.now(timezone.utc)
        db.add_all(
            [
                Promotion(title="small", bonus_percent=20, start_time=now - timedelta(days=1),
                          end_time=now + timedelta(days=1), is_active=True),
                Promotion(title="big", bonus_percent=50, start_time=now - timedelta(days=1),
                          end_time=now + timedelta(days=1), is_active=True),
                Promotion(title="expired", bonus_percent=90, start_time=now - timedelta(days=3),
                          end_time=now - timedelta(days=2), is_active=True),
            ]
        )
        db.commit()

        # Act
        transaction = topup_service.create_transaction(user_id, package_id)
        offers = topup_service.list_packages()

        # Assert
        assert transaction.bonus_percent == 55
        assert transaction.coins_to_credit == 155
        assert offers[0].effective_bonus_percent == 55
        assert offers[0].coins_to_credit == 155

    def test_inactive_package_is_not_found(self, topup_service, user_id, make_package):
        package_id = make_package(is_active=False)

        with pytest.raises(NotFoundError):
            topup_service.create_transaction(user_id, package_id)

    def test_promotion_period_is_validated(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(ValueError):
            PromotionCreate(title="bad", bonus_percent=10, start_time=now, end_time=now)


class TestTopupSettlement:
    """충전 거래 정산 테스트"""

    def test_paid_then_failed_is_conflicting(self, topup_service, user_id, make_package, session_factory):
        """55 다이아몬드 거래 승인 후 거절 -> ConflictingSettlement, 잔액 변화 없음"""
        # Arrange
        transaction = topup_service.create_transaction(user_id, make_package(50, 10))

        # Act
        result = topup_service.settle(transaction.id, SettlementOutcome.PAID)

        # Assert
        assert result.changed is True
        assert result.status == TopupStatusEnum.PAID
        assert result.new_balance == 55
        assert len(result.effects) == 1
        assert result.effects[0].user_id == user_id

        with pytest.raises(ConflictingSettlementError):
            topup_service.settle(transaction.id, SettlementOutcome.FAILED)

        entries = _ledger_entries(session_factory, user_id)
        assert [(e.kind, e.amount) for e in entries] == [(LedgerKind.TOPUP, 55)]
        assert entries[0].related_transaction_id == str(transaction.id)

    def test_repeat_settlement_is_already_settled(self, topup_service, user_id, make_package):
        transaction = topup_service.create_transaction(user_id, make_package())
        topup_service.settle(transaction.id, SettlementOutcome.PAID)

        with pytest.raises(AlreadySettledError):
            topup_service.settle(transaction.id, SettlementOutcome.PAID)

        replay = topup_service.settle_idempotent(transaction.id, SettlementOutcome.PAID)
        assert replay.changed is False
        assert replay.effects == []

    def test_failed_settlement_credits_nothing(self, topup_service, user_id, make_package, db):
        transaction = topup_service.create_transaction(user_id, make_package())

        result = topup_service.settle(transaction.id, SettlementOutcome.FAILED)

        assert result.status == TopupStatusEnum.FAILED
        assert result.new_balance is None
        assert result.effects == []
        assert BalanceLedger(db).get_balance(user_id).balance == 0

    def test_unknown_transaction(self, topup_service):
        with pytest.raises(NotFoundError):
            topup_service.settle(9999, SettlementOutcome.PAID)

    def test_concurrent_paid_settlements_credit_once(self, user_id, make_package, session_factory):
        """동시 승인 8건 -> 정확히 1건만 상태 변경 및 지급"""
        # Arrange
        setup = session_factory()
        transaction = TopupService(setup, settings).create_transaction(user_id, make_package(50, 10))
        setup.close()

        changed, already = [], []
        lock = threading.Lock()

        def worker():
            session = session_factory()
            try:
                TopupService(session, settings).settle(transaction.id, SettlementOutcome.PAID)
                with lock:
                    changed.append(1)
            except AlreadySettledError:
                with lock:
                    already.append(1)
            finally:
                session.close()

        # Act
        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # Assert
        assert len(changed) == 1
        assert len(already) == 7
        entries = _ledger_entries(session_factory, user_id)
        assert [e.amount for e in entries] == [55]

    def test_bulk_settle_isolates_failures(self, topup_service, user_id, make_package):
        # Arrange
        package_id = make_package(20, 0)
        pending = topup_service.create_transaction(user_id, package_id)
        already_paid = topup_service.create_transaction(user_id, package_id)
        rejected = topup_service.create_transaction(user_id, package_id)
        topup_service.settle(already_paid.id, SettlementOutcome.PAID)
        topup_service.settle(rejected.id, SettlementOutcome.FAILED)

        # Act
        result = topup_service.bulk_settle(
            [pending.id, already_paid.id, rejected.id, 424242, pending.id],
            SettlementOutcome.PAID,
        )

        # Assert
        by_id = {item.transaction_id: item for item in result.results}
        assert len(result.results) == 4
        assert by_id[pending.id].success is True and by_id[pending.id].changed is True
        assert by_id[already_paid.id].success is True and by_id[already_paid.id].changed is False
        assert by_id[rejected.id].error_code == "TOPUP_002"
        assert by_id[424242].error_code == "NOT_FOUND_001"
        assert (result.succeeded, result.failed) == (2, 2)
        assert len(result.effects) == 1
        assert BalanceLedger(topup_service.db).get_balance(user_id).balance == 40


class TestPaymentEvents:
    """결제 게이트웨이 이벤트 테스트"""

    def test_settle_by_code_and_order_code(self, topup_service, user_id, make_package):
        package_id = make_package(30, 0)
        by_code = topup_service.create_transaction(user_id, package_id)
        by_order = topup_service.create_transaction(user_id, package_id)

        first = topup_service.settle_by_reference(SettlementOutcome.PAID, code=by_code.code.lower())
        second = topup_service.settle_by_reference(
            SettlementOutcome.FAILED, order_code=by_order.order_code
        )
        redelivered = topup_service.settle_by_reference(SettlementOutcome.PAID, code=by_code.code)

        assert first.changed is True and first.new_balance == 30
        assert second.status == TopupStatusEnum.FAILED
        assert redelivered.changed is False

    def test_unknown_reference(self, topup_service):
        with pytest.raises(NotFoundError):
            topup_service.settle_by_reference(SettlementOutcome.PAID, code="NAP0")

    def test_event_status_mapping(self):
        assert PaymentEvent(code="NAP1", status="paid").outcome() == SettlementOutcome.PAID
        assert PaymentEvent(order_code=1, status="CANCELLED").outcome() == SettlementOutcome.FAILED
        assert PaymentEvent(order_code=1, status="PROCESSING").outcome() is None
        with pytest.raises(ValueError):
            PaymentEvent(status="PAID")


class TestTopupAdmin:
    def test_delete_and_list_transactions(self, topup_service, user_id, make_package):
        package_id = make_package()
        keep = topup_service.create_transaction(user_id, package_id)
        drop = topup_service.create_transaction(user_id, package_id)
        topup_service.settle(keep.id, SettlementOutcome.PAID)

        assert topup_service.delete_transaction(drop.id) is True
        with pytest.raises(NotFoundError):
            topup_service.delete_transaction(drop.id)

        assert [t.id for t in topup_service.list_user_transactions(user_id)] == [keep.id]
        assert [t.id for t in topup_service.list_transactions(status=TopupStatusEnum.PENDING)] == []

    def test_unreferenced_package_is_deleted(self, topup_service, make_package, session_factory):
        package_id = make_package()

        assert topup_service.delete_package(package_id) == "deleted"

        session = session_factory()
        try:
            assert session.get(CreditPackage, package_id) is None
        finally:
            session.close()

    def test_referenced_package_is_hidden(self, topup_service, user_id, make_package, session_factory):
        """거래가 참조하는 패키지 -> 비활성화, 거래는 유지"""
        # Arrange
        package_id = make_package()
        transaction = topup_service.create_transaction(user_id, package_id)

        # Act
        action = topup_service.delete_package(package_id)

        # Assert
        assert action == "hidden"
        session = session_factory()
        try:
            assert session.get(CreditPackage, package_id).is_active is False
        finally:
            session.close()
        assert topup_service.list_packages() == []
        assert [t.id for t in topup_service.list_user_transactions(user_id)] == [transaction.id]

    def test_delete_unknown_package(self, topup_service):
        with pytest.raises(NotFoundError):
            topup_service.delete_package(999)
