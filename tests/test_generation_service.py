import asyncio
import random
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from ledgerapi.config import settings
from ledgerapi.core.exceptions import (
    ExternalFailureCause,
    ExternalServiceFailure,
    InsufficientFundsError,
    JobAlreadyCompletedError,
    NoCredentialsAvailableError,
    RefundFailedError,
    ValidationError,
)
from ledgerapi.models import (
    ApiCredential,
    GenerationJob,
    GenerationJobStatusEnum,
    LedgerEntry,
    LedgerKind,
)
from ledgerapi.schemas.credential import CredentialCreate
from ledgerapi.schemas.generation import GenerationRequest
from ledgerapi.services.ai_client import GenerativeAIClient
from ledgerapi.services.credential_pool import CredentialPoolManager
from ledgerapi.services.generation_service import GenerationCostGuard, compute_cost
from ledgerapi.services.ledger_service import BalanceLedger


@pytest.fixture
def credential_pool(session_factory):
    pool = CredentialPoolManager(
        session_factory, settings, GenerativeAIClient(settings), rng=random.Random(7)
    )
    pool.init()
    yield pool
    pool.shutdown()


@pytest.fixture
def credential_id(credential_pool):
    return credential_pool.add_credential(
        CredentialCreate(name="primary", secret_ref="sk-test-0000000001")
    ).id


@pytest.fixture
def guard(db, credential_pool):
    return GenerationCostGuard(db, settings, credential_pool)


@pytest.fixture
def funded_user(db, user_id):
    BalanceLedger(db).apply_delta(user_id, 50, LedgerKind.TOPUP, "top-up")
    return user_id


def _flash_request(**kwargs):
    return GenerationRequest(prompt="a cat in a hat", model=settings.FLASH_MODEL_NAME, **kwargs)


def _pro_request(**kwargs):
    return GenerationRequest(prompt="a cat in a hat", model=settings.PRO_MODEL_NAME, **kwargs)


def _entries(session_factory, user_id):
    session = session_factory()
    try:
        return (
            session.query(LedgerEntry)
            .filter(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.id)
            .all()
        )
    finally:
        session.close()


def _job_status(session_factory, job_id):
    session = session_factory()
    try:
        return session.query(GenerationJob.status).filter(GenerationJob.id == job_id).scalar()
    finally:
        session.close()


def _credential(session_factory, credential_id):
    session = session_factory()
    try:
        return session.get(ApiCredential, credential_id)
    finally:
        session.close()


class TestComputeCost:
    """비용 계산 테스트"""

    @pytest.mark.parametrize(
        "request_kwargs, model, expected",
        [
            ({}, "flash", 1),
            ({"use_upscaler": True, "remove_watermark": True}, "flash", 3),
            ({"image_size": "1K"}, "pro", 10),
            ({"image_size": "2K"}, "pro", 15),
            ({"image_size": "4K", "use_upscaler": True}, "pro", 21),
            ({"enhancement": True, "use_upscaler": True}, "pro", 10),
            ({"enhancement": True}, "flash", 1),
        ],
    )
    def test_cost_table(self, request_kwargs, model, expected):
        request = _pro_request(**request_kwargs) if model == "pro" else _flash_request(**request_kwargs)

        cost, breakdown = compute_cost(request, settings)

        assert cost == expected
        assert sum(breakdown.values()) == expected


class TestReserveAndRefund:
    """예약/환불 테스트"""

    def test_refund_restores_balance_with_two_entries(self, guard, db, user_id, session_factory):
        """비용 5 작업 실패 -> 잔액 원상복구, 원장은 usage -5 / refund +5 두 건"""
        # Arrange
        BalanceLedger(db).apply_delta(user_id, 5, LedgerKind.TOPUP, "top-up")
        before = BalanceLedger(db).get_balance(user_id).balance

        # Act
        reservation = guard.reserve(user_id, "job-5", 5, "Image generation")
        refund = guard.refund("job-5", "transient")

        # Assert
        assert reservation.new_balance == 0
        assert refund.new_balance == before
        entries = _entries(session_factory, user_id)[1:]
        assert [(e.kind, e.amount) for e in entries] == [
            (LedgerKind.USAGE, -5),
            (LedgerKind.REFUND, 5),
        ]
        assert entries[1].related_transaction_id == str(reservation.reserve_entry_id)
        assert _job_status(session_factory, "job-5") == GenerationJobStatusEnum.REFUNDED

    def test_refund_is_applied_once(self, guard, funded_user, session_factory):
        guard.reserve(funded_user, "job-twice", 10, "Image generation")

        first = guard.refund("job-twice", "timeout")
        second = guard.refund("job-twice", "timeout")

        assert first.replayed is False
        assert second.replayed is True
        refunds = [e for e in _entries(session_factory, funded_user) if e.kind == LedgerKind.REFUND]
        assert len(refunds) == 1

    def test_same_job_is_never_reserved_twice(self, guard, funded_user, db):
        guard.reserve(funded_user, "job-dup", 10, "Image generation")

        with pytest.raises(ValidationError):
            guard.reserve(funded_user, "job-dup", 10, "Image generation")

        assert BalanceLedger(db).get_balance(funded_user).balance == 40

    def test_refund_failure_is_surfaced(self, guard, funded_user, session_factory):
        """환불 재시도 후에도 실패하면 RefundFailedError, 작업은 reserved로 남음"""
        guard.reserve(funded_user, "job-stuck", 10, "Image generation")

        with patch.object(guard.ledger, "apply_delta", side_effect=RuntimeError("store down")):
            with pytest.raises(RefundFailedError):
                guard.refund("job-stuck", "transient")

        assert _job_status(session_factory, "job-stuck") == GenerationJobStatusEnum.RESERVED

    def test_reconcile_stale_reservations(self, guard, funded_user, db, session_factory):
        # Arrange
        guard.reserve(funded_user, "job-old", 10, "Image generation")
        guard.reserve(funded_user, "job-new", 10, "Image generation")
        db.query(GenerationJob).filter(GenerationJob.id == "job-old").update(
            {GenerationJob.created_at: datetime.now(timezone.utc) - timedelta(hours=2)}
        )
        db.commit()

        # Act
        result = guard.reconcile_stale_reservations(older_than_minutes=30)

        # Assert
        assert result.checked == 1
        assert [r.job_id for r in result.refunded] == ["job-old"]
        assert _job_status(session_factory, "job-old") == GenerationJobStatusEnum.REFUNDED
        assert _job_status(session_factory, "job-new") == GenerationJobStatusEnum.RESERVED
        assert BalanceLedger(db).get_balance(funded_user).balance == 40

    def test_completed_job_is_never_refunded(self, guard, funded_user, db, session_factory):
        """성공한 작업에 환불 요청 -> 거절, 차감 유지"""
        # Arrange
        reservation = guard.reserve(funded_user, "job-done", 5, "Image generation")
        assert guard.complete(reservation, None) is True

        # Act
        with pytest.raises(JobAlreadyCompletedError):
            guard.refund("job-done", "stale_reservation")

        # Assert
        assert BalanceLedger(db).get_balance(funded_user).balance == 45
        kinds = [e.kind for e in _entries(session_factory, funded_user)]
        assert LedgerKind.REFUND not in kinds
        assert _job_status(session_factory, "job-done") == GenerationJobStatusEnum.SUCCEEDED

    def test_refunded_job_cannot_be_completed(self, guard, funded_user, db, session_factory):
        reservation = guard.reserve(funded_user, "job-late", 5, "Image generation")
        guard.refund("job-late", "timeout")

        assert guard.complete(reservation, None) is False
        assert _job_status(session_factory, "job-late") == GenerationJobStatusEnum.REFUNDED
        assert BalanceLedger(db).get_balance(funded_user).balance == 50

    def test_reconcile_skips_job_completed_after_lookup(self, guard, funded_user, db, session_factory):
        """정산 조회 이후 확정된 작업은 환불하지 않음"""
        # Arrange
        reservation = guard.reserve(funded_user, "job-race", 10, "Image generation")
        db.query(GenerationJob).filter(GenerationJob.id == "job-race").update(
            {GenerationJob.created_at: datetime.now(timezone.utc) - timedelta(hours=2)}
        )
        db.commit()
        stale = guard.find_stale_reservations(older_than_minutes=30)
        guard.complete(reservation, None)

        # Act
        with patch.object(guard, "find_stale_reservations", return_value=stale):
            result = guard.reconcile_stale_reservations(older_than_minutes=30)

        # Assert
        assert result.checked == 1
        assert result.refunded == []
        assert result.failed == []
        assert BalanceLedger(db).get_balance(funded_user).balance == 40
        assert _job_status(session_factory, "job-race") == GenerationJobStatusEnum.SUCCEEDED


class TestGuardedRun:
    """과금 작업 실행 테스트"""

    @pytest.mark.asyncio
    async def test_success_keeps_debit(self, guard, funded_user, credential_id, session_factory):
        # Arrange
        async def job(credential):
            assert credential.id == credential_id
            return "image-bytes"

        # Act
        outcome = await guard.run(funded_user, _pro_request(image_size="2K"), job, job_id="job-ok")

        # Assert
        assert outcome.cost == 15
        assert outcome.new_balance == 35
        assert outcome.result == "image-bytes"
        assert _job_status(session_factory, "job-ok") == GenerationJobStatusEnum.SUCCEEDED
        assert _credential(session_factory, credential_id).usage_count == 1

    @pytest.mark.asyncio
    async def test_result_is_withheld_when_completion_fails(
        self, guard, funded_user, credential_id, db, session_factory
    ):
        """확정 기록 실패 -> 결과 미전달, 환불"""
        async def job(credential):
            return "image-bytes"

        with patch.object(guard.job_repo, "mark_succeeded", side_effect=RuntimeError("store down")):
            with pytest.raises(ExternalServiceFailure):
                await guard.run(funded_user, _flash_request(), job, job_id="job-unrecorded")

        assert BalanceLedger(db).get_balance(funded_user).balance == 50
        assert _job_status(session_factory, "job-unrecorded") == GenerationJobStatusEnum.REFUNDED

    @pytest.mark.asyncio
    async def test_insufficient_funds_skips_external_call(self, guard, user_id, credential_id, session_factory):
        called = []

        async def job(credential):
            called.append(credential)

        with pytest.raises(InsufficientFundsError):
            await guard.run(user_id, _flash_request(), job)

        assert called == []
        assert _entries(session_factory, user_id) == []

    @pytest.mark.asyncio
    async def test_external_failure_refunds_and_reports_credential(
        self, guard, funded_user, credential_id, db, session_factory
    ):
        async def job(credential):
            raise ExternalServiceFailure(ExternalFailureCause.QUOTA_EXCEEDED)

        with pytest.raises(ExternalServiceFailure) as exc_info:
            await guard.run(funded_user, _pro_request(), job, job_id="job-quota")

        assert exc_info.value.cause == ExternalFailureCause.QUOTA_EXCEEDED
        assert BalanceLedger(db).get_balance(funded_user).balance == 50
        assert _job_status(session_factory, "job-quota") == GenerationJobStatusEnum.REFUNDED
        assert _credential(session_factory, credential_id).failure_count == 1

    @pytest.mark.asyncio
    async def test_safety_rejection_does_not_penalize_credential(
        self, guard, funded_user, credential_id, db, session_factory
    ):
        async def job(credential):
            raise ExternalServiceFailure(ExternalFailureCause.SAFETY_REJECTED)

        with pytest.raises(ExternalServiceFailure):
            await guard.run(funded_user, _flash_request(), job)

        assert BalanceLedger(db).get_balance(funded_user).balance == 50
        assert _credential(session_factory, credential_id).failure_count == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_is_refunded_as_unknown(self, guard, funded_user, credential_id, db):
        async def job(credential):
            raise KeyError("candidates")

        with pytest.raises(ExternalServiceFailure) as exc_info:
            await guard.run(funded_user, _flash_request(), job)

        assert exc_info.value.cause == ExternalFailureCause.UNKNOWN
        assert BalanceLedger(db).get_balance(funded_user).balance == 50

    @pytest.mark.asyncio
    async def test_timeout_refunds(self, guard, funded_user, credential_id, db, session_factory):
        async def job(credential):
            await asyncio.sleep(5)

        with pytest.raises(ExternalServiceFailure) as exc_info:
            await guard.run(funded_user, _pro_request(), job, job_id="job-slow", timeout=0.05)

        assert exc_info.value.cause == ExternalFailureCause.TIMEOUT
        assert BalanceLedger(db).get_balance(funded_user).balance == 50
        assert _job_status(session_factory, "job-slow") == GenerationJobStatusEnum.REFUNDED

    @pytest.mark.asyncio
    async def test_cancellation_refunds_and_propagates(
        self, guard, funded_user, credential_id, db, session_factory
    ):
        # Arrange
        started = asyncio.Event()

        async def job(credential):
            started.set()
            await asyncio.sleep(5)

        task = asyncio.create_task(guard.run(funded_user, _pro_request(), job, job_id="job-cancel"))
        await started.wait()

        # Act
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        # Assert
        assert BalanceLedger(db).get_balance(funded_user).balance == 50
        assert _job_status(session_factory, "job-cancel") == GenerationJobStatusEnum.REFUNDED
        assert _credential(session_factory, credential_id).failure_count == 0

    @pytest.mark.asyncio
    async def test_no_credentials_refunds(self, guard, funded_user, db, session_factory):
        async def job(credential):
            return "never"

        with pytest.raises(NoCredentialsAvailableError):
            await guard.run(funded_user, _flash_request(), job, job_id="job-nocred")

        assert BalanceLedger(db).get_balance(funded_user).balance == 50
        assert _job_status(session_factory, "job-nocred") == GenerationJobStatusEnum.REFUNDED
