"""
생성 비용 가드 - "작업 전 선차감, 성공 시 확정 / 실패 시 환불"

흐름:
1. 요청 파라미터로 비용 계산 (결정적)
2. 예약: generation_jobs 행 + usage 차감을 하나의 트랜잭션으로 기록
   (작업 키가 PK이므로 같은 작업은 두 번 예약되지 않음)
3. 자격증명 획득 후 제한 시간 안에 외부 작업 실행
4. 성공: reserved -> succeeded 전이(CAS)에 성공해야 결과 전달, 자격증명 성공 보고
5. 실패/타임아웃/취소: 자격증명 실패 보고, reserved -> refunded 선점 후
   refund:<job_id> 키로 정확히 한 번 환불 (succeeded 작업은 환불 불가)

환불이 끝내 실패하면 CRITICAL 로그를 남기고 RefundFailedError를 전달합니다.
해당 작업은 reserved 상태로 남아 reconcile_stale_reservations()의 정산 대상이 됩니다.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerapi.config import Settings
from ledgerapi.core.exceptions import (
    ExternalFailureCause,
    ExternalServiceFailure,
    JobAlreadyCompletedError,
    NoCredentialsAvailableError,
    NotFoundError,
    RefundFailedError,
    ValidationError,
)
from ledgerapi.models.generation import GenerationJobStatusEnum
from ledgerapi.models.ledger import LedgerKind
from ledgerapi.repositories.generation_repository import GenerationJobRepository
from ledgerapi.schemas.credential import CredentialHandle
from ledgerapi.schemas.generation import (
    CostQuote,
    GenerationJobSchema,
    GenerationOutcome,
    GenerationRequest,
    RefundResult,
    Reservation,
    StaleReconcileResponse,
)
from ledgerapi.services.credential_pool import CredentialPoolManager
from ledgerapi.services.ledger_service import BalanceLedger
from ledgerapi.utils.store_retry import with_store_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRO_SIZE_COSTS = {"1K": 10, "2K": 15, "4K": 20}
FLASH_COST = 1
UPSCALER_COST = 1
WATERMARK_REMOVAL_COST = 1
PRO_ENHANCEMENT_COST = 10
FLASH_ENHANCEMENT_COST = 1

# 자격증명 문제로 보지 않는 실패 원인
NON_CREDENTIAL_CAUSES = {ExternalFailureCause.SAFETY_REJECTED, ExternalFailureCause.CANCELLED}


def compute_cost(request: GenerationRequest, settings: Settings) -> Tuple[int, Dict[str, int]]:
    """요청 비용과 항목별 내역"""
    is_pro = request.model == settings.PRO_MODEL_NAME

    if request.enhancement:
        base = PRO_ENHANCEMENT_COST if is_pro else FLASH_ENHANCEMENT_COST
        return base, {"enhancement": base}

    breakdown = {"base": PRO_SIZE_COSTS[request.image_size] if is_pro else FLASH_COST}
    if request.use_upscaler:
        breakdown["upscaler"] = UPSCALER_COST
    if request.remove_watermark:
        breakdown["watermark_removal"] = WATERMARK_REMOVAL_COST
    return sum(breakdown.values()), breakdown


def describe_request(request: GenerationRequest, settings: Settings) -> str:
    is_pro = request.model == settings.PRO_MODEL_NAME
    label = "Image enhancement" if request.enhancement else "Image generation"
    description = f"{label} ({'Pro ' + request.image_size if is_pro else 'Flash'})"
    if not request.enhancement:
        if request.use_upscaler:
            description += " + Upscale"
        if request.remove_watermark:
            description += " + NoWatermark"
    return description


class GenerationCostGuard:
    """과금 작업 래퍼 - 예약, 실행, 확정/환불"""

    def __init__(
        self,
        db: Session,
        settings: Settings,
        credential_pool: CredentialPoolManager,
    ):
        self.db = db
        self.settings = settings
        self.credential_pool = credential_pool
        self.job_repo = GenerationJobRepository(db)
        self.ledger = BalanceLedger(db)

    def quote(self, request: GenerationRequest) -> CostQuote:
        cost, breakdown = compute_cost(request, self.settings)
        return CostQuote(model=request.model, cost=cost, breakdown=breakdown)

    # ------------------------------------------------------------------
    # 예약 / 확정 / 환불
    # ------------------------------------------------------------------
    def reserve(self, user_id: str, job_id: str, cost: int, description: str) -> Reservation:
        """작업 행 생성 + 차감 (하나의 트랜잭션)

        Raises:
            InsufficientFundsError: 잔액 부족 (외부 호출 전에 중단)
            ValidationError: 같은 작업 키로 이미 예약된 경우
        """

        def operation():
            try:
                job = self.job_repo.add_reservation(job_id, user_id, cost, description)
                result = self.ledger.apply_delta(
                    user_id=user_id,
                    amount=-cost,
                    kind=LedgerKind.USAGE,
                    description=description,
                    ref_id=f"generation:{job_id}",
                    commit=False,
                )
                job.reserve_entry_id = result.entry_id
                self.db.flush()
                self.db.commit()
                return result
            except IntegrityError:
                self.db.rollback()
                raise ValidationError(
                    "Generation job already reserved", details={"job_id": job_id}
                )
            except Exception:
                self.db.rollback()
                raise

        result = with_store_retry(self.db, operation, label=f"reserve[{job_id}]")
        logger.info(f"Reserved {cost} for job {job_id} (user {user_id}) -> {result.new_balance}")
        return Reservation(
            job_id=job_id,
            user_id=user_id,
            cost=cost,
            reserve_entry_id=result.entry_id,
            new_balance=result.new_balance,
        )

    def complete(self, reservation: Reservation, credential_id: Optional[int]) -> bool:
        """예약 확정 (reserved -> succeeded) - 차감이 최종 과금이 됨

        Returns:
            bool: 확정 여부. 이미 환불된 작업이면 False

        Raises:
            저장소 오류는 재시도 후 그대로 전달 (작업은 reserved로 남음)
        """

        def operation() -> bool:
            try:
                changed = self.job_repo.mark_succeeded(reservation.job_id, credential_id)
                self.db.commit()
                return changed
            except Exception:
                self.db.rollback()
                raise

        completed = with_store_retry(
            self.db, operation, label=f"complete[{reservation.job_id}]"
        )
        if not completed:
            logger.error(
                f"Job {reservation.job_id} could not be completed; it is no longer reserved"
            )
        return completed

    def refund(
        self,
        job_id: str,
        cause: str,
        credential_id: Optional[int] = None,
    ) -> RefundResult:
        """예약 환불 - refund:<job_id> 키로 정확히 한 번만 반영

        Raises:
            JobAlreadyCompletedError: 이미 succeeded인 작업 (과금 확정, 환불하지 않음)
            RefundFailedError: 재시도 후에도 환불하지 못한 경우 (수동 정산 필요)
        """
        attempts = max(1, self.settings.REFUND_MAX_ATTEMPTS)
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                return self._refund_once(job_id, cause, credential_id)
            except (NotFoundError, JobAlreadyCompletedError):
                raise
            except Exception as e:
                self.db.rollback()
                last_error = e
                logger.warning(
                    f"Refund attempt {attempt}/{attempts} for job {job_id} failed: {str(e)}"
                )
                if attempt < attempts:
                    time.sleep(self.settings.STORE_RETRY_BACKOFF_SECONDS * attempt)

        logger.critical(
            f"REFUND FAILED for job {job_id} after {attempts} attempts; "
            f"manual reconciliation required: {str(last_error)}"
        )
        raise RefundFailedError(details={"job_id": job_id, "cause": cause})

    def _refund_once(
        self, job_id: str, cause: str, credential_id: Optional[int]
    ) -> RefundResult:
        ref_id = f"refund:{job_id}"
        job = self.job_repo.get_fresh(job_id)
        if job is None:
            raise NotFoundError(f"Generation job {job_id} not found")

        if job.status == GenerationJobStatusEnum.SUCCEEDED:
            logger.warning(f"Refund requested for completed job {job_id} ({cause}); ignored")
            raise JobAlreadyCompletedError(details={"job_id": job_id})

        if job.status == GenerationJobStatusEnum.REFUNDED:
            existing = self.ledger.ledger_repo.find_entry_by_ref(ref_id)
            if existing is not None:
                logger.info(f"Refund for job {job_id} already applied (entry {existing.id})")
                return RefundResult(
                    job_id=job_id,
                    refund_entry_id=existing.id,
                    amount=existing.amount,
                    new_balance=existing.balance_after,
                    replayed=True,
                )

        try:
            # 상태 선점이 환불 항목보다 먼저 - succeeded 작업에는 절대 환불하지 않음
            if job.status == GenerationJobStatusEnum.RESERVED and not self.job_repo.mark_refunded(
                job_id, cause, credential_id
            ):
                self.db.rollback()
                return self._refund_once(job_id, cause, credential_id)

            result = self.ledger.apply_delta(
                user_id=job.user_id,
                amount=job.cost,
                kind=LedgerKind.REFUND,
                description=f"Refund: {job.description} ({cause})",
                related_transaction_id=(
                    str(job.reserve_entry_id) if job.reserve_entry_id is not None else None
                ),
                ref_id=ref_id,
                commit=False,
            )
            self.job_repo.attach_refund_entry(job_id, result.entry_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Refunded {job.cost} to user {job.user_id} for job {job_id} ({cause}) -> {result.new_balance}"
        )
        return RefundResult(
            job_id=job_id,
            refund_entry_id=result.entry_id,
            amount=job.cost,
            new_balance=result.new_balance,
            replayed=result.replayed,
        )

    # ------------------------------------------------------------------
    # 실행
    # ------------------------------------------------------------------
    def _fail(
        self,
        reservation: Reservation,
        credential: Optional[CredentialHandle],
        cause: ExternalFailureCause,
    ) -> RefundResult:
        if credential is not None and cause not in NON_CREDENTIAL_CAUSES:
            try:
                self.credential_pool.report_outcome(credential.id, success=False)
            except Exception as e:
                logger.error(f"Failed to report credential {credential.id} failure: {str(e)}")

        return self.refund(
            reservation.job_id,
            cause.value,
            credential.id if credential is not None else None,
        )

    async def run(
        self,
        user_id: str,
        request: GenerationRequest,
        job: Callable[[CredentialHandle], Awaitable[T]],
        job_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> GenerationOutcome:
        """과금 작업 실행

        Raises:
            InsufficientFundsError: 잔액 부족 (작업 미실행)
            NoCredentialsAvailableError: 사용 가능한 자격증명 없음 (환불 후 전달)
            ExternalServiceFailure: 외부 작업 실패/타임아웃 (환불 후 전달)
            RefundFailedError: 환불 실패 (수동 정산 필요)
            asyncio.CancelledError: 호출자 취소 (환불 후 다시 전달)
        """
        cost, _ = compute_cost(request, self.settings)
        job_id = job_id or request.job_id or uuid.uuid4().hex
        reservation = self.reserve(
            user_id, job_id, cost, describe_request(request, self.settings)
        )

        credential: Optional[CredentialHandle] = None
        try:
            credential = self.credential_pool.acquire()
            result = await asyncio.wait_for(
                job(credential),
                timeout=timeout or self.settings.GENERATION_TIMEOUT_SECONDS,
            )
        except asyncio.CancelledError:
            logger.warning(f"Job {job_id} cancelled; refunding reservation")
            try:
                self._fail(reservation, credential, ExternalFailureCause.CANCELLED)
            except RefundFailedError:
                pass  # CRITICAL 로그 기록됨, 작업은 reserved로 남아 정산 대상
            raise
        except asyncio.TimeoutError:
            logger.warning(f"Job {job_id} timed out; refunding reservation")
            self._fail(reservation, credential, ExternalFailureCause.TIMEOUT)
            raise ExternalServiceFailure(
                ExternalFailureCause.TIMEOUT,
                "AI service timed out; your diamonds were refunded",
                details={"job_id": job_id},
            )
        except NoCredentialsAvailableError:
            self.refund(job_id, "no_credentials")
            raise
        except ExternalServiceFailure as e:
            logger.warning(f"Job {job_id} failed ({e.cause.value}); refunding reservation")
            self._fail(reservation, credential, e.cause)
            raise ExternalServiceFailure(
                e.cause,
                "AI service failed; your diamonds were refunded",
                details={"job_id": job_id},
            ) from e
        except Exception as e:
            logger.error(f"Job {job_id} failed unexpectedly; refunding reservation: {str(e)}")
            self._fail(reservation, credential, ExternalFailureCause.UNKNOWN)
            raise ExternalServiceFailure(
                ExternalFailureCause.UNKNOWN,
                "Generation failed; your diamonds were refunded",
                details={"job_id": job_id},
            ) from e

        # 확정되지 않은 작업의 결과는 전달하지 않음
        try:
            completed = self.complete(reservation, credential.id)
        except Exception as e:
            logger.error(f"Job {job_id} finished but could not be completed; refunding: {str(e)}")
            try:
                self.refund(job_id, "completion_failed", credential.id)
            except JobAlreadyCompletedError:
                completed = True  # 확정은 커밋됐고 이후 단계에서 오류
            else:
                raise ExternalServiceFailure(
                    ExternalFailureCause.UNKNOWN,
                    "Generation could not be recorded; your diamonds were refunded",
                    details={"job_id": job_id},
                ) from e
        if not completed:
            raise ExternalServiceFailure(
                ExternalFailureCause.UNKNOWN,
                "Generation job was already refunded",
                details={"job_id": job_id},
            )

        try:
            self.credential_pool.report_outcome(credential.id, success=True)
        except Exception as e:
            logger.error(f"Failed to report credential {credential.id} success: {str(e)}")

        logger.info(f"Job {job_id} succeeded (user {user_id}, cost {cost})")
        return GenerationOutcome(
            job_id=job_id,
            cost=cost,
            new_balance=reservation.new_balance,
            result=result,
        )

    # ------------------------------------------------------------------
    # 누락 환불 정산
    # ------------------------------------------------------------------
    def find_stale_reservations(
        self, older_than_minutes: Optional[int] = None
    ) -> List[GenerationJobSchema]:
        minutes = older_than_minutes or self.settings.STALE_RESERVATION_MINUTES
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
        return self.job_repo.find_stale(cutoff)

    def reconcile_stale_reservations(
        self, older_than_minutes: Optional[int] = None
    ) -> StaleReconcileResponse:
        """오래된 reserved 작업 환불 (작업 프로세스 중단 등으로 남은 예약)"""
        stale = self.find_stale_reservations(older_than_minutes)
        refunded: List[RefundResult] = []
        failed: List[str] = []

        for job in stale:
            if job.status != GenerationJobStatusEnum.RESERVED:
                continue
            try:
                refunded.append(self.refund(job.id, "stale_reservation"))
            except JobAlreadyCompletedError:
                continue  # 조회 이후 확정된 작업
            except RefundFailedError:
                failed.append(job.id)

        logger.info(
            f"Stale reservation reconciliation: {len(stale)} checked, "
            f"{len(refunded)} refunded, {len(failed)} failed"
        )
        return StaleReconcileResponse(checked=len(stale), refunded=refunded, failed=failed)
