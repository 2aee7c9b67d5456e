import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerapi.core.exceptions import InsufficientFundsError, ValidationError
from ledgerapi.models.ledger import LedgerEntry, LedgerKind
from ledgerapi.repositories.ledger_repository import LedgerRepository
from ledgerapi.schemas.ledger import (
    AdminAdjustmentRequest,
    BalanceResponse,
    IntegrityCheckResponse,
    LedgerHistoryResponse,
    LedgerTransactionResult,
)
from ledgerapi.utils.store_retry import with_store_retry

logger = logging.getLogger(__name__)


class BalanceLedger:
    """
    다이아몬드 잔액 변경의 유일한 진입점

    핵심 규칙:
    - 잔액 변경 1건 = 원장 항목 1건, 같은 DB 트랜잭션
    - 잔액 감소는 조건부 원자적 증감으로만 수행 (읽고-쓰기 금지)
    - ref_id가 같은 요청은 한 번만 반영되고 이후에는 기존 결과를 반환
    - commit=False로 호출하면 호출자의 트랜잭션에 합류 (커밋/롤백은 호출자 책임)
    """

    def __init__(self, db: Session):
        self.db = db
        self.ledger_repo = LedgerRepository(db)

    def apply_delta(
        self,
        user_id: str,
        amount: int,
        kind: LedgerKind,
        description: str,
        related_transaction_id: Optional[str] = None,
        ref_id: Optional[str] = None,
        commit: bool = True,
    ) -> LedgerTransactionResult:
        """잔액 변경 + 원장 기록

        Args:
            user_id: 사용자 ID
            amount: 변동량 (양수: 지급, 음수: 차감, 0: 감사용 기록)
            kind: 거래 유형
            description: 거래 사유
            related_transaction_id: 연관 거래 ID (충전 거래, 예약 원장 항목 등)
            ref_id: 멱등성 키 (없으면 새로 생성)
            commit: False면 호출자의 트랜잭션에 합류

        Returns:
            LedgerTransactionResult: 거래 후 잔액과 원장 항목 ID

        Raises:
            InsufficientFundsError: 차감 후 잔액이 음수가 되는 경우
            IntegrityError: commit=False에서 ref_id가 동시에 기록된 경우 (호출자가 롤백)
        """
        ref_id = ref_id or f"{kind.value}:{uuid.uuid4().hex}"

        if not commit:
            return self._apply(
                user_id, amount, kind, description, related_transaction_id, ref_id
            )

        def operation() -> LedgerTransactionResult:
            try:
                result = self._apply(
                    user_id, amount, kind, description, related_transaction_id, ref_id
                )
                self.db.commit()
                return result
            except IntegrityError:
                self.db.rollback()
                # 동시에 같은 ref_id가 먼저 기록된 경우 - 기존 결과 반환
                existing = self.ledger_repo.find_entry_by_ref(ref_id)
                if existing is None:
                    raise
                return self._replayed(existing, user_id, amount)
            except Exception:
                self.db.rollback()
                raise

        return with_store_retry(self.db, operation, label=f"apply_delta[{ref_id}]")

    def _apply(
        self,
        user_id: str,
        amount: int,
        kind: LedgerKind,
        description: str,
        related_transaction_id: Optional[str],
        ref_id: str,
    ) -> LedgerTransactionResult:
        existing = self.ledger_repo.find_entry_by_ref(ref_id)
        if existing is not None:
            return self._replayed(existing, user_id, amount)

        if amount == 0:
            logger.warning(
                f"Zero-amount ledger entry for user {user_id} (kind={kind.value}, ref={ref_id})"
            )

        self.ledger_repo.ensure_account(user_id)
        new_balance = self.ledger_repo.increment_balance(user_id, amount)
        if new_balance is None:
            available = self.ledger_repo.get_balance(user_id)
            logger.info(
                f"Insufficient balance for user {user_id}: required {-amount}, available {available}"
            )
            raise InsufficientFundsError(
                details={
                    "user_id": user_id,
                    "required": -amount,
                    "available": available,
                }
            )

        entry = self.ledger_repo.add_entry(
            user_id=user_id,
            amount=amount,
            kind=kind,
            description=description,
            ref_id=ref_id,
            balance_after=new_balance,
            related_transaction_id=related_transaction_id,
        )
        logger.info(
            f"Ledger entry {entry.id}: user {user_id} {kind.value} {amount:+d} -> {new_balance}"
        )
        return LedgerTransactionResult(
            entry_id=entry.id,
            user_id=user_id,
            amount=amount,
            new_balance=new_balance,
        )

    def _replayed(
        self, existing: LedgerEntry, user_id: str, amount: int
    ) -> LedgerTransactionResult:
        if existing.user_id != user_id or existing.amount != amount:
            logger.error(
                f"ref_id {existing.ref_id} reused with different payload "
                f"(user {user_id}, amount {amount})"
            )
            raise ValidationError(
                "ref_id already used for a different transaction",
                details={"ref_id": existing.ref_id},
            )

        logger.info(f"Ledger entry {existing.id} replayed for ref {existing.ref_id}")
        return LedgerTransactionResult(
            entry_id=existing.id,
            user_id=existing.user_id,
            amount=existing.amount,
            new_balance=existing.balance_after,
            replayed=True,
        )

    def get_balance(self, user_id: str) -> BalanceResponse:
        """사용자 잔액 조회"""
        balance = self.ledger_repo.get_balance(user_id)
        return BalanceResponse(user_id=user_id, balance=balance)

    def get_history(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> LedgerHistoryResponse:
        """사용자 원장 조회 (최신순, 최대 100건)"""
        limit = max(1, min(limit, 100))
        offset = max(0, offset)

        entries, total_count = self.ledger_repo.get_history(user_id, limit, offset)
        return LedgerHistoryResponse(
            balance=self.ledger_repo.get_balance(user_id),
            entries=entries,
            total_count=total_count,
            has_next=offset + limit < total_count,
        )

    def admin_adjust(
        self, admin_id: str, request: AdminAdjustmentRequest
    ) -> LedgerTransactionResult:
        """관리자 잔액 조정"""
        result = self.apply_delta(
            user_id=request.user_id,
            amount=request.amount,
            kind=LedgerKind.ADMIN_ADJUST,
            description=f"Admin adjustment by {admin_id}: {request.reason}",
            ref_id=f"admin_adjust:{admin_id}:{uuid.uuid4().hex}",
        )
        logger.info(
            f"Admin {admin_id} adjusted balance of user {request.user_id} by {request.amount}"
        )
        return result

    def verify_user_integrity(self, user_id: str) -> IntegrityCheckResponse:
        """사용자 잔액 == 원장 합계 검증"""
        calculated, count = self.ledger_repo.sum_entries(user_id)
        recorded = self.ledger_repo.get_balance(user_id)
        status = "OK" if calculated == recorded else "MISMATCH"

        if status != "OK":
            logger.error(
                f"Balance mismatch for user {user_id}: ledger={calculated}, balance={recorded}"
            )

        return IntegrityCheckResponse(
            status=status,
            user_id=user_id,
            calculated_balance=calculated,
            recorded_balance=recorded,
            mismatched_users=[user_id] if status != "OK" else [],
            entry_count=count,
            verified_at=datetime.now(timezone.utc).isoformat(),
        )

    def verify_global_integrity(self) -> IntegrityCheckResponse:
        """전체 사용자 정합성 검증 - 불일치 사용자는 수동 정산 대상"""
        mismatched = self.ledger_repo.find_mismatched_users()
        if mismatched:
            logger.error(
                f"Ledger integrity check found {len(mismatched)} mismatched users: {mismatched}"
            )
        else:
            logger.info("Ledger integrity check passed")

        return IntegrityCheckResponse(
            status="OK" if not mismatched else "MISMATCH",
            mismatched_users=mismatched,
            entry_count=self.ledger_repo.count(),
            verified_at=datetime.now(timezone.utc).isoformat(),
        )
