"""
원장 리포지토리 - 잔액/원장 테이블 접근

이 파일은 다이아몬드 원장의 저장소 레벨 연산을 담당합니다:
1. 잔액 행 보장 (INSERT ... ON CONFLICT DO NOTHING)
2. 조건부 원자적 증감 (balance + delta >= 0 인 경우에만 반영)
3. 원장 항목 기록 / ref_id 조회
4. 거래 내역 조회 및 정합성 검증용 집계

커밋은 하지 않습니다. 트랜잭션 경계는 BalanceLedger가 결정합니다.
"""

from typing import List, Optional, Tuple

from sqlalchemy import desc, func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from ledgerapi.models.ledger import AccountBalance, LedgerEntry, LedgerKind
from ledgerapi.schemas.ledger import LedgerEntrySchema
from ledgerapi.repositories.base import BaseRepository


class LedgerRepository(BaseRepository[LedgerEntry, LedgerEntrySchema]):
    """원장 리포지토리"""

    def __init__(self, db: Session):
        super().__init__(LedgerEntry, LedgerEntrySchema, db)

    def _to_schema(self, model_instance: LedgerEntry) -> Optional[LedgerEntrySchema]:
        if model_instance is None:
            return None

        return LedgerEntrySchema(
            id=model_instance.id,
            user_id=model_instance.user_id,
            amount=model_instance.amount,
            kind=model_instance.kind,
            description=model_instance.description or "",
            ref_id=model_instance.ref_id,
            related_transaction_id=model_instance.related_transaction_id,
            balance_after=model_instance.balance_after,
            created_at=(
                model_instance.created_at.strftime("%Y-%m-%d %H:%M:%S")
                if model_instance.created_at
                else None
            ),
        )

    def ensure_account(self, user_id: str) -> None:
        """잔액 행이 없으면 0으로 생성 (동시 생성 시 충돌은 무시)"""
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(AccountBalance).values(user_id=user_id, balance=0)
        elif dialect == "sqlite":
            stmt = sqlite.insert(AccountBalance).values(user_id=user_id, balance=0)
        else:
            if self.db.get(AccountBalance, user_id) is None:
                self.db.add(AccountBalance(user_id=user_id, balance=0))
                self.db.flush()
            return

        self.db.execute(stmt.on_conflict_do_nothing(index_elements=["user_id"]))

    def increment_balance(self, user_id: str, delta: int) -> Optional[int]:
        """
        조건부 원자적 증감

        Returns:
            Optional[int]: 반영 후 잔액. 잔액이 음수가 되는 경우 None (아무것도 변경하지 않음)
        """
        result = self.db.execute(
            update(AccountBalance)
            .where(
                AccountBalance.user_id == user_id,
                AccountBalance.balance + delta >= 0,
            )
            .values(balance=AccountBalance.balance + delta, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None

        return self.get_balance(user_id)

    def get_balance(self, user_id: str) -> int:
        """현재 잔액 (행이 없으면 0)"""
        balance = (
            self.db.query(AccountBalance.balance)
            .filter(AccountBalance.user_id == user_id)
            .scalar()
        )
        return int(balance) if balance is not None else 0

    def find_entry_by_ref(self, ref_id: str) -> Optional[LedgerEntry]:
        return (
            self.db.query(LedgerEntry).filter(LedgerEntry.ref_id == ref_id).first()
        )

    def add_entry(
        self,
        user_id: str,
        amount: int,
        kind: LedgerKind,
        description: str,
        ref_id: str,
        balance_after: int,
        related_transaction_id: Optional[str] = None,
    ) -> LedgerEntry:
        """원장 항목 추가 (flush만 수행, ref_id 중복 시 IntegrityError)"""
        entry = LedgerEntry(
            user_id=user_id,
            amount=amount,
            kind=kind,
            description=description,
            ref_id=ref_id,
            related_transaction_id=related_transaction_id,
            balance_after=balance_after,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def get_history(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> Tuple[List[LedgerEntrySchema], int]:
        """사용자 원장 조회 (최신순) - (항목 목록, 전체 개수)"""
        query = self.db.query(LedgerEntry).filter(LedgerEntry.user_id == user_id)
        total_count = query.count()
        instances = (
            query.order_by(desc(LedgerEntry.id)).offset(offset).limit(limit).all()
        )
        return [self._to_schema(instance) for instance in instances], total_count

    def sum_entries(self, user_id: str) -> Tuple[int, int]:
        """사용자 원장 합계와 항목 수"""
        total, count = (
            self.db.query(
                func.coalesce(func.sum(LedgerEntry.amount), 0),
                func.count(LedgerEntry.id),
            )
            .filter(LedgerEntry.user_id == user_id)
            .one()
        )
        return int(total), int(count)

    def find_mismatched_users(self) -> List[str]:
        """잔액과 원장 합계가 일치하지 않는 사용자 목록"""
        sums = (
            self.db.query(
                LedgerEntry.user_id.label("user_id"),
                func.sum(LedgerEntry.amount).label("total"),
            )
            .group_by(LedgerEntry.user_id)
            .subquery()
        )

        # 잔액 행 기준 비교 (원장이 없으면 합계 0)
        balance_side = (
            self.db.query(AccountBalance.user_id)
            .outerjoin(sums, sums.c.user_id == AccountBalance.user_id)
            .filter(AccountBalance.balance != func.coalesce(sums.c.total, 0))
        )
        # 원장은 있는데 잔액 행이 없는 경우
        ledger_side = (
            self.db.query(sums.c.user_id)
            .outerjoin(AccountBalance, AccountBalance.user_id == sums.c.user_id)
            .filter(AccountBalance.user_id.is_(None), sums.c.total != 0)
        )

        users = {row[0] for row in balance_side.all()}
        users.update(row[0] for row in ledger_side.all())
        return sorted(users)
