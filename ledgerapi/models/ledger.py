"""
다이아몬드(가상 화폐) 원장 데이터 모델

잔액(account_balances)과 거래 원장(ledger_entries)은 BalanceLedger만 변경합니다.
모든 잔액 변동은 원장 항목 1건 + 잔액 갱신 1건이 하나의 DB 트랜잭션으로 기록됩니다.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, Integer, String, Text, func, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.schema import CheckConstraint, UniqueConstraint

from ledgerapi.models.base import Base


class LedgerKind(str, enum.Enum):
    USAGE = "usage"
    TOPUP = "topup"
    REWARD = "reward"
    GIFTCODE = "giftcode"
    REFUND = "refund"
    ADMIN_ADJUST = "admin_adjust"


class AccountBalance(Base):
    """
    사용자별 잔액 테이블 - 사용자당 1행

    balance >= 0 제약을 DB 레벨에서도 강제합니다.
    잔액 변경은 조건부 원자적 증감(UPDATE ... SET balance = balance + :delta)으로만 수행됩니다.
    """

    __tablename__ = "account_balances"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_account_balance_non_negative"),)

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), primary_key=True
    )
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class LedgerEntry(Base):
    """
    원장 테이블 - 모든 잔액 변동 내역 (append-only)

    원칙:
    1. 불변성: 한번 생성된 레코드는 수정/삭제되지 않음
    2. 정합성: 사용자별 amount 합계 == account_balances.balance
    3. 멱등성: ref_id 유니크 제약으로 동일 거래의 중복 기록 방지
    """

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("ref_id", name="uq_ledger_entries_ref_id"),
        Index("idx_ledger_entries_user_id", "user_id", "id"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)

    # 변동량 - 양수면 증가, 음수면 감소
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kind: Mapped[LedgerKind] = mapped_column(
        Enum(LedgerKind, name="ledger_kind", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # 멱등성 키 - 예: "generation:<job_id>", "refund:<job_id>", "topup:<tx_id>"
    ref_id: Mapped[str] = mapped_column(String(128), nullable=False)
    related_transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # 거래 후 잔액 (감사용)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
