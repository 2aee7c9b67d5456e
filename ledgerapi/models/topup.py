import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.schema import UniqueConstraint

from ledgerapi.models.base import BaseModel

_PK = BigInteger().with_variant(Integer, "sqlite")


class TopupStatusEnum(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class CreditPackage(BaseModel):
    """충전 패키지 - bonus_percent는 패키지 자체 보너스 (활성 프로모션 보너스와 합산)"""

    __tablename__ = "credit_packages"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    credits_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    price_vnd: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    bonus_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Promotion(BaseModel):
    """충전 프로모션 캠페인 - 기간 내 활성 캠페인 중 보너스율이 가장 높은 것이 적용"""

    __tablename__ = "promotions"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(150), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    bonus_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class TopupTransaction(BaseModel):
    """
    충전 거래 - pending → paid | failed

    status가 pending을 벗어나면 관리자 삭제 외에는 변경되지 않습니다.
    상태 전이는 CAS(UPDATE ... WHERE status = 'pending')로만 수행됩니다.
    """

    __tablename__ = "topup_transactions"
    __table_args__ = (
        UniqueConstraint("code", name="uq_topup_transactions_code"),
        UniqueConstraint("order_code", name="uq_topup_transactions_order_code"),
    )

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    package_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), ForeignKey("credit_packages.id"), nullable=False
    )
    amount_due: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    coins_to_credit: Mapped[int] = mapped_column(Integer, nullable=False)
    bonus_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    order_code: Mapped[int] = mapped_column(BigInteger, nullable=False)
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[TopupStatusEnum] = mapped_column(
        Enum(TopupStatusEnum, name="topup_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=TopupStatusEnum.PENDING,
    )
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
