from typing import Optional

from sqlalchemy import Boolean, Integer, String, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.schema import CheckConstraint

from ledgerapi.models.base import BaseModel


class User(BaseModel):
    """
    사용자 테이블

    잔액은 여기에 두지 않고 account_balances 테이블(원장 소유)에서만 관리합니다.
    weekly_points는 주간 리더보드 점수이며 주간 리셋 작업이 0으로 초기화합니다.
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("weekly_points >= 0", name="ck_users_weekly_points"),
        Index("idx_users_weekly_points", "weekly_points"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    weekly_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, display_name={self.display_name})>"
