from typing import Optional

from sqlalchemy import BigInteger, Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.schema import CheckConstraint, UniqueConstraint

from ledgerapi.models.base import BaseModel

_PK = BigInteger().with_variant(Integer, "sqlite")


class Giftcode(BaseModel):
    """기프트코드 - used_count는 조건부 증가로만 변경되며 total_limit를 넘을 수 없음"""

    __tablename__ = "gift_codes"
    __table_args__ = (
        UniqueConstraint("code", name="uq_gift_codes_code"),
        CheckConstraint("used_count <= total_limit", name="ck_gift_codes_used_le_limit"),
    )

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    reward_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    total_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_per_user: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class GiftcodeUsage(BaseModel):
    """
    기프트코드 사용 기록

    seq는 사용자별 사용 순번(1..max_per_user)입니다.
    (user_id, giftcode_id, seq) 유니크 제약이 동시 중복 사용을 막는 관문 역할을 합니다.
    """

    __tablename__ = "gift_code_usages"
    __table_args__ = (
        UniqueConstraint("user_id", "giftcode_id", "seq", name="uq_gift_code_usages_user_code_seq"),
    )

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    giftcode_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), ForeignKey("gift_codes.id"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
