import enum
from typing import Optional

from sqlalchemy import BigInteger, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ledgerapi.models.base import BaseModel


class GenerationJobStatusEnum(str, enum.Enum):
    RESERVED = "reserved"  # 차감 완료, 외부 작업 진행 중
    SUCCEEDED = "succeeded"  # 작업 성공, 차감 확정
    REFUNDED = "refunded"  # 작업 실패, 환불 완료


class GenerationJob(BaseModel):
    """
    유료 생성 작업의 예약(차감) 기록

    id(작업 키)가 PK이므로 하나의 논리적 작업은 두 번 예약될 수 없습니다.
    reserved 상태로 오래 남은 행은 환불 누락 후보로 정산 대상이 됩니다.
    """

    __tablename__ = "generation_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    cost: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[GenerationJobStatusEnum] = mapped_column(
        Enum(GenerationJobStatusEnum, name="generation_job_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=GenerationJobStatusEnum.RESERVED,
    )
    reserve_entry_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    refund_entry_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    credential_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    error_kind: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
