import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ledgerapi.models.base import BaseModel


class CredentialStatusEnum(str, enum.Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class ApiCredential(BaseModel):
    """외부 AI 서비스 호출용 API 자격증명 (secret_ref는 로그에 전체 노출 금지)"""

    __tablename__ = "api_credentials"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    secret_ref: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[CredentialStatusEnum] = mapped_column(
        Enum(CredentialStatusEnum, name="credential_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=CredentialStatusEnum.ACTIVE,
    )
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
