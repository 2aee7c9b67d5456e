from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ledgerapi.core.exceptions import ExternalFailureCause
from ledgerapi.models.credential import CredentialStatusEnum


def mask_secret(secret: str) -> str:
    """자격증명 마스킹 - 앞 4자리와 뒤 4자리만 노출"""
    if not secret:
        return ""
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}{'*' * 8}{secret[-4:]}"


class CredentialHandle(BaseModel):
    """외부 AI 호출에 사용하는 자격증명 (secret은 repr/로그에 노출하지 않음)"""

    id: int
    name: str
    secret: str = Field(..., repr=False)

    @property
    def masked(self) -> str:
        return mask_secret(self.secret)


class CredentialSchema(BaseModel):
    """관리자 조회용 자격증명 (마스킹)"""

    id: int
    name: str
    masked_secret: str
    status: CredentialStatusEnum
    failure_count: int
    usage_count: int
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class CredentialCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    secret_ref: str = Field(..., min_length=8, description="API 키")


class CredentialTestResult(BaseModel):
    credential_id: int
    ok: bool
    cause: Optional[ExternalFailureCause] = None
    message: str = ""
