from typing import Optional

from pydantic import BaseModel, Field, field_validator


def normalize_code(value: str) -> str:
    """기프트코드 정규화 (앞뒤 공백 제거 + 대문자)"""
    return (value or "").strip().upper()


class GiftcodeRedeemRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64, description="기프트코드")


class GiftcodeRedeemResponse(BaseModel):
    code: str
    reward_amount: int
    new_balance: int


class GiftcodeSchema(BaseModel):
    id: int
    code: str
    reward_amount: int
    total_limit: int
    used_count: int
    max_per_user: int
    is_active: bool
    description: Optional[str] = None

    class Config:
        from_attributes = True


class GiftcodeCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    reward_amount: int = Field(..., gt=0)
    total_limit: int = Field(..., gt=0)
    max_per_user: int = Field(1, gt=0)
    is_active: bool = True
    description: Optional[str] = Field(None, max_length=255)

    @field_validator("code")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return normalize_code(v)


class GiftcodeUpdate(BaseModel):
    reward_amount: Optional[int] = Field(None, gt=0)
    total_limit: Optional[int] = Field(None, gt=0)
    max_per_user: Optional[int] = Field(None, gt=0)
    is_active: Optional[bool] = None
    description: Optional[str] = Field(None, max_length=255)
