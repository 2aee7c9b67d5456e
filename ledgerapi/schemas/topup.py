from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from ledgerapi.models.topup import TopupStatusEnum
from ledgerapi.schemas.effects import NotifyUser


class SettlementOutcome(str, Enum):
    """정산 결과 (pending에서 전이 가능한 종료 상태)"""

    PAID = "paid"
    FAILED = "failed"


class CreditPackageSchema(BaseModel):
    id: int
    name: str
    credits_amount: int
    price_vnd: Decimal
    bonus_percent: int
    is_active: bool
    is_featured: bool
    display_order: int

    class Config:
        from_attributes = True


class CreditPackageOffer(CreditPackageSchema):
    """사용자 노출용 패키지 (현재 적용 보너스 포함)"""

    effective_bonus_percent: int = Field(0, description="패키지 보너스% + 활성 프로모션 보너스%")
    coins_to_credit: int = 0


class CreditPackageCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    credits_amount: int = Field(..., gt=0)
    price_vnd: Decimal = Field(..., gt=0)
    bonus_percent: int = Field(0, ge=0, le=1000)
    is_active: bool = True
    is_featured: bool = False
    display_order: int = 0


class CreditPackageUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    credits_amount: Optional[int] = Field(None, gt=0)
    price_vnd: Optional[Decimal] = Field(None, gt=0)
    bonus_percent: Optional[int] = Field(None, ge=0, le=1000)
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    display_order: Optional[int] = None


class PromotionSchema(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    bonus_percent: int
    start_time: datetime
    end_time: datetime
    is_active: bool

    class Config:
        from_attributes = True


class PromotionCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=150)
    description: Optional[str] = Field(None, max_length=500)
    bonus_percent: int = Field(..., ge=0, le=1000)
    start_time: datetime
    end_time: datetime
    is_active: bool = True

    @model_validator(mode="after")
    def _check_period(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class PromotionUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=150)
    description: Optional[str] = Field(None, max_length=500)
    bonus_percent: Optional[int] = Field(None, ge=0, le=1000)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    is_active: Optional[bool] = None


class TopupCreateRequest(BaseModel):
    package_id: int = Field(..., gt=0, description="충전 패키지 ID")


class TopupTransactionSchema(BaseModel):
    id: int
    user_id: str
    package_id: int
    amount_due: Decimal
    coins_to_credit: int
    bonus_percent: int
    order_code: int
    code: str
    status: TopupStatusEnum
    created_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BulkSettleRequest(BaseModel):
    transaction_ids: List[int] = Field(..., min_length=1, max_length=200)


class SettlementResult(BaseModel):
    """정산 결과 - changed=False면 이미 같은 결과로 정산되어 있던 경우"""

    transaction_id: int
    status: TopupStatusEnum
    changed: bool
    new_balance: Optional[int] = None
    effects: List[NotifyUser] = Field(default_factory=list, exclude=True)


class BulkSettleItem(BaseModel):
    transaction_id: int
    success: bool
    status: Optional[TopupStatusEnum] = None
    changed: bool = False
    error_code: Optional[str] = None
    message: Optional[str] = None


class BulkSettleResponse(BaseModel):
    outcome: SettlementOutcome
    results: List[BulkSettleItem]
    succeeded: int
    failed: int
    effects: List[NotifyUser] = Field(default_factory=list, exclude=True)


class PaymentEvent(BaseModel):
    """결제 게이트웨이 이벤트 ("payment confirmed" / "payment failed")"""

    order_code: Optional[int] = Field(None, description="주문 번호")
    code: Optional[str] = Field(None, description="거래 코드 (NAP...)")
    status: str = Field(..., description="PAID, FAILED, CANCELLED")

    @model_validator(mode="after")
    def _check_reference(self):
        if self.order_code is None and not self.code:
            raise ValueError("order_code or code is required")
        return self

    def outcome(self) -> Optional[SettlementOutcome]:
        status = self.status.strip().upper()
        if status == "PAID":
            return SettlementOutcome.PAID
        if status in ("FAILED", "CANCELLED", "EXPIRED"):
            return SettlementOutcome.FAILED
        return None
