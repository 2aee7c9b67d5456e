from pydantic import BaseModel, Field
from typing import List, Optional

from ledgerapi.models.ledger import LedgerKind


class BalanceResponse(BaseModel):
    """잔액 응답"""

    user_id: str = Field(..., description="사용자 ID")
    balance: int = Field(..., description="현재 잔액")

    class Config:
        from_attributes = True


class LedgerEntrySchema(BaseModel):
    """원장 항목"""

    id: int = Field(..., description="원장 항목 ID")
    user_id: str = Field(..., description="사용자 ID")
    amount: int = Field(..., description="변동량 (양수: 지급, 음수: 차감)")
    kind: LedgerKind = Field(..., description="거래 유형")
    description: str = Field(..., description="거래 사유")
    ref_id: str = Field(..., description="멱등성 참조 ID")
    related_transaction_id: Optional[str] = Field(None, description="연관 거래 ID")
    balance_after: int = Field(..., description="거래 후 잔액")
    created_at: Optional[str] = Field(None, description="생성 시간")

    class Config:
        from_attributes = True


class LedgerHistoryResponse(BaseModel):
    """원장 조회 응답 (최신순)"""

    balance: int = Field(..., description="현재 잔액")
    entries: List[LedgerEntrySchema] = Field(..., description="원장 항목 목록")
    total_count: int = Field(..., description="전체 항목 수")
    has_next: bool = Field(..., description="다음 페이지 존재 여부")


class LedgerTransactionResult(BaseModel):
    """잔액 변동 결과"""

    entry_id: int = Field(..., description="원장 항목 ID")
    user_id: str = Field(..., description="사용자 ID")
    amount: int = Field(..., description="변동량")
    new_balance: int = Field(..., description="거래 후 잔액")
    replayed: bool = Field(False, description="동일 ref_id로 이미 처리된 거래인지 여부")


class AdminAdjustmentRequest(BaseModel):
    """관리자 잔액 조정 요청"""

    user_id: str = Field(..., min_length=1, description="사용자 ID")
    amount: int = Field(..., description="조정 금액 (양수: 지급, 음수: 차감)")
    reason: str = Field(..., min_length=1, max_length=255, description="조정 사유")


class IntegrityCheckResponse(BaseModel):
    """잔액 정합성 검증 응답"""

    status: str = Field(..., description="검증 상태 (OK, MISMATCH)")
    user_id: Optional[str] = Field(None, description="사용자 ID (단일 사용자 검증 시)")
    calculated_balance: Optional[int] = Field(None, description="원장 합계")
    recorded_balance: Optional[int] = Field(None, description="잔액 테이블 값")
    mismatched_users: List[str] = Field(default_factory=list, description="불일치 사용자 목록")
    entry_count: Optional[int] = Field(None, description="항목 수")
    verified_at: Optional[str] = Field(None, description="검증 시간")
