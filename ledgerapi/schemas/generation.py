from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ledgerapi.models.generation import GenerationJobStatusEnum


class GenerationRequest(BaseModel):
    """이미지 생성 요청 - 비용은 모델/해상도/부가 옵션으로 결정"""

    prompt: str = Field(..., min_length=1, max_length=4000)
    model: str = Field(..., min_length=1, description="AI 모델명")
    image_size: Literal["1K", "2K", "4K"] = "1K"
    use_upscaler: bool = False
    remove_watermark: bool = False
    enhancement: bool = Field(False, description="이미지 보정 작업 여부")
    aspect_ratio: Optional[str] = Field(None, description="1:1, 3:4, 4:3, 9:16, 16:9")
    negative_prompt: Optional[str] = Field(None, max_length=2000)
    seed: Optional[int] = None
    job_id: Optional[str] = Field(
        None, max_length=64, description="클라이언트 작업 키 (같은 키는 한 번만 예약)"
    )


class CostQuote(BaseModel):
    model: str
    cost: int
    breakdown: Dict[str, int] = Field(default_factory=dict)


class Reservation(BaseModel):
    """예약(선차감) 결과"""

    job_id: str
    user_id: str
    cost: int
    reserve_entry_id: int
    new_balance: int


class RefundResult(BaseModel):
    job_id: str
    refund_entry_id: int
    amount: int
    new_balance: int
    replayed: bool = False


class GenerationOutcome(BaseModel):
    """과금 작업 결과 - result는 작업 함수의 반환값"""

    job_id: str
    cost: int
    new_balance: int
    result: Any = None


class GenerationResponse(BaseModel):
    job_id: str
    cost: int
    new_balance: int
    mime_type: Optional[str] = None
    image_base64: Optional[str] = None


class GenerationJobSchema(BaseModel):
    id: str
    user_id: str
    cost: int
    description: str
    status: GenerationJobStatusEnum
    reserve_entry_id: Optional[int] = None
    refund_entry_id: Optional[int] = None
    error_kind: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StaleReconcileResponse(BaseModel):
    checked: int
    refunded: List[RefundResult] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list, description="환불 실패 작업 ID (수동 정산 필요)")
