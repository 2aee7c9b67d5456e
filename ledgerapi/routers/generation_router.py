import logging

from fastapi import APIRouter, Depends

from ledgerapi.core.security import CurrentUser, get_current_user
from ledgerapi.deps import get_ai_client, get_generation_guard
from ledgerapi.schemas.credential import CredentialHandle
from ledgerapi.schemas.generation import CostQuote, GenerationRequest, GenerationResponse
from ledgerapi.services.ai_client import GenerativeAIClient, build_generation_payload
from ledgerapi.services.generation_service import GenerationCostGuard

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/generations", tags=["generations"])


@router.post("/cost", response_model=CostQuote)
async def quote_generation(
    request: GenerationRequest,
    _current_user: CurrentUser = Depends(get_current_user),
    guard: GenerationCostGuard = Depends(get_generation_guard),
) -> CostQuote:
    """생성 요청 비용 미리 계산"""
    return guard.quote(request)


@router.post("", response_model=GenerationResponse)
async def generate_image(
    request: GenerationRequest,
    current_user: CurrentUser = Depends(get_current_user),
    guard: GenerationCostGuard = Depends(get_generation_guard),
    ai_client: GenerativeAIClient = Depends(get_ai_client),
) -> GenerationResponse:
    """이미지 생성

    비용을 먼저 차감하고, 외부 서비스 실패/타임아웃 시 전액 환불 후 502를 반환합니다.
    """
    payload = build_generation_payload(request)

    async def job(credential: CredentialHandle):
        data = await ai_client.generate(credential, request.model, payload)
        return GenerativeAIClient.extract_image(data)

    outcome = await guard.run(current_user.user_id, request, job)
    image_base64, mime_type = outcome.result
    return GenerationResponse(
        job_id=outcome.job_id,
        cost=outcome.cost,
        new_balance=outcome.new_balance,
        mime_type=mime_type,
        image_base64=image_base64,
    )
