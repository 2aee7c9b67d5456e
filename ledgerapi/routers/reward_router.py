from fastapi import APIRouter, BackgroundTasks, Depends, Path

from ledgerapi.core.security import CurrentUser, get_current_user
from ledgerapi.deps import get_notification_dispatcher, get_reward_service
from ledgerapi.schemas.rewards import (
    CheckInResponse,
    CheckInStatusResponse,
    MilestoneClaimResponse,
    ReferralClaimRequest,
    ReferralClaimResponse,
    ReferralCodeResponse,
)
from ledgerapi.services.notification_service import NotificationDispatcher
from ledgerapi.services.reward_service import RewardClaimService

router = APIRouter(prefix="/rewards", tags=["rewards"])


@router.post("/check-in", response_model=CheckInResponse)
async def check_in(
    current_user: CurrentUser = Depends(get_current_user),
    reward_service: RewardClaimService = Depends(get_reward_service),
) -> CheckInResponse:
    """일일 체크인

    하루 한 번만 보상이 지급되며 두 번째 요청은 409를 반환합니다.
    """
    return reward_service.check_in(current_user.user_id)


@router.get("/check-in/status", response_model=CheckInStatusResponse)
async def get_check_in_status(
    current_user: CurrentUser = Depends(get_current_user),
    reward_service: RewardClaimService = Depends(get_reward_service),
) -> CheckInStatusResponse:
    """체크인 현황 및 마일스톤 수령 가능 여부"""
    return reward_service.get_check_in_status(current_user.user_id)


@router.post("/milestones/{day}/claim", response_model=MilestoneClaimResponse)
async def claim_milestone(
    day: int = Path(..., ge=1, description="마일스톤 체크인 일수"),
    current_user: CurrentUser = Depends(get_current_user),
    reward_service: RewardClaimService = Depends(get_reward_service),
) -> MilestoneClaimResponse:
    """월간 마일스톤 보상 수령"""
    return reward_service.claim_milestone(current_user.user_id, day)


@router.get("/referral", response_model=ReferralCodeResponse)
async def get_referral_code(
    current_user: CurrentUser = Depends(get_current_user),
    reward_service: RewardClaimService = Depends(get_reward_service),
) -> ReferralCodeResponse:
    """내 추천 코드"""
    return reward_service.get_referral_code(current_user.user_id)


@router.post("/referral/claim", response_model=ReferralClaimResponse)
async def claim_referral(
    request: ReferralClaimRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(get_current_user),
    reward_service: RewardClaimService = Depends(get_reward_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> ReferralClaimResponse:
    """추천 코드 입력 - 가입자와 추천인에게 각각 보상 (1인 1회, 두 번째 요청은 409)"""
    result = reward_service.claim_referral(current_user.user_id, request.referral_code)
    if result.effects:
        background_tasks.add_task(dispatcher.dispatch_all, result.effects)
    return result
