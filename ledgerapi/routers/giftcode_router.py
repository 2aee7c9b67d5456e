from fastapi import APIRouter, Depends

from ledgerapi.core.security import CurrentUser, get_current_user
from ledgerapi.deps import get_giftcode_service
from ledgerapi.schemas.giftcode import GiftcodeRedeemRequest, GiftcodeRedeemResponse
from ledgerapi.services.giftcode_service import GiftcodeService

router = APIRouter(prefix="/giftcodes", tags=["giftcodes"])


@router.post("/redeem", response_model=GiftcodeRedeemResponse)
async def redeem_giftcode(
    request: GiftcodeRedeemRequest,
    current_user: CurrentUser = Depends(get_current_user),
    giftcode_service: GiftcodeService = Depends(get_giftcode_service),
) -> GiftcodeRedeemResponse:
    """기프트코드 사용 (대소문자/공백 무시)"""
    return giftcode_service.redeem(current_user.user_id, request.code)
