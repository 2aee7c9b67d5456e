import logging
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from ledgerapi.core.exceptions import ValidationError
from ledgerapi.core.security import CurrentUser, get_current_user, verify_webhook_secret
from ledgerapi.deps import get_notification_dispatcher, get_topup_service
from ledgerapi.schemas.topup import (
    CreditPackageOffer,
    PaymentEvent,
    SettlementResult,
    TopupCreateRequest,
    TopupTransactionSchema,
)
from ledgerapi.services.notification_service import NotificationDispatcher
from ledgerapi.services.topup_service import TopupService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/topups", tags=["topups"])


@router.get("/packages", response_model=List[CreditPackageOffer])
async def list_packages(
    topup_service: TopupService = Depends(get_topup_service),
) -> List[CreditPackageOffer]:
    """판매 중인 충전 패키지 (프로모션 보너스 반영)"""
    return topup_service.list_packages()


@router.post("", response_model=TopupTransactionSchema)
async def create_topup(
    request: TopupCreateRequest,
    current_user: CurrentUser = Depends(get_current_user),
    topup_service: TopupService = Depends(get_topup_service),
) -> TopupTransactionSchema:
    """충전 주문 생성 (pending)

    지급 다이아몬드와 보너스율은 생성 시점에 고정됩니다.
    """
    return topup_service.create_transaction(current_user.user_id, request.package_id)


@router.get("/my", response_model=List[TopupTransactionSchema])
async def list_my_topups(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: CurrentUser = Depends(get_current_user),
    topup_service: TopupService = Depends(get_topup_service),
) -> List[TopupTransactionSchema]:
    return topup_service.list_user_transactions(current_user.user_id, limit=limit, offset=offset)


@router.post("/payment-events", response_model=SettlementResult)
async def handle_payment_event(
    event: PaymentEvent,
    background_tasks: BackgroundTasks,
    _: None = Depends(verify_webhook_secret),
    topup_service: TopupService = Depends(get_topup_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> SettlementResult:
    """결제 게이트웨이 이벤트 (결제 완료/실패)

    같은 이벤트가 재전송되어도 changed=False로 200을 반환합니다.
    """
    outcome = event.outcome()
    if outcome is None:
        raise ValidationError(
            f"Unsupported payment status: {event.status}", details={"status": event.status}
        )

    result = topup_service.settle_by_reference(
        outcome, code=event.code, order_code=event.order_code
    )
    if result.effects:
        background_tasks.add_task(dispatcher.dispatch_all, result.effects)
    return result
