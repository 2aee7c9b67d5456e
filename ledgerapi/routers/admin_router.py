"""
Admin Router

관리자 전용 API 엔드포인트
- 충전 거래 승인/거절/삭제
- 원장 조정 및 무결성 검사
- AI 자격증명 관리
- 기프트코드, 체크인 보상, 충전 패키지/프로모션 관리
- 주간 리더보드 정산 및 누락 환불 정산 (스케줄러는 X-Cron-Secret으로 호출)
"""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Path, Query

from ledgerapi.core.security import CurrentUser, admin_required, verify_cron_secret
from ledgerapi.deps import (
    get_credential_pool,
    get_generation_guard,
    get_giftcode_service,
    get_ledger_service,
    get_notification_dispatcher,
    get_reward_service,
    get_topup_service,
)
from ledgerapi.models.credential import CredentialStatusEnum
from ledgerapi.models.topup import TopupStatusEnum
from ledgerapi.schemas.credential import CredentialCreate, CredentialSchema, CredentialTestResult
from ledgerapi.schemas.generation import StaleReconcileResponse
from ledgerapi.schemas.giftcode import GiftcodeCreate, GiftcodeSchema, GiftcodeUpdate
from ledgerapi.schemas.ledger import (
    AdminAdjustmentRequest,
    IntegrityCheckResponse,
    LedgerTransactionResult,
)
from ledgerapi.schemas.rewards import (
    CheckInRewardConfigCreate,
    CheckInRewardConfigSchema,
    CheckInRewardConfigUpdate,
    WeeklyPointsRequest,
    WeeklyResetResponse,
)
from ledgerapi.schemas.topup import (
    BulkSettleRequest,
    BulkSettleResponse,
    CreditPackageCreate,
    CreditPackageSchema,
    CreditPackageUpdate,
    PromotionCreate,
    PromotionSchema,
    PromotionUpdate,
    SettlementOutcome,
    SettlementResult,
    TopupTransactionSchema,
)
from ledgerapi.services.credential_pool import CredentialPoolManager
from ledgerapi.services.generation_service import GenerationCostGuard
from ledgerapi.services.giftcode_service import GiftcodeService
from ledgerapi.services.ledger_service import BalanceLedger
from ledgerapi.services.notification_service import NotificationDispatcher
from ledgerapi.services.reward_service import RewardClaimService
from ledgerapi.services.topup_service import TopupService

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# 충전 거래
# ---------------------------------------------------------------------------
@router.get("/transactions", response_model=List[TopupTransactionSchema])
async def list_transactions(
    status: Optional[TopupStatusEnum] = Query(None, description="상태 필터"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
):
    return topup_service.list_transactions(status=status, limit=limit, offset=offset)


def _settle_one(
    transaction_id: int,
    outcome: SettlementOutcome,
    admin: CurrentUser,
    topup_service: TopupService,
    dispatcher: NotificationDispatcher,
    background_tasks: BackgroundTasks,
) -> SettlementResult:
    result = topup_service.settle_idempotent(
        transaction_id, outcome, actor=f"admin:{admin.user_id}"
    )
    if result.effects:
        background_tasks.add_task(dispatcher.dispatch_all, result.effects)
    return result


@router.post("/transactions/{transaction_id}/approve", response_model=SettlementResult)
async def approve_transaction(
    background_tasks: BackgroundTasks,
    transaction_id: int = Path(..., gt=0),
    admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """충전 승인 (pending -> paid, 다이아몬드 지급)"""
    return _settle_one(
        transaction_id, SettlementOutcome.PAID, admin, topup_service, dispatcher, background_tasks
    )


@router.post("/transactions/{transaction_id}/reject", response_model=SettlementResult)
async def reject_transaction(
    background_tasks: BackgroundTasks,
    transaction_id: int = Path(..., gt=0),
    admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """충전 거절 (pending -> failed)"""
    return _settle_one(
        transaction_id, SettlementOutcome.FAILED, admin, topup_service, dispatcher, background_tasks
    )


def _settle_bulk(
    request: BulkSettleRequest,
    outcome: SettlementOutcome,
    admin: CurrentUser,
    topup_service: TopupService,
    dispatcher: NotificationDispatcher,
    background_tasks: BackgroundTasks,
) -> BulkSettleResponse:
    result = topup_service.bulk_settle(
        request.transaction_ids, outcome, actor=f"admin:{admin.user_id}"
    )
    if result.effects:
        background_tasks.add_task(dispatcher.dispatch_all, result.effects)
    return result


@router.post("/transactions/bulk-approve", response_model=BulkSettleResponse)
async def bulk_approve_transactions(
    request: BulkSettleRequest,
    background_tasks: BackgroundTasks,
    admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    return _settle_bulk(
        request, SettlementOutcome.PAID, admin, topup_service, dispatcher, background_tasks
    )


@router.post("/transactions/bulk-reject", response_model=BulkSettleResponse)
async def bulk_reject_transactions(
    request: BulkSettleRequest,
    background_tasks: BackgroundTasks,
    admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    return _settle_bulk(
        request, SettlementOutcome.FAILED, admin, topup_service, dispatcher, background_tasks
    )


@router.delete("/transactions/{transaction_id}")
async def delete_transaction(
    transaction_id: int = Path(..., gt=0),
    admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
):
    topup_service.delete_transaction(transaction_id, actor=f"admin:{admin.user_id}")
    return {"success": True, "transaction_id": transaction_id}


# ---------------------------------------------------------------------------
# 원장
# ---------------------------------------------------------------------------
@router.post("/ledger/adjust", response_model=LedgerTransactionResult)
async def adjust_balance(
    request: AdminAdjustmentRequest,
    admin: CurrentUser = Depends(admin_required),
    ledger_service: BalanceLedger = Depends(get_ledger_service),
):
    """관리자 잔액 조정 (음수 잔액은 허용되지 않음)"""
    return ledger_service.admin_adjust(admin.user_id, request)


@router.get("/ledger/integrity", response_model=IntegrityCheckResponse)
async def check_ledger_integrity(
    user_id: Optional[str] = Query(None, description="특정 사용자만 검사"),
    _admin: CurrentUser = Depends(admin_required),
    ledger_service: BalanceLedger = Depends(get_ledger_service),
):
    """잔액 = 원장 합계 검사"""
    if user_id:
        return ledger_service.verify_user_integrity(user_id)
    return ledger_service.verify_global_integrity()


# ---------------------------------------------------------------------------
# AI 자격증명
# ---------------------------------------------------------------------------
@router.get("/credentials", response_model=List[CredentialSchema])
async def list_credentials(
    _admin: CurrentUser = Depends(admin_required),
    credential_pool: CredentialPoolManager = Depends(get_credential_pool),
):
    return credential_pool.list_credentials()


@router.post("/credentials", response_model=CredentialSchema)
async def add_credential(
    request: CredentialCreate,
    _admin: CurrentUser = Depends(admin_required),
    credential_pool: CredentialPoolManager = Depends(get_credential_pool),
):
    return credential_pool.add_credential(request)


@router.post("/credentials/{credential_id}/enable", response_model=CredentialSchema)
async def enable_credential(
    credential_id: int = Path(..., gt=0),
    _admin: CurrentUser = Depends(admin_required),
    credential_pool: CredentialPoolManager = Depends(get_credential_pool),
):
    return credential_pool.set_status(credential_id, CredentialStatusEnum.ACTIVE)


@router.post("/credentials/{credential_id}/disable", response_model=CredentialSchema)
async def disable_credential(
    credential_id: int = Path(..., gt=0),
    _admin: CurrentUser = Depends(admin_required),
    credential_pool: CredentialPoolManager = Depends(get_credential_pool),
):
    return credential_pool.set_status(credential_id, CredentialStatusEnum.DISABLED)


@router.post("/credentials/{credential_id}/test", response_model=CredentialTestResult)
async def test_credential(
    credential_id: int = Path(..., gt=0),
    _admin: CurrentUser = Depends(admin_required),
    credential_pool: CredentialPoolManager = Depends(get_credential_pool),
):
    return await credential_pool.test_credential(credential_id)


@router.delete("/credentials/{credential_id}")
async def remove_credential(
    credential_id: int = Path(..., gt=0),
    _admin: CurrentUser = Depends(admin_required),
    credential_pool: CredentialPoolManager = Depends(get_credential_pool),
):
    credential_pool.remove_credential(credential_id)
    return {"success": True, "credential_id": credential_id}


# ---------------------------------------------------------------------------
# 기프트코드
# ---------------------------------------------------------------------------
@router.get("/giftcodes", response_model=List[GiftcodeSchema])
async def list_giftcodes(
    _admin: CurrentUser = Depends(admin_required),
    giftcode_service: GiftcodeService = Depends(get_giftcode_service),
):
    return giftcode_service.list_giftcodes()


@router.post("/giftcodes", response_model=GiftcodeSchema)
async def create_giftcode(
    request: GiftcodeCreate,
    _admin: CurrentUser = Depends(admin_required),
    giftcode_service: GiftcodeService = Depends(get_giftcode_service),
):
    return giftcode_service.create_giftcode(request)


@router.patch("/giftcodes/{giftcode_id}", response_model=GiftcodeSchema)
async def update_giftcode(
    request: GiftcodeUpdate,
    giftcode_id: int = Path(..., gt=0),
    _admin: CurrentUser = Depends(admin_required),
    giftcode_service: GiftcodeService = Depends(get_giftcode_service),
):
    return giftcode_service.update_giftcode(giftcode_id, request)


@router.delete("/giftcodes/{giftcode_id}")
async def delete_giftcode(
    giftcode_id: int = Path(..., gt=0),
    _admin: CurrentUser = Depends(admin_required),
    giftcode_service: GiftcodeService = Depends(get_giftcode_service),
):
    giftcode_service.delete_giftcode(giftcode_id)
    return {"success": True, "giftcode_id": giftcode_id}


# ---------------------------------------------------------------------------
# 체크인 보상 설정 / 주간 리더보드
# ---------------------------------------------------------------------------
@router.get("/rewards/check-in-configs", response_model=List[CheckInRewardConfigSchema])
async def list_reward_configs(
    _admin: CurrentUser = Depends(admin_required),
    reward_service: RewardClaimService = Depends(get_reward_service),
):
    return reward_service.list_reward_configs()


@router.post("/rewards/check-in-configs", response_model=CheckInRewardConfigSchema)
async def create_reward_config(
    request: CheckInRewardConfigCreate,
    _admin: CurrentUser = Depends(admin_required),
    reward_service: RewardClaimService = Depends(get_reward_service),
):
    return reward_service.create_reward_config(request)


@router.patch("/rewards/check-in-configs/{config_id}", response_model=CheckInRewardConfigSchema)
async def update_reward_config(
    request: CheckInRewardConfigUpdate,
    config_id: int = Path(..., gt=0),
    _admin: CurrentUser = Depends(admin_required),
    reward_service: RewardClaimService = Depends(get_reward_service),
):
    return reward_service.update_reward_config(config_id, request)


@router.delete("/rewards/check-in-configs/{config_id}")
async def delete_reward_config(
    config_id: int = Path(..., gt=0),
    _admin: CurrentUser = Depends(admin_required),
    reward_service: RewardClaimService = Depends(get_reward_service),
):
    reward_service.delete_reward_config(config_id)
    return {"success": True, "config_id": config_id}


@router.post("/rewards/weekly-points")
async def add_weekly_points(
    request: WeeklyPointsRequest,
    _admin: CurrentUser = Depends(admin_required),
    reward_service: RewardClaimService = Depends(get_reward_service),
):
    weekly_points = reward_service.add_weekly_points(request.user_id, request.points)
    return {"user_id": request.user_id, "weekly_points": weekly_points}


def _run_weekly_reset(
    week_start_date: Optional[date],
    reward_service: RewardClaimService,
    dispatcher: NotificationDispatcher,
    background_tasks: BackgroundTasks,
) -> WeeklyResetResponse:
    result = reward_service.reset_weekly_rewards(week_start_date)
    if result.effects:
        background_tasks.add_task(dispatcher.dispatch_all, result.effects)
    return result


@router.post("/rewards/weekly-reset", response_model=WeeklyResetResponse)
async def trigger_weekly_reset(
    background_tasks: BackgroundTasks,
    week_start_date: Optional[date] = Query(None, description="정산할 주 (기본: 실행일 3일 전이 속한 주)"),
    _admin: CurrentUser = Depends(admin_required),
    reward_service: RewardClaimService = Depends(get_reward_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """주간 상위 3명 보상 지급 후 점수 초기화 (같은 주 재실행 시 중복 지급 없음)"""
    return _run_weekly_reset(week_start_date, reward_service, dispatcher, background_tasks)


@router.post("/cron/weekly-reset", response_model=WeeklyResetResponse)
async def cron_weekly_reset(
    background_tasks: BackgroundTasks,
    week_start_date: Optional[date] = Query(None, description="정산할 주 (기본: 실행일 3일 전이 속한 주)"),
    _: None = Depends(verify_cron_secret),
    reward_service: RewardClaimService = Depends(get_reward_service),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """스케줄러 호출용 주간 리셋"""
    return _run_weekly_reset(week_start_date, reward_service, dispatcher, background_tasks)


# ---------------------------------------------------------------------------
# 충전 패키지 / 프로모션
# ---------------------------------------------------------------------------
@router.get("/packages", response_model=List[CreditPackageSchema])
async def list_all_packages(
    _admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
):
    return topup_service.list_all_packages()


@router.post("/packages", response_model=CreditPackageSchema)
async def create_package(
    request: CreditPackageCreate,
    _admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
):
    return topup_service.create_package(request)


@router.patch("/packages/{package_id}", response_model=CreditPackageSchema)
async def update_package(
    request: CreditPackageUpdate,
    package_id: int = Path(..., gt=0),
    _admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
):
    return topup_service.update_package(package_id, request)


@router.delete("/packages/{package_id}")
async def delete_package(
    package_id: int = Path(..., gt=0),
    _admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
):
    action = topup_service.delete_package(package_id)
    return {"success": True, "package_id": package_id, "action": action}


@router.get("/promotions", response_model=List[PromotionSchema])
async def list_promotions(
    _admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
):
    return topup_service.list_promotions()


@router.post("/promotions", response_model=PromotionSchema)
async def create_promotion(
    request: PromotionCreate,
    _admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
):
    return topup_service.create_promotion(request)


@router.patch("/promotions/{promotion_id}", response_model=PromotionSchema)
async def update_promotion(
    request: PromotionUpdate,
    promotion_id: int = Path(..., gt=0),
    _admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
):
    return topup_service.update_promotion(promotion_id, request)


@router.delete("/promotions/{promotion_id}")
async def delete_promotion(
    promotion_id: int = Path(..., gt=0),
    _admin: CurrentUser = Depends(admin_required),
    topup_service: TopupService = Depends(get_topup_service),
):
    topup_service.delete_promotion(promotion_id)
    return {"success": True, "promotion_id": promotion_id}


# ---------------------------------------------------------------------------
# 생성 비용 정산
# ---------------------------------------------------------------------------
@router.post("/generations/reconcile", response_model=StaleReconcileResponse)
async def reconcile_stale_reservations(
    older_than_minutes: Optional[int] = Query(None, ge=1, description="기준 경과 시간 (분)"),
    _admin: CurrentUser = Depends(admin_required),
    guard: GenerationCostGuard = Depends(get_generation_guard),
):
    """작업 중단으로 남은 예약을 찾아 환불"""
    return guard.reconcile_stale_reservations(older_than_minutes)
