from fastapi import APIRouter, Depends, Query

from ledgerapi.core.security import CurrentUser, get_current_user
from ledgerapi.deps import get_ledger_service
from ledgerapi.schemas.ledger import BalanceResponse, LedgerHistoryResponse
from ledgerapi.services.ledger_service import BalanceLedger

router = APIRouter(prefix="/ledger", tags=["ledger"])


@router.get("/balance", response_model=BalanceResponse)
async def get_my_balance(
    current_user: CurrentUser = Depends(get_current_user),
    ledger_service: BalanceLedger = Depends(get_ledger_service),
) -> BalanceResponse:
    """내 다이아몬드 잔액 조회"""
    return ledger_service.get_balance(current_user.user_id)


@router.get("/history", response_model=LedgerHistoryResponse)
async def get_my_history(
    limit: int = Query(50, ge=1, le=100, description="조회할 항목 수"),
    offset: int = Query(0, ge=0, description="오프셋"),
    current_user: CurrentUser = Depends(get_current_user),
    ledger_service: BalanceLedger = Depends(get_ledger_service),
) -> LedgerHistoryResponse:
    """내 원장 내역 조회 (최신순)"""
    return ledger_service.get_history(current_user.user_id, limit=limit, offset=offset)
