from fastapi import Depends, Request
from sqlalchemy.orm import Session

from ledgerapi.config import settings
from ledgerapi.database.session import get_db

# Services
from ledgerapi.services.ai_client import GenerativeAIClient
from ledgerapi.services.credential_pool import CredentialPoolManager
from ledgerapi.services.generation_service import GenerationCostGuard
from ledgerapi.services.giftcode_service import GiftcodeService
from ledgerapi.services.ledger_service import BalanceLedger
from ledgerapi.services.notification_service import (
    NotificationDispatcher,
    NotificationService,
)
from ledgerapi.services.reward_service import RewardClaimService
from ledgerapi.services.topup_service import TopupService


# Singletons (app.container)
def get_credential_pool(request: Request) -> CredentialPoolManager:
    return request.app.container.services.credential_pool()


def get_ai_client(request: Request) -> GenerativeAIClient:
    return request.app.container.services.ai_client()


def get_notification_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.container.services.notification_dispatcher()


# Request-scoped services
def get_ledger_service(db: Session = Depends(get_db)) -> BalanceLedger:
    return BalanceLedger(db)


def get_reward_service(db: Session = Depends(get_db)) -> RewardClaimService:
    return RewardClaimService(db=db, settings=settings)


def get_giftcode_service(db: Session = Depends(get_db)) -> GiftcodeService:
    return GiftcodeService(db=db)


def get_topup_service(db: Session = Depends(get_db)) -> TopupService:
    return TopupService(db=db, settings=settings)


def get_notification_service(db: Session = Depends(get_db)) -> NotificationService:
    return NotificationService(db=db)


def get_generation_guard(
    db: Session = Depends(get_db),
    credential_pool: CredentialPoolManager = Depends(get_credential_pool),
) -> GenerationCostGuard:
    return GenerationCostGuard(db=db, settings=settings, credential_pool=credential_pool)
