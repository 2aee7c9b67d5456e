import logging
import secrets
import time
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerapi.config import Settings
from ledgerapi.core.exceptions import (
    AlreadySettledError,
    BaseAPIException,
    ConflictingSettlementError,
    InternalServerError,
    NotFoundError,
)
from ledgerapi.models.ledger import LedgerKind
from ledgerapi.models.topup import CreditPackage, TopupStatusEnum
from ledgerapi.repositories.topup_repository import (
    CreditPackageRepository,
    PromotionRepository,
    TopupRepository,
)
from ledgerapi.schemas.effects import NotifyUser
from ledgerapi.schemas.topup import (
    BulkSettleItem,
    BulkSettleResponse,
    CreditPackageCreate,
    CreditPackageOffer,
    CreditPackageSchema,
    CreditPackageUpdate,
    PromotionCreate,
    PromotionSchema,
    PromotionUpdate,
    SettlementOutcome,
    SettlementResult,
    TopupTransactionSchema,
)
from ledgerapi.services.ledger_service import BalanceLedger
from ledgerapi.utils.store_retry import with_store_retry

logger = logging.getLogger(__name__)

ORDER_CODE_ATTEMPTS = 5


def compute_coins(credits_amount: int, bonus_percent: int, promo_percent: int = 0) -> int:
    """지급 다이아몬드 = 기본 수량 + 패키지 보너스 + 프로모션 보너스

    두 보너스 모두 기본 수량 기준으로 각각 내림합니다.
    """
    package_bonus = (credits_amount * bonus_percent) // 100
    promo_bonus = (credits_amount * promo_percent) // 100
    return credits_amount + package_bonus + promo_bonus


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TopupService:
    """
    충전 거래 관리 - pending -> paid | failed

    정산은 CAS(status = 'pending' 조건부 UPDATE)로 단 한 번만 성공합니다.
    paid로 전이한 요청만 같은 트랜잭션에서 다이아몬드를 지급합니다.
    """

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings
        self.topup_repo = TopupRepository(db)
        self.package_repo = CreditPackageRepository(db)
        self.promotion_repo = PromotionRepository(db)
        self.ledger = BalanceLedger(db)

    # ------------------------------------------------------------------
    # 패키지 / 보너스
    # ------------------------------------------------------------------
    def _bonus_parts(self, package: CreditPackage, now: datetime) -> Tuple[int, int]:
        """(패키지 보너스%, 활성 프로모션 보너스%) - 프로모션은 패키지 보너스에 더해짐"""
        promotion = self.promotion_repo.get_best_active(now)
        promo_percent = promotion.bonus_percent if promotion is not None else 0
        return package.bonus_percent or 0, promo_percent

    def list_packages(self) -> List[CreditPackageOffer]:
        """활성 패키지 목록 (현재 적용되는 보너스 포함)"""
        now = datetime.now(timezone.utc)
        offers = []
        for package in self.package_repo.list_packages(active_only=True):
            package_bonus, promo_bonus = self._bonus_parts(package, now)
            offers.append(
                CreditPackageOffer(
                    **CreditPackageSchema.model_validate(package).model_dump(),
                    effective_bonus_percent=package_bonus + promo_bonus,
                    coins_to_credit=compute_coins(
                        package.credits_amount, package_bonus, promo_bonus
                    ),
                )
            )
        return offers

    # ------------------------------------------------------------------
    # 거래 생성
    # ------------------------------------------------------------------
    def _new_order_code(self) -> int:
        return int(time.time() * 1000) * 1000 + secrets.randbelow(1000)

    def create_transaction(self, user_id: str, package_id: int) -> TopupTransactionSchema:
        """pending 충전 거래 생성

        Raises:
            NotFoundError: 패키지가 없거나 비활성인 경우
        """
        package = self.package_repo.get_model(package_id)
        if package is None or not package.is_active:
            raise NotFoundError(f"Credit package {package_id} not found")

        now = datetime.now(timezone.utc)
        package_bonus, promo_bonus = self._bonus_parts(package, now)
        bonus = package_bonus + promo_bonus
        coins = compute_coins(package.credits_amount, package_bonus, promo_bonus)

        for attempt in range(1, ORDER_CODE_ATTEMPTS + 1):
            order_code = self._new_order_code()
            try:
                transaction = self.topup_repo.create(
                    user_id=user_id,
                    package_id=package.id,
                    amount_due=package.price_vnd,
                    coins_to_credit=coins,
                    bonus_percent=bonus,
                    order_code=order_code,
                    code=f"{self.settings.TOPUP_CODE_PREFIX}{order_code}",
                    status=TopupStatusEnum.PENDING,
                )
            except IntegrityError:
                logger.warning(
                    f"Order code collision on attempt {attempt}/{ORDER_CODE_ATTEMPTS}: {order_code}"
                )
                continue

            logger.info(
                f"Created top-up {transaction.code} for user {user_id}: "
                f"package={package.id}, coins={coins} (bonus {bonus}%)"
            )
            return TopupTransactionSchema.model_validate(transaction)

        raise InternalServerError("Could not allocate a unique transaction code")

    # ------------------------------------------------------------------
    # 정산
    # ------------------------------------------------------------------
    def settle(
        self, transaction_id: int, outcome: SettlementOutcome, actor: str = "system"
    ) -> SettlementResult:
        """pending 거래를 paid/failed로 정산

        Raises:
            NotFoundError: 거래가 없는 경우
            AlreadySettledError: 이미 같은 결과로 정산된 경우 (멱등 성공)
            ConflictingSettlementError: 이미 다른 결과로 정산된 경우
        """
        target = TopupStatusEnum(outcome.value)

        def operation():
            try:
                transaction = self.topup_repo.get_fresh(transaction_id)
                if transaction is None:
                    raise NotFoundError(f"Transaction {transaction_id} not found")

                now = datetime.now(timezone.utc)
                if not self.topup_repo.compare_and_set_status(transaction_id, target, now):
                    self.db.rollback()
                    self._raise_settled(transaction_id, target)

                new_balance = None
                if target == TopupStatusEnum.PAID:
                    result = self.ledger.apply_delta(
                        user_id=transaction.user_id,
                        amount=transaction.coins_to_credit,
                        kind=LedgerKind.TOPUP,
                        description=f"Top-up {transaction.code}",
                        related_transaction_id=str(transaction.id),
                        ref_id=f"topup:{transaction.id}",
                        commit=False,
                    )
                    new_balance = result.new_balance

                self.db.commit()
                return transaction, new_balance
            except Exception:
                self.db.rollback()
                raise

        transaction, new_balance = with_store_retry(
            self.db, operation, label=f"settle_topup[{transaction_id}]"
        )
        logger.info(
            f"Top-up {transaction.code} settled as {target.value} by {actor}"
            + (f": +{transaction.coins_to_credit} -> {new_balance}" if new_balance is not None else "")
        )

        effects = []
        if target == TopupStatusEnum.PAID:
            effects.append(
                NotifyUser(
                    user_id=transaction.user_id,
                    message=(
                        f"Your top-up {transaction.code} has been confirmed. "
                        f"{transaction.coins_to_credit} diamonds were added to your balance."
                    ),
                )
            )

        return SettlementResult(
            transaction_id=transaction_id,
            status=target,
            changed=True,
            new_balance=new_balance,
            effects=effects,
        )

    def _raise_settled(self, transaction_id: int, target: TopupStatusEnum) -> None:
        current = self.topup_repo.get_fresh(transaction_id)
        if current is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        details = {
            "transaction_id": transaction_id,
            "status": current.status.value,
            "requested": target.value,
        }
        if current.status == target:
            logger.info(f"Top-up {transaction_id} already settled as {target.value}")
            raise AlreadySettledError(details=details)

        logger.warning(
            f"Conflicting settlement for top-up {transaction_id}: "
            f"current={current.status.value}, requested={target.value}"
        )
        raise ConflictingSettlementError(details=details)

    def settle_idempotent(
        self, transaction_id: int, outcome: SettlementOutcome, actor: str = "system"
    ) -> SettlementResult:
        """settle()과 같지만 이미 같은 결과로 정산된 거래는 changed=False로 반환"""
        try:
            return self.settle(transaction_id, outcome, actor=actor)
        except AlreadySettledError:
            return SettlementResult(
                transaction_id=transaction_id,
                status=TopupStatusEnum(outcome.value),
                changed=False,
            )

    def bulk_settle(
        self, transaction_ids: List[int], outcome: SettlementOutcome, actor: str = "system"
    ) -> BulkSettleResponse:
        """거래별로 독립적으로 정산 - 한 건의 실패가 나머지를 중단시키지 않음"""
        results: List[BulkSettleItem] = []
        effects: List[NotifyUser] = []

        for transaction_id in dict.fromkeys(transaction_ids):
            try:
                settled = self.settle(transaction_id, outcome, actor=actor)
                effects.extend(settled.effects)
                results.append(
                    BulkSettleItem(
                        transaction_id=transaction_id,
                        success=True,
                        status=settled.status,
                        changed=True,
                    )
                )
            except AlreadySettledError:
                results.append(
                    BulkSettleItem(
                        transaction_id=transaction_id,
                        success=True,
                        status=TopupStatusEnum(outcome.value),
                        changed=False,
                    )
                )
            except BaseAPIException as e:
                results.append(
                    BulkSettleItem(
                        transaction_id=transaction_id,
                        success=False,
                        error_code=e.error_code,
                        message=e.message,
                    )
                )
            except Exception as e:
                logger.exception(f"Bulk settle failed for top-up {transaction_id}: {str(e)}")
                results.append(
                    BulkSettleItem(
                        transaction_id=transaction_id,
                        success=False,
                        error_code="INTERNAL_001",
                        message=str(e),
                    )
                )

        succeeded = sum(1 for r in results if r.success)
        logger.info(
            f"Bulk settle ({outcome.value}) by {actor}: {succeeded}/{len(results)} succeeded"
        )
        return BulkSettleResponse(
            outcome=outcome,
            results=results,
            succeeded=succeeded,
            failed=len(results) - succeeded,
            effects=effects,
        )

    def settle_by_reference(
        self,
        outcome: SettlementOutcome,
        code: Optional[str] = None,
        order_code: Optional[int] = None,
    ) -> SettlementResult:
        """결제 게이트웨이 이벤트 처리 - 거래 코드 또는 주문 번호로 정산"""
        transaction = None
        if order_code is not None:
            transaction = self.topup_repo.get_by_order_code(order_code)
        elif code:
            transaction = self.topup_repo.get_by_code(code.strip().upper())

        if transaction is None:
            raise NotFoundError(
                "Transaction not found", details={"code": code, "order_code": order_code}
            )
        return self.settle_idempotent(transaction.id, outcome, actor="payment-gateway")

    # ------------------------------------------------------------------
    # 조회 / 관리
    # ------------------------------------------------------------------
    def list_transactions(
        self,
        status: Optional[TopupStatusEnum] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[TopupTransactionSchema]:
        return self.topup_repo.list_transactions(
            status=status, limit=max(1, min(limit, 200)), offset=max(0, offset)
        )

    def list_user_transactions(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[TopupTransactionSchema]:
        return self.topup_repo.list_transactions(
            user_id=user_id, limit=max(1, min(limit, 100)), offset=max(0, offset)
        )

    def delete_transaction(self, transaction_id: int, actor: str = "system") -> bool:
        """거래 삭제 (관리자) - 이미 지급된 원장 항목은 그대로 남음"""
        transaction = self.topup_repo.get_fresh(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        if transaction.status == TopupStatusEnum.PAID:
            logger.warning(
                f"Deleting paid top-up {transaction.code}; ledger entry topup:{transaction_id} is kept"
            )
        self.topup_repo.delete(transaction_id)
        logger.info(f"Top-up {transaction_id} deleted by {actor}")
        return True

    def list_all_packages(self) -> List[CreditPackageSchema]:
        return [
            CreditPackageSchema.model_validate(p)
            for p in self.package_repo.list_packages(active_only=False)
        ]

    def create_package(self, request: CreditPackageCreate) -> CreditPackageSchema:
        package = self.package_repo.create(**request.model_dump())
        logger.info(f"Created credit package {package.id}: {package.name}")
        return CreditPackageSchema.model_validate(package)

    def update_package(self, package_id: int, request: CreditPackageUpdate) -> CreditPackageSchema:
        package = self.package_repo.update(package_id, **request.model_dump(exclude_none=True))
        if package is None:
            raise NotFoundError(f"Credit package {package_id} not found")
        logger.info(f"Updated credit package {package_id}")
        return CreditPackageSchema.model_validate(package)

    def delete_package(self, package_id: int) -> str:
        """패키지 삭제 - 거래가 참조 중이면 비활성화(숨김)로 대체

        Returns:
            str: "deleted" 또는 "hidden"
        """
        if self.package_repo.get_model(package_id) is None:
            raise NotFoundError(f"Credit package {package_id} not found")

        if not self.package_repo.is_referenced(package_id):
            try:
                self.package_repo.delete(package_id)
                logger.info(f"Deleted credit package {package_id}")
                return "deleted"
            except IntegrityError:
                logger.info(f"Credit package {package_id} was referenced concurrently")

        self.package_repo.update(package_id, is_active=False)
        logger.info(f"Credit package {package_id} is referenced by transactions; hidden instead")
        return "hidden"

    def list_promotions(self) -> List[PromotionSchema]:
        return [
            PromotionSchema.model_validate(p) for p in self.promotion_repo.list_promotions()
        ]

    def create_promotion(self, request: PromotionCreate) -> PromotionSchema:
        data = request.model_dump()
        data["start_time"] = _as_utc(data["start_time"])
        data["end_time"] = _as_utc(data["end_time"])
        promotion = self.promotion_repo.create(**data)
        logger.info(
            f"Created promotion {promotion.id}: {promotion.title} (+{promotion.bonus_percent}%)"
        )
        return PromotionSchema.model_validate(promotion)

    def update_promotion(self, promotion_id: int, request: PromotionUpdate) -> PromotionSchema:
        changes = request.model_dump(exclude_none=True)
        for key in ("start_time", "end_time"):
            if key in changes:
                changes[key] = _as_utc(changes[key])

        promotion = self.promotion_repo.update(promotion_id, **changes)
        if promotion is None:
            raise NotFoundError(f"Promotion {promotion_id} not found")
        logger.info(f"Updated promotion {promotion_id}")
        return PromotionSchema.model_validate(promotion)

    def delete_promotion(self, promotion_id: int) -> bool:
        if not self.promotion_repo.delete(promotion_id):
            raise NotFoundError(f"Promotion {promotion_id} not found")
        logger.info(f"Deleted promotion {promotion_id}")
        return True
