import logging
from typing import List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerapi.core.exceptions import (
    AlreadyRedeemedError,
    InvalidCodeError,
    LimitReachedError,
    NotFoundError,
    ValidationError,
)
from ledgerapi.models.ledger import LedgerKind
from ledgerapi.repositories.giftcode_repository import GiftcodeRepository
from ledgerapi.schemas.giftcode import (
    GiftcodeCreate,
    GiftcodeRedeemResponse,
    GiftcodeSchema,
    GiftcodeUpdate,
    normalize_code,
)
from ledgerapi.services.ledger_service import BalanceLedger
from ledgerapi.utils.store_retry import with_store_retry

logger = logging.getLogger(__name__)


class GiftcodeService:
    """기프트코드 사용 및 관리

    사용 기록 삽입 -> used_count 조건부 증가 -> 원장 지급을 하나의 DB 트랜잭션으로 처리합니다.
    어느 단계든 실패하면 전체가 롤백되므로 사용자는 그대로 재시도할 수 있습니다.
    """

    def __init__(self, db: Session):
        self.db = db
        self.giftcode_repo = GiftcodeRepository(db)
        self.ledger = BalanceLedger(db)

    def redeem(self, user_id: str, code: str) -> GiftcodeRedeemResponse:
        """기프트코드 사용

        Raises:
            InvalidCodeError: 활성 코드가 없는 경우
            LimitReachedError: 전체 사용 한도 도달
            AlreadyRedeemedError: 사용자별 사용 한도 도달
        """
        normalized = normalize_code(code)
        giftcode = self.giftcode_repo.get_active_by_code(normalized) if normalized else None
        if giftcode is None:
            logger.info(f"User {user_id} tried invalid giftcode '{normalized}'")
            raise InvalidCodeError(details={"code": normalized})

        giftcode_id = giftcode.id
        reward = giftcode.reward_amount
        max_per_user = giftcode.max_per_user

        if self.giftcode_repo.get_used_count(giftcode_id) >= giftcode.total_limit:
            raise LimitReachedError(details={"code": normalized})

        def attempt():
            used = self.giftcode_repo.count_user_usages(user_id, giftcode_id)
            if used >= max_per_user:
                raise AlreadyRedeemedError(
                    details={"code": normalized, "max_per_user": max_per_user}
                )

            seq = used + 1
            try:
                # 사용자별 관문 - 동시 요청은 같은 seq로 충돌
                self.giftcode_repo.add_usage(user_id, giftcode_id, seq)

                # 전체 관문
                if not self.giftcode_repo.try_increment_used_count(giftcode_id):
                    raise LimitReachedError(details={"code": normalized})

                result = self.ledger.apply_delta(
                    user_id=user_id,
                    amount=reward,
                    kind=LedgerKind.GIFTCODE,
                    description=f"Giftcode {normalized}",
                    ref_id=f"giftcode:{giftcode_id}:{user_id}:{seq}",
                    commit=False,
                )
                self.db.commit()
                return result
            except IntegrityError:
                self.db.rollback()
                return None
            except Exception:
                self.db.rollback()
                raise

        def operation():
            # seq 충돌 시 사용 횟수를 다시 세고 재시도 (max_per_user 초과 시 AlreadyRedeemed)
            for _ in range(max_per_user + 1):
                result = attempt()
                if result is not None:
                    return result
            raise AlreadyRedeemedError(
                details={"code": normalized, "max_per_user": max_per_user}
            )

        result = with_store_retry(
            self.db, operation, label=f"redeem_giftcode[{user_id}:{normalized}]"
        )
        logger.info(
            f"User {user_id} redeemed giftcode {normalized}: +{reward} -> {result.new_balance}"
        )
        return GiftcodeRedeemResponse(
            code=normalized, reward_amount=reward, new_balance=result.new_balance
        )

    # ------------------------------------------------------------------
    # 관리자
    # ------------------------------------------------------------------
    def list_giftcodes(self) -> List[GiftcodeSchema]:
        return self.giftcode_repo.list_giftcodes()

    def create_giftcode(self, request: GiftcodeCreate) -> GiftcodeSchema:
        try:
            giftcode = self.giftcode_repo.create(used_count=0, **request.model_dump())
        except IntegrityError:
            raise ValidationError(
                f"Giftcode {request.code} already exists", details={"code": request.code}
            )
        logger.info(
            f"Created giftcode {giftcode.code}: reward={giftcode.reward_amount}, limit={giftcode.total_limit}"
        )
        return GiftcodeSchema.model_validate(giftcode)

    def update_giftcode(self, giftcode_id: int, request: GiftcodeUpdate) -> GiftcodeSchema:
        changes = request.model_dump(exclude_none=True)
        current = self.giftcode_repo.get_model(giftcode_id)
        if current is None:
            raise NotFoundError(f"Giftcode {giftcode_id} not found")

        total_limit = changes.get("total_limit")
        if total_limit is not None and total_limit < self.giftcode_repo.get_used_count(giftcode_id):
            raise ValidationError(
                "total_limit cannot be lower than used_count",
                details={"total_limit": total_limit},
            )

        giftcode = self.giftcode_repo.update(giftcode_id, **changes)
        self.db.refresh(giftcode)
        logger.info(f"Updated giftcode {giftcode_id}: {changes}")
        return GiftcodeSchema.model_validate(giftcode)

    def delete_giftcode(self, giftcode_id: int) -> bool:
        if not self.giftcode_repo.delete_with_usages(giftcode_id):
            raise NotFoundError(f"Giftcode {giftcode_id} not found")
        logger.info(f"Deleted giftcode {giftcode_id}")
        return True
