from datetime import datetime
from typing import List, Optional

from sqlalchemy import desc, exists, update
from sqlalchemy.orm import Session

from ledgerapi.models.topup import (
    CreditPackage,
    Promotion,
    TopupStatusEnum,
    TopupTransaction,
)
from ledgerapi.schemas.topup import (
    CreditPackageSchema,
    PromotionSchema,
    TopupTransactionSchema,
)
from ledgerapi.repositories.base import BaseRepository


class TopupRepository(BaseRepository[TopupTransaction, TopupTransactionSchema]):
    """충전 거래 리포지토리 - 상태 전이는 CAS로만 수행"""

    def __init__(self, db: Session):
        super().__init__(TopupTransaction, TopupTransactionSchema, db)

    def get_fresh(self, transaction_id: int) -> Optional[TopupTransaction]:
        """DB의 최신 상태로 조회 (세션 캐시 무시)"""
        return (
            self.db.query(TopupTransaction)
            .populate_existing()
            .filter(TopupTransaction.id == transaction_id)
            .first()
        )

    def get_by_code(self, code: str) -> Optional[TopupTransaction]:
        return (
            self.db.query(TopupTransaction)
            .populate_existing()
            .filter(TopupTransaction.code == code)
            .first()
        )

    def get_by_order_code(self, order_code: int) -> Optional[TopupTransaction]:
        return (
            self.db.query(TopupTransaction)
            .populate_existing()
            .filter(TopupTransaction.order_code == order_code)
            .first()
        )

    def compare_and_set_status(
        self,
        transaction_id: int,
        new_status: TopupStatusEnum,
        settled_at: datetime,
    ) -> bool:
        """pending인 경우에만 상태 전이 - 성공 여부 반환"""
        result = self.db.execute(
            update(TopupTransaction)
            .where(
                TopupTransaction.id == transaction_id,
                TopupTransaction.status == TopupStatusEnum.PENDING,
            )
            .values(status=new_status, settled_at=settled_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def list_transactions(
        self,
        status: Optional[TopupStatusEnum] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[TopupTransactionSchema]:
        query = self.db.query(TopupTransaction).populate_existing()
        if status is not None:
            query = query.filter(TopupTransaction.status == status)
        if user_id is not None:
            query = query.filter(TopupTransaction.user_id == user_id)

        instances = (
            query.order_by(desc(TopupTransaction.id)).offset(offset).limit(limit).all()
        )
        return [self._to_schema(instance) for instance in instances]


class CreditPackageRepository(BaseRepository[CreditPackage, CreditPackageSchema]):
    def __init__(self, db: Session):
        super().__init__(CreditPackage, CreditPackageSchema, db)

    def list_packages(self, active_only: bool = True) -> List[CreditPackage]:
        query = self.db.query(CreditPackage)
        if active_only:
            query = query.filter(CreditPackage.is_active.is_(True))
        return query.order_by(CreditPackage.display_order, CreditPackage.id).all()

    def is_referenced(self, package_id: int) -> bool:
        """충전 거래가 참조하는 패키지인지 (참조 중이면 삭제 대신 숨김)"""
        return self.db.query(
            exists().where(TopupTransaction.package_id == package_id)
        ).scalar()


class PromotionRepository(BaseRepository[Promotion, PromotionSchema]):
    def __init__(self, db: Session):
        super().__init__(Promotion, PromotionSchema, db)

    def get_best_active(self, now: datetime) -> Optional[Promotion]:
        """기간 내 활성 프로모션 중 보너스율이 가장 높은 것"""
        return (
            self.db.query(Promotion)
            .filter(
                Promotion.is_active.is_(True),
                Promotion.start_time <= now,
                Promotion.end_time >= now,
            )
            .order_by(desc(Promotion.bonus_percent), desc(Promotion.id))
            .first()
        )

    def list_promotions(self) -> List[Promotion]:
        return self.db.query(Promotion).order_by(desc(Promotion.start_time)).all()
