from typing import List, Optional

from sqlalchemy import delete, desc, update
from sqlalchemy.orm import Session

from ledgerapi.models.giftcode import Giftcode, GiftcodeUsage
from ledgerapi.schemas.giftcode import GiftcodeSchema
from ledgerapi.repositories.base import BaseRepository


class GiftcodeRepository(BaseRepository[Giftcode, GiftcodeSchema]):
    """기프트코드 리포지토리

    두 개의 관문을 제공합니다:
    - 사용자별: (user_id, giftcode_id, seq) 유니크 제약
    - 전체: used_count < total_limit 조건부 증가
    """

    def __init__(self, db: Session):
        super().__init__(Giftcode, GiftcodeSchema, db)

    def get_active_by_code(self, code: str) -> Optional[Giftcode]:
        return (
            self.db.query(Giftcode)
            .filter(Giftcode.code == code, Giftcode.is_active.is_(True))
            .first()
        )

    def get_by_code(self, code: str) -> Optional[Giftcode]:
        return self.db.query(Giftcode).filter(Giftcode.code == code).first()

    def count_user_usages(self, user_id: str, giftcode_id: int) -> int:
        return (
            self.db.query(GiftcodeUsage)
            .filter(
                GiftcodeUsage.user_id == user_id,
                GiftcodeUsage.giftcode_id == giftcode_id,
            )
            .count()
        )

    def add_usage(self, user_id: str, giftcode_id: int, seq: int) -> GiftcodeUsage:
        usage = GiftcodeUsage(user_id=user_id, giftcode_id=giftcode_id, seq=seq)
        self.db.add(usage)
        self.db.flush()
        return usage

    def try_increment_used_count(self, giftcode_id: int) -> bool:
        """used_count < total_limit 인 활성 코드만 1 증가 - 성공 여부 반환"""
        result = self.db.execute(
            update(Giftcode)
            .where(
                Giftcode.id == giftcode_id,
                Giftcode.is_active.is_(True),
                Giftcode.used_count < Giftcode.total_limit,
            )
            .values(used_count=Giftcode.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def get_used_count(self, giftcode_id: int) -> int:
        count = (
            self.db.query(Giftcode.used_count)
            .filter(Giftcode.id == giftcode_id)
            .scalar()
        )
        return int(count or 0)

    def list_giftcodes(self) -> List[GiftcodeSchema]:
        instances = (
            self.db.query(Giftcode).populate_existing().order_by(desc(Giftcode.id)).all()
        )
        return [self._to_schema(instance) for instance in instances]

    def delete_with_usages(self, giftcode_id: int) -> bool:
        """사용 기록과 함께 삭제 (커밋 포함)"""
        try:
            self.db.execute(
                delete(GiftcodeUsage).where(GiftcodeUsage.giftcode_id == giftcode_id)
            )
            result = self.db.execute(delete(Giftcode).where(Giftcode.id == giftcode_id))
            if result.rowcount == 0:
                self.db.rollback()
                return False
            self.db.commit()
            return True
        except Exception:
            self.db.rollback()
            raise
