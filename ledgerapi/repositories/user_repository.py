from typing import List, Optional

from sqlalchemy import asc, desc, update
from sqlalchemy.orm import Session
from pydantic import BaseModel

from ledgerapi.models.user import User
from ledgerapi.repositories.base import BaseRepository


class UserSummary(BaseModel):
    id: str
    email: Optional[str] = None
    display_name: str = ""
    is_admin: bool = False
    weekly_points: int = 0

    class Config:
        from_attributes = True


class UserRepository(BaseRepository[User, UserSummary]):
    """사용자 리포지토리 - 주간 점수 관리"""

    def __init__(self, db: Session):
        super().__init__(User, UserSummary, db)

    def is_admin(self, user_id: str) -> bool:
        user = self.get_model(user_id)
        return bool(user and user.is_admin)

    def increment_weekly_points(self, user_id: str, points: int) -> bool:
        """주간 점수 원자적 증가 - 사용자가 없으면 False"""
        result = self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(weekly_points=User.weekly_points + points)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def get_weekly_points(self, user_id: str) -> int:
        points = (
            self.db.query(User.weekly_points).filter(User.id == user_id).scalar()
        )
        return int(points or 0)

    def find_weekly_leaders(self, limit: int) -> List[User]:
        """주간 점수 상위 사용자 (동점 시 가입 순, 그 다음 ID 순)"""
        return (
            self.db.query(User)
            .populate_existing()
            .filter(User.weekly_points > 0)
            .order_by(desc(User.weekly_points), asc(User.created_at), asc(User.id))
            .limit(limit)
            .all()
        )

    def reset_weekly_points(self) -> int:
        """0이 아닌 모든 주간 점수 초기화 - 초기화된 행 수 반환"""
        result = self.db.execute(
            update(User)
            .where(User.weekly_points != 0)
            .values(weekly_points=0)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def find_by_id_prefix(self, prefix: str) -> Optional[User]:
        """ID가 prefix로 시작하는 사용자 (대소문자 무시, 여럿이면 가입 순 첫 번째)"""
        return (
            self.db.query(User)
            .filter(User.id.ilike(f"{prefix}%"))
            .order_by(asc(User.created_at), asc(User.id))
            .first()
        )
