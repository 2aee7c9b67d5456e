from abc import ABC
from typing import Any, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy.orm import Session

T = TypeVar("T")
SchemaType = TypeVar("SchemaType", bound=BaseModel)


class BaseRepository(Generic[T, SchemaType], ABC):
    """리포지토리 공통 베이스

    잔액/원장처럼 경합이 있는 쓰기는 각 리포지토리의 조건부 UPDATE로 처리하고,
    여기에는 관리자 CRUD에 쓰이는 단순 연산만 둡니다.
    commit=False면 호출자의 트랜잭션에 합류합니다.
    """

    def __init__(
        self, model_class: Type[T], schema_class: Type[SchemaType], db: Session
    ):
        self.model_class = model_class
        self.schema_class = schema_class
        self.db = db

    def _to_schema(self, model_instance: Any) -> Optional[SchemaType]:
        if model_instance is None:
            return None
        return self.schema_class.model_validate(model_instance)

    def _finish(self, commit: bool) -> None:
        try:
            self.db.flush()
            if commit:
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def get_model(self, instance_id: Any) -> Optional[T]:
        return self.db.get(self.model_class, instance_id)

    def list_ordered(self, *order_by: Any) -> List[SchemaType]:
        """전체 조회 (관리자 목록용)"""
        instances = self.db.query(self.model_class).order_by(*order_by).all()
        return [self._to_schema(instance) for instance in instances]

    def count(self) -> int:
        return self.db.query(self.model_class).count()

    def create(self, commit: bool = True, **values) -> T:
        """행 추가 - flush 후 PK가 채워진 모델 반환"""
        instance = self.model_class(**values)
        self.db.add(instance)
        self._finish(commit)
        return instance

    def update(self, instance_id: Any, commit: bool = True, **changes) -> Optional[T]:
        """관리자 수정 (모델에 있는 컬럼만 반영), 없으면 None"""
        instance = self.get_model(instance_id)
        if instance is None:
            return None

        for column, value in changes.items():
            if hasattr(instance, column):
                setattr(instance, column, value)
        self._finish(commit)
        return instance

    def delete(self, instance_id: Any, commit: bool = True) -> bool:
        instance = self.get_model(instance_id)
        if instance is None:
            return False

        self.db.delete(instance)
        self._finish(commit)
        return True
