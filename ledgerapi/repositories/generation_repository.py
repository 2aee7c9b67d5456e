from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ledgerapi.models.generation import GenerationJob, GenerationJobStatusEnum
from ledgerapi.schemas.generation import GenerationJobSchema
from ledgerapi.repositories.base import BaseRepository


class GenerationJobRepository(BaseRepository[GenerationJob, GenerationJobSchema]):
    """생성 작업 예약 기록 - 상태 전이는 reserved에서만 허용"""

    def __init__(self, db: Session):
        super().__init__(GenerationJob, GenerationJobSchema, db)

    def add_reservation(
        self, job_id: str, user_id: str, cost: int, description: str
    ) -> GenerationJob:
        job = GenerationJob(
            id=job_id,
            user_id=user_id,
            cost=cost,
            description=description,
            status=GenerationJobStatusEnum.RESERVED,
        )
        self.db.add(job)
        self.db.flush()
        return job

    def get_fresh(self, job_id: str) -> Optional[GenerationJob]:
        return (
            self.db.query(GenerationJob)
            .populate_existing()
            .filter(GenerationJob.id == job_id)
            .first()
        )

    def _transition(self, job_id: str, **values) -> bool:
        result = self.db.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,
                GenerationJob.status == GenerationJobStatusEnum.RESERVED,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def mark_succeeded(self, job_id: str, credential_id: Optional[int]) -> bool:
        return self._transition(
            job_id,
            status=GenerationJobStatusEnum.SUCCEEDED,
            credential_id=credential_id,
        )

    def mark_refunded(
        self, job_id: str, error_kind: str, credential_id: Optional[int] = None
    ) -> bool:
        """reserved -> refunded 선점 (환불 항목 기록 전에 호출)"""
        return self._transition(
            job_id,
            status=GenerationJobStatusEnum.REFUNDED,
            error_kind=error_kind,
            credential_id=credential_id,
        )

    def attach_refund_entry(self, job_id: str, refund_entry_id: int) -> None:
        self.db.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id)
            .values(refund_entry_id=refund_entry_id)
            .execution_options(synchronize_session=False)
        )

    def find_stale(self, cutoff: datetime, limit: int = 100) -> List[GenerationJobSchema]:
        instances = (
            self.db.query(GenerationJob)
            .populate_existing()
            .filter(
                GenerationJob.status == GenerationJobStatusEnum.RESERVED,
                GenerationJob.created_at < cutoff,
            )
            .order_by(GenerationJob.created_at)
            .limit(limit)
            .all()
        )
        return [self._to_schema(instance) for instance in instances]
