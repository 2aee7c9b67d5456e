from datetime import datetime
from typing import List, Optional

from sqlalchemy import case, desc, literal, update
from sqlalchemy.orm import Session

from ledgerapi.models.credential import ApiCredential, CredentialStatusEnum
from ledgerapi.schemas.credential import CredentialSchema, mask_secret
from ledgerapi.repositories.base import BaseRepository


class CredentialRepository(BaseRepository[ApiCredential, CredentialSchema]):
    """API 자격증명 리포지토리"""

    def __init__(self, db: Session):
        super().__init__(ApiCredential, CredentialSchema, db)

    def _to_schema(self, model_instance: ApiCredential) -> Optional[CredentialSchema]:
        if model_instance is None:
            return None

        return CredentialSchema(
            id=model_instance.id,
            name=model_instance.name,
            masked_secret=mask_secret(model_instance.secret_ref),
            status=model_instance.status,
            failure_count=model_instance.failure_count or 0,
            usage_count=model_instance.usage_count or 0,
            last_used_at=model_instance.last_used_at,
            created_at=model_instance.created_at,
        )

    def list_active(self) -> List[ApiCredential]:
        return (
            self.db.query(ApiCredential)
            .populate_existing()
            .filter(ApiCredential.status == CredentialStatusEnum.ACTIVE)
            .order_by(ApiCredential.id)
            .all()
        )

    def list_credentials(self) -> List[CredentialSchema]:
        instances = (
            self.db.query(ApiCredential)
            .populate_existing()
            .order_by(desc(ApiCredential.id))
            .all()
        )
        return [self._to_schema(instance) for instance in instances]

    def get_fresh(self, credential_id: int) -> Optional[ApiCredential]:
        return (
            self.db.query(ApiCredential)
            .populate_existing()
            .filter(ApiCredential.id == credential_id)
            .first()
        )

    def record_success(self, credential_id: int, now: datetime) -> bool:
        result = self.db.execute(
            update(ApiCredential)
            .where(ApiCredential.id == credential_id)
            .values(
                failure_count=0,
                last_used_at=now,
                usage_count=ApiCredential.usage_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def record_failure(self, credential_id: int, threshold: int) -> bool:
        """실패 횟수 원자적 증가 - threshold 도달 시 같은 UPDATE에서 비활성화"""
        result = self.db.execute(
            update(ApiCredential)
            .where(ApiCredential.id == credential_id)
            .values(
                failure_count=ApiCredential.failure_count + 1,
                status=case(
                    (
                        ApiCredential.failure_count + 1 >= threshold,
                        literal(
                            CredentialStatusEnum.DISABLED,
                            type_=ApiCredential.__table__.c.status.type,
                        ),
                    ),
                    else_=ApiCredential.status,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def set_status(self, credential_id: int, status: CredentialStatusEnum) -> bool:
        values = {"status": status}
        if status == CredentialStatusEnum.ACTIVE:
            values["failure_count"] = 0
        result = self.db.execute(
            update(ApiCredential)
            .where(ApiCredential.id == credential_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0
