import logging
import random
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional

from sqlalchemy.orm import Session

from ledgerapi.config import Settings
from ledgerapi.core.exceptions import (
    ExternalServiceFailure,
    InternalServerError,
    NoCredentialsAvailableError,
    NotFoundError,
)
from ledgerapi.models.credential import CredentialStatusEnum
from ledgerapi.repositories.credential_repository import CredentialRepository
from ledgerapi.schemas.credential import (
    CredentialCreate,
    CredentialHandle,
    CredentialSchema,
    CredentialTestResult,
    mask_secret,
)
from ledgerapi.services.ai_client import GenerativeAIClient

logger = logging.getLogger(__name__)


class CredentialPoolManager:
    """
    외부 AI 서비스 자격증명 풀

    - acquire(): 활성 자격증명 중 균등 무작위 선택
    - report_outcome(): 성공 시 실패 횟수 초기화, 실패 누적 시 자동 비활성화
    - 컨테이너 Singleton으로 생성되며 앱 lifespan에서 init()/shutdown() 호출
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Settings,
        ai_client: GenerativeAIClient,
        rng: Optional[random.Random] = None,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._ai_client = ai_client
        self._rng = rng or random.Random()
        self._initialized = False

    @property
    def failure_threshold(self) -> int:
        return max(1, self._settings.CREDENTIAL_FAILURE_THRESHOLD)

    def init(self) -> None:
        with self._session() as db:
            active = len(CredentialRepository(db).list_active())
        self._initialized = True
        logger.info(f"Credential pool initialized ({active} active credentials)")

    def shutdown(self) -> None:
        self._initialized = False
        logger.info("Credential pool shut down")

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise InternalServerError("Credential pool is not initialized")

    # ------------------------------------------------------------------
    # 선택 / 결과 보고
    # ------------------------------------------------------------------
    def acquire(self) -> CredentialHandle:
        """활성 자격증명 하나를 무작위로 선택

        Raises:
            NoCredentialsAvailableError: 활성 자격증명이 없는 경우
        """
        self._ensure_initialized()
        with self._session() as db:
            active = CredentialRepository(db).list_active()
            if not active:
                logger.error("No active AI credentials available")
                raise NoCredentialsAvailableError()

            chosen = self._rng.choice(active)
            return CredentialHandle(id=chosen.id, name=chosen.name, secret=chosen.secret_ref)

    def report_outcome(self, credential_id: int, success: bool) -> None:
        with self._session() as db:
            repo = CredentialRepository(db)
            if success:
                repo.record_success(credential_id, datetime.now(timezone.utc))
                db.commit()
                return

            repo.record_failure(credential_id, self.failure_threshold)
            db.commit()

            credential = repo.get_fresh(credential_id)
            if credential is None:
                return
            if credential.status == CredentialStatusEnum.DISABLED:
                logger.warning(
                    f"Credential {credential.name} ({mask_secret(credential.secret_ref)}) disabled "
                    f"after {credential.failure_count} consecutive failures"
                )
            else:
                logger.info(
                    f"Credential {credential.name} failure {credential.failure_count}/{self.failure_threshold}"
                )

    # ------------------------------------------------------------------
    # 관리자
    # ------------------------------------------------------------------
    def list_credentials(self) -> List[CredentialSchema]:
        with self._session() as db:
            return CredentialRepository(db).list_credentials()

    def add_credential(self, request: CredentialCreate) -> CredentialSchema:
        with self._session() as db:
            repo = CredentialRepository(db)
            credential = repo.create(
                name=request.name,
                secret_ref=request.secret_ref.strip(),
                status=CredentialStatusEnum.ACTIVE,
                failure_count=0,
                usage_count=0,
            )
            logger.info(f"Added credential {credential.name} ({mask_secret(credential.secret_ref)})")
            return repo._to_schema(credential)

    def remove_credential(self, credential_id: int) -> bool:
        with self._session() as db:
            if not CredentialRepository(db).delete(credential_id):
                raise NotFoundError(f"Credential {credential_id} not found")
        logger.info(f"Removed credential {credential_id}")
        return True

    def set_status(self, credential_id: int, status: CredentialStatusEnum) -> CredentialSchema:
        with self._session() as db:
            repo = CredentialRepository(db)
            if not repo.set_status(credential_id, status):
                raise NotFoundError(f"Credential {credential_id} not found")
            db.commit()
            logger.info(f"Credential {credential_id} set to {status.value}")
            return repo._to_schema(repo.get_fresh(credential_id))

    async def test_credential(self, credential_id: int) -> CredentialTestResult:
        """자격증명으로 AI 서비스에 1회 요청 - 결과는 report_outcome에 반영"""
        with self._session() as db:
            credential = CredentialRepository(db).get_fresh(credential_id)
            if credential is None:
                raise NotFoundError(f"Credential {credential_id} not found")
            handle = CredentialHandle(
                id=credential.id, name=credential.name, secret=credential.secret_ref
            )

        try:
            await self._ai_client.ping(handle)
        except ExternalServiceFailure as e:
            logger.warning(f"Credential test failed for {handle.name}: {e.cause.value}")
            self.report_outcome(credential_id, success=False)
            return CredentialTestResult(
                credential_id=credential_id, ok=False, cause=e.cause, message=e.message
            )

        self.report_outcome(credential_id, success=True)
        logger.info(f"Credential test passed for {handle.name}")
        return CredentialTestResult(credential_id=credential_id, ok=True, message="OK")
