import os
import tempfile
import uuid

# 앱 모듈 import 전에 테스트 DB 지정 (엔진은 import 시점에 생성됨)
_DB_PATH = os.path.join(tempfile.gettempdir(), f"ledgerapi_test_{os.getpid()}.db")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_PATH}"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("STORE_RETRY_BACKOFF_SECONDS", "0.01")

import pytest
from fastapi.testclient import TestClient

from ledgerapi.core.security import create_access_token
from ledgerapi.database.connection import SessionLocal, engine
from ledgerapi.models import Base, User


@pytest.fixture(autouse=True)
def reset_schema():
    """테스트마다 빈 스키마"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def session_factory():
    return SessionLocal


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(session_factory):
    """사용자 생성 헬퍼 - 생성된 사용자 ID 반환"""

    def _make_user(is_admin: bool = False, weekly_points: int = 0) -> str:
        user_id = str(uuid.uuid4())
        session = session_factory()
        try:
            session.add(
                User(
                    id=user_id,
                    email=f"{user_id[:8]}@example.com",
                    display_name=f"user-{user_id[:8]}",
                    is_admin=is_admin,
                    weekly_points=weekly_points,
                )
            )
            session.commit()
        finally:
            session.close()
        return user_id

    return _make_user


@pytest.fixture
def user_id(make_user):
    return make_user()


@pytest.fixture
def app():
    from ledgerapi.main import app as fastapi_app

    fastapi_app.dependency_overrides.clear()
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    # lifespan에서 자격증명 풀 초기화
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    def _headers(user_id: str, is_admin: bool = False) -> dict:
        token = create_access_token(user_id, is_admin=is_admin)
        return {"Authorization": f"Bearer {token}"}

    return _headers


def pytest_sessionfinish(session, exitstatus):
    engine.dispose()
    if os.path.exists(_DB_PATH):
        os.remove(_DB_PATH)
