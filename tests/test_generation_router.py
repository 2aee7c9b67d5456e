import httpx
import pytest

from ledgerapi.config import settings
from ledgerapi.deps import get_ai_client
from ledgerapi.models import LedgerKind
from ledgerapi.schemas.credential import CredentialCreate
from ledgerapi.services.ai_client import GenerativeAIClient
from ledgerapi.services.ledger_service import BalanceLedger

IMAGE_RESPONSE = {
    "candidates": [
        {"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "iVBORw0KGgo="}}]}}
    ]
}


@pytest.fixture
def funded_user(db, user_id):
    BalanceLedger(db).apply_delta(user_id, 20, LedgerKind.TOPUP, "top-up")
    return user_id


@pytest.fixture
def with_credential(app, client):
    app.container.services.credential_pool().add_credential(
        CredentialCreate(name="main", secret_ref="sk-router-test-0001")
    )


@pytest.fixture
def use_ai_responses(app):
    def _use(handler):
        app.dependency_overrides[get_ai_client] = lambda: GenerativeAIClient(
            settings, transport=httpx.MockTransport(handler)
        )

    return _use


def test_quote(client, auth_headers, user_id):
    response = client.post(
        "/api/v1/generations/cost",
        json={"prompt": "x", "model": settings.PRO_MODEL_NAME, "image_size": "4K", "use_upscaler": True},
        headers=auth_headers(user_id),
    )

    assert response.status_code == 200
    assert response.json()["cost"] == 21
    assert response.json()["breakdown"] == {"base": 20, "upscaler": 1}


def test_generate_success(client, auth_headers, funded_user, with_credential, use_ai_responses):
    use_ai_responses(lambda request: httpx.Response(200, json=IMAGE_RESPONSE))

    response = client.post(
        "/api/v1/generations",
        json={"prompt": "a fox", "model": settings.PRO_MODEL_NAME, "image_size": "2K", "job_id": "job-r1"},
        headers=auth_headers(funded_user),
    )

    assert response.status_code == 200
    assert response.json() == {
        "job_id": "job-r1",
        "cost": 15,
        "new_balance": 5,
        "mime_type": "image/png",
        "image_base64": "iVBORw0KGgo=",
    }


def test_generate_failure_is_refunded(client, auth_headers, db, funded_user, with_credential, use_ai_responses):
    use_ai_responses(lambda request: httpx.Response(503, json={"error": {"message": "Overloaded"}}))

    response = client.post(
        "/api/v1/generations",
        json={"prompt": "a fox", "model": settings.FLASH_MODEL_NAME},
        headers=auth_headers(funded_user),
    )

    assert response.status_code == 502
    body = response.json()
    assert body["error"]["code"] == "EXTERNAL_001"
    assert body["error"]["details"]["cause"] == "transient"
    assert BalanceLedger(db).get_balance(funded_user).balance == 20


def test_generate_with_insufficient_balance(client, auth_headers, user_id, with_credential, use_ai_responses):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=IMAGE_RESPONSE)

    use_ai_responses(handler)

    response = client.post(
        "/api/v1/generations",
        json={"prompt": "a fox", "model": settings.FLASH_MODEL_NAME},
        headers=auth_headers(user_id),
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "BALANCE_001"
    assert calls == []


def test_generate_without_credentials(client, auth_headers, db, funded_user):
    response = client.post(
        "/api/v1/generations",
        json={"prompt": "a fox", "model": settings.FLASH_MODEL_NAME},
        headers=auth_headers(funded_user),
    )

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "CREDENTIAL_001"
    assert BalanceLedger(db).get_balance(funded_user).balance == 20
