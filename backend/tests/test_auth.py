import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import dashboard_router

_TOKEN_ENV = ("AUTH_TOKEN", "READONLY_TOKEN", "MCP_API_KEY_ALLOW_INSECURE_LOCAL")


@pytest.fixture(autouse=True)
def _clean_auth_env(monkeypatch):
    for name in _TOKEN_ENV:
        monkeypatch.delenv(name, raising=False)


def _build_client(*, client=("testclient", 50000)) -> TestClient:
    app = FastAPI()
    app.include_router(dashboard_router)
    return TestClient(app, client=client)


def _session(client: TestClient, **kwargs):
    return client.get("/dashboard/api/session", **kwargs)


def test_rejects_when_no_token_is_configured() -> None:
    with _build_client() as client:
        response = _session(client)
    assert response.status_code == 401
    assert response.headers.get("www-authenticate") == "Bearer"
    detail = response.json()["detail"]
    assert detail == {"error": "dashboard_auth_failed", "reason": "api_key_not_configured"}


def test_insecure_local_override_grants_full_access_to_loopback(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(client=("127.0.0.1", 50000)) as client:
        response = _session(client)
    assert response.status_code == 200
    assert response.json() == {"access_level": "full", "can_write": True}


def test_insecure_local_override_rejects_remote_clients(monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(client=("203.0.113.10", 50000)) as client:
        response = _session(client)
    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "insecure_local_override_requires_loopback"


def test_insecure_local_override_is_ignored_once_a_token_exists(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_TOKEN", "full-secret")
    monkeypatch.setenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(client=("127.0.0.1", 50000)) as client:
        response = _session(client)
    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "invalid_or_missing_api_key"


@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"headers": {"Authorization": "Bearer full-secret"}},
        {"headers": {"X-MCP-API-Key": "full-secret"}},
        {"params": {"token": "full-secret"}},
        {"headers": {"Cookie": "switchyard_token=full-secret"}},
    ],
)
def test_full_token_is_accepted_from_every_carrier(monkeypatch, request_kwargs) -> None:
    monkeypatch.setenv("AUTH_TOKEN", "full-secret")
    with _build_client() as client:
        response = _session(client, **request_kwargs)
    assert response.status_code == 200
    assert response.json()["access_level"] == "full"


def test_wrong_token_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_TOKEN", "full-secret")
    with _build_client() as client:
        response = _session(client, headers={"Authorization": "Bearer guess"})
    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "invalid_or_missing_api_key"


def test_readonly_token_grants_read_access(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_TOKEN", "full-secret")
    monkeypatch.setenv("READONLY_TOKEN", "read-secret")
    with _build_client() as client:
        response = _session(client, headers={"X-MCP-API-Key": "read-secret"})
    assert response.status_code == 200
    assert response.json() == {"access_level": "readonly", "can_write": False}


def test_cloudflare_access_identity_is_read_only(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_TOKEN", "full-secret")
    headers = {"Cf-Access-Authenticated-User-Email": "me@example.com"}
    with _build_client() as client:
        response = _session(client, headers=headers)
    assert response.status_code == 200
    assert response.json()["access_level"] == "readonly"


def test_read_only_callers_cannot_edit_rules(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_TOKEN", "full-secret")
    monkeypatch.setenv("READONLY_TOKEN", "read-secret")
    headers = {"Authorization": "Bearer read-secret"}
    with _build_client() as client:
        response = client.put(
            "/dashboard/api/routing/rules",
            headers=headers,
            json={"context": "code", "source_id": "github", "reason": "repos"},
        )
    assert response.status_code == 403
    assert response.json()["detail"] == {
        "error": "read_only_access",
        "reason": "write_requires_full_access",
    }


def test_mcp_endpoint_rejects_unauthenticated_callers(monkeypatch) -> None:
    from main import app

    monkeypatch.setenv("AUTH_TOKEN", "full-secret")
    client = TestClient(app)
    response = client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
    assert response.status_code == 401
    assert response.json() == {"error": "mcp_auth_failed", "reason": "invalid_or_missing_api_key"}
