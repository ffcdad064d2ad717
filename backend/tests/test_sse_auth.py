from fastapi import FastAPI
from fastapi.testclient import TestClient

from run_sse import apply_mcp_api_key_middleware, create_sse_app


def _build_client(*, client=("testclient", 50000)) -> TestClient:
    app = FastAPI()

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    apply_mcp_api_key_middleware(app)
    return TestClient(app, client=client)


def test_sse_auth_rejects_remote_client_without_configured_key(monkeypatch) -> None:
    monkeypatch.delenv("VECTOR_MEMORY_API_KEY", raising=False)
    with _build_client(client=("203.0.113.10", 50000)) as client:
        response = client.get("/ping")
    assert response.status_code == 401
    payload = response.json()
    assert payload.get("error") == "mcp_sse_auth_failed"
    assert payload.get("reason") == "api_key_not_configured_remote_client"


def test_sse_auth_allows_loopback_without_configured_key(monkeypatch) -> None:
    monkeypatch.delenv("VECTOR_MEMORY_API_KEY", raising=False)
    with _build_client(client=("127.0.0.1", 50000)) as client:
        response = client.get("/ping")
    assert response.status_code == 200
    assert response.json().get("ok") is True


def test_sse_auth_rejects_when_api_key_missing(monkeypatch) -> None:
    monkeypatch.setenv("VECTOR_MEMORY_API_KEY", "sse-secret")
    with _build_client(client=("127.0.0.1", 50000)) as client:
        response = client.get("/ping")
    assert response.status_code == 401
    assert response.json().get("reason") == "invalid_or_missing_api_key"


def test_sse_auth_rejects_wrong_key(monkeypatch) -> None:
    monkeypatch.setenv("VECTOR_MEMORY_API_KEY", "sse-secret")
    with _build_client() as client:
        response = client.get("/ping", headers={"X-MCP-API-Key": "guess"})
    assert response.status_code == 401


def test_sse_auth_accepts_x_mcp_api_key_header(monkeypatch) -> None:
    monkeypatch.setenv("VECTOR_MEMORY_API_KEY", "sse-secret")
    with _build_client() as client:
        response = client.get("/ping", headers={"X-MCP-API-Key": "sse-secret"})
    assert response.status_code == 200
    assert response.json().get("ok") is True


def test_sse_auth_accepts_bearer_token(monkeypatch) -> None:
    monkeypatch.setenv("VECTOR_MEMORY_API_KEY", "sse-secret")
    with _build_client() as client:
        response = client.get("/ping", headers={"Authorization": "Bearer sse-secret"})
    assert response.status_code == 200


def test_create_sse_app_is_guarded(monkeypatch) -> None:
    monkeypatch.setenv("VECTOR_MEMORY_API_KEY", "sse-secret")
    client = TestClient(create_sse_app())
    response = client.get("/sse")
    assert response.status_code == 401
