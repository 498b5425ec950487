from __future__ import annotations

from typing import Any

import jwt
import pytest

from llm_key_proxy.gateway.auth import AuthConfigurationError, AuthGate
from tests.client_test_utils import TEST_JWT_SECRET, build_test_client, session_headers


def test_public_routes_need_no_credentials(monkeypatch: Any, tmp_path: Any) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        root = client.get("/")
        assert root.status_code == 200
        assert root.text == "LLM Proxy"
        assert client.get("/health").json() == {"status": "ok"}


def test_route_groups() -> None:
    assert AuthGate.route_group("/") == "public"
    assert AuthGate.route_group("/health") == "public"
    assert AuthGate.route_group("/keys") == "session"
    assert AuthGate.route_group("/keys/validate/sk-1") == "session"
    assert AuthGate.route_group("/analytics/abc") == "session"
    assert AuthGate.route_group("/router/status") == "session"
    assert AuthGate.route_group("/keysmith") == "api_key"
    assert AuthGate.route_group("/v1/chat/completions") == "api_key"


def test_admin_routes_reject_missing_token(monkeypatch: Any, tmp_path: Any) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        response = client.get("/keys")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert response.json()["error"]["type"] == "authentication_error"


def test_admin_routes_reject_token_signed_with_other_secret(
    monkeypatch: Any, tmp_path: Any
) -> None:
    forged = jwt.encode({"username": "mallory"}, "another-secret-of-32-bytes-or-more", algorithm="HS256")
    with build_test_client(monkeypatch, tmp_path) as client:
        response = client.get("/keys", headers={"Authorization": f"Bearer {forged}"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"


def test_admin_routes_accept_valid_session_token(monkeypatch: Any, tmp_path: Any) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        response = client.get("/keys", headers=session_headers())
        assert response.status_code == 200
        assert response.json() == {"success": True, "keys": []}


def test_expired_token_is_accepted_unless_expiration_is_verified(
    monkeypatch: Any, tmp_path: Any
) -> None:
    expired = jwt.encode({"username": "admin", "exp": 1}, TEST_JWT_SECRET, algorithm="HS256")
    headers = {"Authorization": f"Bearer {expired}"}

    with build_test_client(monkeypatch, tmp_path) as client:
        assert client.get("/keys", headers=headers).status_code == 200

    with build_test_client(monkeypatch, tmp_path, JWT_VERIFY_EXPIRATION="true") as client:
        assert client.get("/keys", headers=headers).status_code == 401


def test_session_token_is_not_an_api_key(monkeypatch: Any, tmp_path: Any) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        response = client.get("/v1/models", headers=session_headers())
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_api_key"


def test_api_key_is_not_a_session_token(monkeypatch: Any, tmp_path: Any) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        secret = client.post(
            "/keys", json={"ownerLabel": "alice"}, headers=session_headers()
        ).json()["key"]["secret"]
        response = client.get("/keys", headers={"Authorization": f"Bearer {secret}"})
        assert response.status_code == 401


def test_proxy_routes_reject_missing_and_unknown_keys(monkeypatch: Any, tmp_path: Any) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        missing = client.post("/v1/chat/completions", json={"model": "model-a"})
        assert missing.status_code == 401
        assert missing.headers["www-authenticate"] == "Bearer"

        unknown = client.post(
            "/v1/chat/completions",
            json={"model": "model-a"},
            headers={"Authorization": "Bearer sk-" + "0" * 64},
        )
        assert unknown.status_code == 401


def test_auth_can_be_disabled(monkeypatch: Any, tmp_path: Any) -> None:
    with build_test_client(
        monkeypatch,
        tmp_path,
        PROXY_AUTH_REQUIRED="false",
        SESSION_AUTH_REQUIRED="false",
        JWT_SECRET="",
    ) as client:
        assert client.get("/v1/models").status_code == 200
        assert client.get("/keys").status_code == 200


def test_startup_fails_when_session_auth_has_no_secret(
    monkeypatch: Any, tmp_path: Any
) -> None:
    with pytest.raises(AuthConfigurationError):
        with build_test_client(monkeypatch, tmp_path, JWT_SECRET=""):
            pass
