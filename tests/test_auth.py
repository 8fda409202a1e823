from __future__ import annotations

from typing import Any

from image_gateway.auth import Authenticator
from image_gateway.settings import Settings
from tests.client_test_utils import TEST_API_KEY, auth_headers, build_test_client

DIRECT_ENV = {
    "IMAGE_GEN_API_BASE_1": "https://direct.example/v1/chat/completions",
    "IMAGE_GEN_MODEL_1": "dall-e-3",
    "IMAGE_GEN_API_KEY_1": "dk1",
}


def test_v1_models_rejects_without_token(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, **DIRECT_ENV) as client:
        response = client.get("/v1/models")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert response.json() == {
            "error": {
                "message": "Authentication failed, invalid API key",
                "type": "invalid_request_error",
                "code": "invalid_api_key",
            }
        }


def test_v1_models_rejects_wrong_token(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, **DIRECT_ENV) as client:
        response = client.get("/v1/models", headers=auth_headers("not-the-key"))
        assert response.status_code == 401


def test_v1_models_rejects_non_bearer_scheme(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, **DIRECT_ENV) as client:
        response = client.get(
            "/v1/models", headers={"Authorization": f"Basic {TEST_API_KEY}"}
        )
        assert response.status_code == 401


def test_v1_models_accepts_valid_api_key(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, **DIRECT_ENV) as client:
        response = client.get("/v1/models", headers=auth_headers())
        assert response.status_code == 200


def test_chat_completions_rejected_before_body_is_read(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, **DIRECT_ENV) as client:
        response = client.post(
            "/v1/chat/completions",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_api_key"


def test_unset_secret_rejects_every_protected_request(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, AUTHORIZED_API_KEY=None, **DIRECT_ENV) as client:
        assert client.get("/v1/models", headers=auth_headers()).status_code == 401
        assert client.post(
            "/v1/chat/completions", headers=auth_headers(), json={}
        ).status_code == 401


def test_public_routes_do_not_require_auth(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, **DIRECT_ENV) as client:
        assert client.get("/").status_code == 200
        assert client.get("/health").json() == {"status": "ok"}
        assert client.get("/v1/health").json() == {"status": "ok"}


def test_authenticator_scheme_is_case_insensitive() -> None:
    authenticator = Authenticator(Settings(_env_file=None, authorized_api_key=" secret "))
    assert authenticator.is_authorized("Bearer secret")
    assert authenticator.is_authorized("bearer secret")
    assert not authenticator.is_authorized("Bearer secret2")
    assert not authenticator.is_authorized("Bearer ")
    assert not authenticator.is_authorized("secret")
    assert not authenticator.is_authorized(None)
