from __future__ import annotations

from typing import Any

import httpx

from tests.client_test_utils import build_test_client

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def test_image_proxy_streams_upstream_bytes(monkeypatch: Any) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, headers={"content-type": "image/png"}, content=PNG_BYTES)

    with build_test_client(monkeypatch, handler) as client:
        response = client.get(
            "/image-proxy", params={"url": "https://cdn.example/a.png?sig=1&x=2"}
        )

    assert response.status_code == 200
    assert response.content == PNG_BYTES
    assert response.headers["content-type"] == "image/png"
    assert response.headers["content-disposition"] == "inline"
    assert seen == ["https://cdn.example/a.png?sig=1&x=2"]


def test_image_proxy_defaults_content_type(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"raw")

    with build_test_client(monkeypatch, handler) as client:
        response = client.get("/image-proxy", params={"url": "https://cdn.example/a"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"


def test_image_proxy_follows_redirects(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/old.png":
            return httpx.Response(302, headers={"location": "https://cdn.example/new.png"})
        return httpx.Response(200, headers={"content-type": "image/png"}, content=PNG_BYTES)

    with build_test_client(monkeypatch, handler) as client:
        response = client.get("/image-proxy", params={"url": "https://cdn.example/old.png"})

    assert response.status_code == 200
    assert response.content == PNG_BYTES


def test_image_proxy_requires_url(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.get("/image-proxy")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "missing_url"


def test_image_proxy_rejects_non_http_url(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.get("/image-proxy", params={"url": "file:///etc/passwd"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_url"


def test_image_proxy_upstream_error_status(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="gone")

    with build_test_client(monkeypatch, handler) as client:
        response = client.get("/image-proxy", params={"url": "https://cdn.example/x.png"})

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "image_fetch_failed"
    assert "404" in error["message"]


def test_image_proxy_network_error(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.get("/image-proxy", params={"url": "https://cdn.example/x.png"})

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "image_fetch_failed"


def test_image_proxy_does_not_require_auth(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "image/png"}, content=PNG_BYTES)

    with build_test_client(monkeypatch, handler, AUTHORIZED_API_KEY=None) as client:
        response = client.get("/image-proxy", params={"url": "https://cdn.example/a.png"})

    assert response.status_code == 200
