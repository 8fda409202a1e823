from __future__ import annotations

import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable
from uuid import uuid4

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from image_gateway.auth import Authenticator
from image_gateway.errors import GatewayError, InvalidRequestError, ServerError
from image_gateway.key_rotation import KeyRotationCaller
from image_gateway.model_router import ModelRouter
from image_gateway.orchestrator import ImageGenerationOrchestrator
from image_gateway.prompt_reviser import PromptReviser
from image_gateway.registry import get_registry
from image_gateway.settings import Settings, get_settings

app = FastAPI(
    title="Image Prompt Gateway",
    description=(
        "OpenAI-compatible chat-completions API that rewrites prompts and "
        "generates images through configured providers."
    ),
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

PROTECTED_ROUTES = {
    ("POST", "/v1/chat/completions"),
    ("GET", "/v1/models"),
}

WELCOME_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Image Generation Service</title>
    <style>
        body { font-family: -apple-system, "Segoe UI", Roboto, Helvetica, Arial, sans-serif; display: flex; justify-content: center; align-items: center; min-height: 100vh; margin: 0; background-color: #f4f6f8; color: #333; }
        .container { padding: 30px; background-color: white; border-radius: 10px; box-shadow: 0 6px 12px rgba(0,0,0,0.1); max-width: 600px; text-align: center; }
        h1 { color: #007bff; }
        code { background-color: #f0f0f0; padding: 2px 4px; border-radius: 3px; }
    </style>
</head>
<body>
    <div class="container">
        <h1>Image Generation Service is running</h1>
        <p>Send chat requests to <code>POST /v1/chat/completions</code> and list models with <code>GET /v1/models</code>.</p>
        <p>Before starting, make sure the provider environment variables match your needs.</p>
    </div>
</body>
</html>
"""


def _build_http_client(settings: Settings) -> httpx.AsyncClient:
    timeout = max(0.1, float(settings.upstream_timeout_seconds))
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=timeout,
            connect=max(0.1, min(timeout, settings.upstream_connect_timeout_seconds)),
        ),
    )


def _error_response(error: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


def _request_id(request: Request) -> str:
    return (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )


def _build_models_response(model_names: list[str]) -> dict[str, Any]:
    created = int(time.time())
    data: list[dict[str, Any]] = []
    for model_id in model_names:
        data.append(
            {
                "id": model_id,
                "object": "model",
                "created": created,
                "owned_by": "image-gateway",
                "permission": [
                    {
                        "id": f"modelperm-{model_id}",
                        "object": "model_permission",
                        "created": created,
                        "allow_create_engine": False,
                        "allow_sampling": True,
                        "allow_logprobs": False,
                        "allow_search_indices": False,
                        "allow_view": True,
                        "allow_fine_tuning": False,
                        "organization": "*",
                        "group": None,
                        "is_blocking": False,
                    }
                ],
                "root": model_id,
                "parent": None,
            }
        )
    return {"object": "list", "data": data}


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if (request.method, request.url.path) not in PROTECTED_ROUTES:
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is None:
        authenticator = Authenticator(get_settings())
    auth_error = await authenticator.authenticate_request(request)
    if auth_error is not None:
        return auth_error
    return await call_next(request)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    registry = get_registry()
    client = _build_http_client(settings)
    router = ModelRouter(registry)
    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)
    app.state.registry = registry
    app.state.http_client = client
    app.state.model_router = router
    app.state.orchestrator = ImageGenerationOrchestrator(
        router=router,
        reviser=PromptReviser(settings=settings, client=client),
        caller=KeyRotationCaller(client),
    )
    logger.info(
        "startup complete providers=%d models=%d blocking_conflict=%s auth_configured=%s",
        len(registry.providers),
        len(registry.model_index),
        registry.has_blocking_conflict,
        settings.authorized_api_key_value is not None,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    client: httpx.AsyncClient | None = getattr(app.state, "http_client", None)
    if client is not None:
        await client.aclose()
    logger.info("shutdown complete")


@app.get("/", response_class=HTMLResponse)
async def index() -> HTMLResponse:
    return HTMLResponse(content=WELCOME_PAGE)


@app.get("/health")
@app.get("/v1/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    router: ModelRouter = app.state.model_router
    model_names = router.list_models()
    if not model_names:
        logger.warning("models_empty reason=no image generation models configured")
    return _build_models_response(model_names)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    request_id = _request_id(request)
    try:
        payload = await request.json()
    except ValueError as exc:
        raise InvalidRequestError(
            "Could not parse request body, please provide valid JSON",
            code="invalid_json",
        ) from exc

    orchestrator: ImageGenerationOrchestrator = app.state.orchestrator
    try:
        return await orchestrator.complete(
            payload,
            public_base_url=str(request.base_url),
            request_id=request_id,
        )
    except GatewayError:
        raise
    except Exception as exc:
        logger.exception("chat_completion_failed request_id=%s", request_id)
        raise ServerError(f"Error processing request: {exc}") from exc


@app.get("/image-proxy")
async def image_proxy(request: Request) -> Response:
    image_url = request.query_params.get("url")
    if not image_url:
        raise InvalidRequestError("Missing image URL parameter", code="missing_url")
    if not image_url.lower().startswith(("http://", "https://")):
        raise InvalidRequestError(
            "Image URL must use http or https", code="invalid_url"
        )

    client: httpx.AsyncClient = app.state.http_client
    logger.info("image_proxy_fetch url=%s", image_url)
    try:
        upstream = await client.send(
            client.build_request("GET", image_url),
            stream=True,
            follow_redirects=True,
        )
    except httpx.RequestError as exc:
        logger.warning(
            "image_proxy_request_error url=%s error_type=%s error=%s",
            image_url,
            exc.__class__.__name__,
            str(exc),
        )
        raise ServerError(
            f"Error proxying image: {exc}", code="image_fetch_failed"
        ) from exc

    if not upstream.is_success:
        body = await upstream.aread()
        await upstream.aclose()
        logger.warning(
            "image_proxy_upstream_error url=%s status=%d body=%r",
            image_url,
            upstream.status_code,
            body[:200],
        )
        raise ServerError(
            f"Failed to fetch original image: {upstream.status_code} {upstream.reason_phrase}",
            code="image_fetch_failed",
        )

    content_type = upstream.headers.get("content-type") or "image/jpeg"

    async def stream_generator() -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_bytes():
                yield chunk
        finally:
            await upstream.aclose()

    return StreamingResponse(
        content=stream_generator(),
        status_code=200,
        headers={"Content-Type": content_type, "Content-Disposition": "inline"},
    )


@app.exception_handler(GatewayError)
async def gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
    return _error_response(exc)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        error = InvalidRequestError(
            f"Path {request.url.path} not found", code="path_not_found"
        )
    elif exc.status_code == 405:
        error = InvalidRequestError(
            f"Method {request.method} not allowed for {request.url.path}",
            code="method_not_allowed",
        )
    else:
        error = InvalidRequestError(str(exc.detail), code="http_error")
    return JSONResponse(
        status_code=exc.status_code,
        content=error.to_payload(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def catastrophic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception path=%s error_type=%s",
        request.url.path,
        exc.__class__.__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "message": "Unexpected server error.",
                "type": "catastrophic_error",
                "code": "fatal_error",
            }
        },
    )


def run() -> None:
    import uvicorn
    from dotenv import load_dotenv

    load_dotenv()
    uvicorn.run("image_gateway.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
