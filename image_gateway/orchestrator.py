from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator
from urllib.parse import quote

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse

from image_gateway.errors import InvalidRequestError, ServerError
from image_gateway.key_rotation import (
    KeyRotationCaller,
    bearer_json_request,
    images_url_protocol,
    passthrough_protocol,
)
from image_gateway.model_router import ModelRouter, RouteTarget
from image_gateway.prompt_reviser import Fatal, PromptReviser
from image_gateway.registry import ProviderKind

logger = logging.getLogger("uvicorn.error")

DEFAULT_IMAGE_SIZE = "1024x1024"
NUM_INFERENCE_STEPS = 50
ASPECT_RATIO_PATTERN = re.compile(r"(\d+:\d+)")
IMAGE_SIZES = {
    "1:1": "1024x1024",
    "1:2": "512x1024",
    "3:2": "768x512",
    "3:4": "768x1024",
    "16:9": "1024x576",
    "9:16": "576x1024",
}


@dataclass(slots=True, frozen=True)
class ChatImageRequest:
    model: str
    prompt: str
    image_size: str
    ratio: str | None = None


def image_size_for_ratio(ratio: str) -> str:
    return IMAGE_SIZES.get(ratio, DEFAULT_IMAGE_SIZE)


def extract_prompt_and_size(text: str) -> tuple[str, str, str | None]:
    """Strip the first ``W:H`` token from ``text`` and map it to a pixel size."""
    match = ASPECT_RATIO_PATTERN.search(text)
    if match is None:
        return text, DEFAULT_IMAGE_SIZE, None
    ratio = match.group(1)
    prompt = text.replace(ratio, "", 1).strip()
    return prompt, image_size_for_ratio(ratio), ratio


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks = [
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        ]
        return "\n".join(chunks)
    if content is None:
        return ""
    return str(content)


def parse_chat_request(payload: Any) -> ChatImageRequest:
    if not isinstance(payload, dict):
        raise InvalidRequestError(
            "Could not parse request body, please provide valid JSON",
            code="invalid_json",
        )
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise InvalidRequestError(
            "Request missing required messages field or format is incorrect",
            code="invalid_parameters",
        )
    model = payload.get("model")
    if not isinstance(model, str) or not model.strip():
        raise InvalidRequestError(
            "Request body must include a valid 'model' field to specify the image "
            "generation model.",
            code="missing_model_field",
        )

    last_message = messages[-1]
    content = last_message.get("content") if isinstance(last_message, dict) else None
    prompt, image_size, ratio = extract_prompt_and_size(_message_text(content))
    return ChatImageRequest(
        model=model.strip(),
        prompt=prompt,
        image_size=image_size,
        ratio=ratio,
    )


def build_chat_completion(
    *, model: str, user_prompt: str, content: str
) -> dict[str, Any]:
    now = time.time()
    prompt_tokens = len(user_prompt)
    completion_tokens = len(content)
    return {
        "id": f"imggen-{int(now * 1000)}",
        "object": "chat.completion",
        "created": int(now),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        # Character counts, not real tokenization.
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def proxied_image_url(public_base_url: str, image_url: str) -> str:
    return f"{public_base_url.rstrip('/')}/image-proxy?url={quote(image_url, safe='')}"


class ImageGenerationOrchestrator:
    def __init__(
        self,
        *,
        router: ModelRouter,
        reviser: PromptReviser,
        caller: KeyRotationCaller,
    ) -> None:
        self._router = router
        self._reviser = reviser
        self._caller = caller

    async def complete(
        self,
        payload: Any,
        *,
        public_base_url: str,
        request_id: str | None = None,
    ) -> Response:
        chat_request = parse_chat_request(payload)
        if chat_request.ratio is not None:
            logger.info(
                "image_size_extracted request_id=%s ratio=%s image_size=%s",
                request_id,
                chat_request.ratio,
                chat_request.image_size,
            )

        target = self._router.resolve(chat_request.model)

        result = await self._reviser.revise(chat_request.prompt, request_id=request_id)
        if isinstance(result, Fatal):
            raise result.error
        revised_prompt = result.prompt
        if not revised_prompt.strip():
            raise ServerError(
                "Prompt is empty after optimization, cannot generate image.",
                code="prompt_optimization_failed",
            )
        logger.info(
            "dispatch request_id=%s model=%s provider=%s kind=%s revision=%s",
            request_id,
            target.model,
            target.provider.name,
            target.kind.value,
            type(result).__name__.lower(),
        )

        if target.kind == ProviderKind.AGGREGATOR:
            content = await self._generate_via_aggregator(
                target=target,
                prompt=revised_prompt,
                image_size=chat_request.image_size,
                public_base_url=public_base_url,
                request_id=request_id,
            )
            return JSONResponse(
                content=build_chat_completion(
                    model=target.model,
                    user_prompt=chat_request.prompt,
                    content=content,
                )
            )
        if target.kind == ProviderKind.DIRECT:
            return await self._generate_via_direct(
                target=target,
                prompt=revised_prompt,
                request_id=request_id,
            )
        raise ServerError(
            f"Unknown provider kind for model '{target.model}'.",
            code="unknown_provider_kind",
        )

    async def _generate_via_aggregator(
        self,
        *,
        target: RouteTarget,
        prompt: str,
        image_size: str,
        public_base_url: str,
        request_id: str | None,
    ) -> str:
        provider = target.provider
        build_request = bearer_json_request(
            self._caller.client,
            provider.api_base,
            {
                "prompt": prompt,
                "image_size": image_size,
                "num_inference_steps": NUM_INFERENCE_STEPS,
                "model": target.model,
            },
        )
        image_url = await self._caller.call(
            provider,
            build_request,
            images_url_protocol,
            request_id=request_id,
            model=target.model,
        )
        logger.info(
            "aggregator_image_ready request_id=%s provider=%s model=%s",
            request_id,
            provider.name,
            target.model,
        )
        link = proxied_image_url(public_base_url, image_url)
        return f"![Image]({link})\n\nOptimized prompt: {prompt}"

    async def _generate_via_direct(
        self,
        *,
        target: RouteTarget,
        prompt: str,
        request_id: str | None,
    ) -> Response:
        provider = target.provider
        build_request = bearer_json_request(
            self._caller.client,
            provider.api_base,
            {
                "model": target.model,
                "messages": [{"role": "user", "content": prompt}],
                "stream": False,
            },
        )
        upstream: httpx.Response = await self._caller.call(
            provider,
            build_request,
            passthrough_protocol,
            stream=True,
            request_id=request_id,
            model=target.model,
        )
        headers: dict[str, str] = {}
        content_type = upstream.headers.get("content-type")
        if content_type:
            headers["Content-Type"] = content_type

        async def stream_generator() -> AsyncIterator[bytes]:
            try:
                async for chunk in upstream.aiter_bytes():
                    yield chunk
            finally:
                await upstream.aclose()

        return StreamingResponse(
            content=stream_generator(),
            status_code=upstream.status_code,
            headers=headers,
        )
