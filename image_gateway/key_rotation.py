from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

import httpx

from image_gateway.errors import AllKeysFailedError
from image_gateway.registry import ProviderConfig

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

ERROR_BODY_PREVIEW_CHARS = 200

RequestBuilder = Callable[[str], httpx.Request]


@dataclass(slots=True, frozen=True)
class AttemptOutcome(Generic[T]):
    value: T | None = None
    failure: str | None = None

    @property
    def accepted(self) -> bool:
        return self.failure is None

    @classmethod
    def accept(cls, value: T) -> AttemptOutcome[T]:
        return cls(value=value)

    @classmethod
    def reject(cls, failure: str) -> AttemptOutcome[T]:
        return cls(failure=failure)


ResponseEvaluator = Callable[[httpx.Response], Awaitable[AttemptOutcome[T]]]


def mask_key(api_key: str) -> str:
    return f"...{api_key[-4:]}"


def bearer_json_request(
    client: httpx.AsyncClient, url: str, payload: dict[str, Any]
) -> RequestBuilder:
    def build(api_key: str) -> httpx.Request:
        return client.build_request(
            method="POST",
            url=url,
            json=payload,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    return build


async def images_url_protocol(response: httpx.Response) -> AttemptOutcome[str]:
    """Aggregator responses must carry ``images[0].url``."""
    try:
        data = response.json()
    except ValueError:
        return AttemptOutcome.reject(
            f"Image API returned a non-JSON body: {response.text[:ERROR_BODY_PREVIEW_CHARS]}"
        )
    images = data.get("images") if isinstance(data, dict) else None
    if isinstance(images, list) and images and isinstance(images[0], dict):
        url = images[0].get("url")
        if isinstance(url, str) and url.strip():
            return AttemptOutcome.accept(url.strip())
    return AttemptOutcome.reject(
        "Image API response format abnormal, image URL not found. "
        f"Response content: {response.text[:ERROR_BODY_PREVIEW_CHARS]}"
    )


async def passthrough_protocol(
    response: httpx.Response,
) -> AttemptOutcome[httpx.Response]:
    return AttemptOutcome.accept(response)


class KeyRotationCaller:
    """Tries each provider credential in order until one call succeeds.

    Attempts are strictly sequential and start from the first key on every
    call. Only the most recent failure is reported once every key is spent.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def call(
        self,
        provider: ProviderConfig,
        build_request: RequestBuilder,
        evaluate: ResponseEvaluator[T],
        *,
        stream: bool = False,
        request_id: str | None = None,
        model: str | None = None,
    ) -> T:
        total = len(provider.api_keys)
        last_failure: str | None = None
        for index, api_key in enumerate(provider.api_keys):
            attempt_started = time.perf_counter()
            logger.info(
                "key_attempt request_id=%s provider=%s attempt=%d/%d key=%s",
                request_id,
                provider.name,
                index + 1,
                total,
                mask_key(api_key),
            )
            request = build_request(api_key)
            try:
                response = await self.client.send(request, stream=stream)
            except httpx.RequestError as exc:
                error_message = str(exc).strip() or repr(exc)
                last_failure = (
                    f"Network error calling provider {provider.name} "
                    f"(key index {index}, {exc.__class__.__name__}): {error_message}"
                )
                logger.warning(
                    "key_attempt_request_error request_id=%s provider=%s attempt=%d/%d error=%s",
                    request_id,
                    provider.name,
                    index + 1,
                    total,
                    last_failure,
                )
                continue

            latency_ms = (time.perf_counter() - attempt_started) * 1000.0
            if not response.is_success:
                body_text = await _read_error_body(response)
                last_failure = (
                    f"Provider {provider.name} responded {response.status_code} "
                    f"{response.reason_phrase} (key index {index}). Details: {body_text}"
                )
                logger.warning(
                    "key_attempt_failed request_id=%s provider=%s attempt=%d/%d status=%d latency_ms=%.2f error=%s",
                    request_id,
                    provider.name,
                    index + 1,
                    total,
                    response.status_code,
                    latency_ms,
                    last_failure,
                )
                continue

            outcome = await evaluate(response)
            if outcome.accepted:
                logger.info(
                    "key_attempt_succeeded request_id=%s provider=%s attempt=%d/%d status=%d latency_ms=%.2f",
                    request_id,
                    provider.name,
                    index + 1,
                    total,
                    response.status_code,
                    latency_ms,
                )
                return outcome.value  # type: ignore[return-value]

            await response.aclose()
            last_failure = f"{outcome.failure} (key index {index})"
            logger.warning(
                "key_attempt_rejected request_id=%s provider=%s attempt=%d/%d error=%s",
                request_id,
                provider.name,
                index + 1,
                total,
                last_failure,
            )

        logger.error(
            "key_rotation_exhausted request_id=%s provider=%s attempts=%d last_error=%s",
            request_id,
            provider.name,
            total,
            last_failure,
        )
        raise AllKeysFailedError(
            provider_name=provider.name,
            attempts=total,
            last_failure=last_failure,
            model=model,
        )


async def _read_error_body(response: httpx.Response) -> str:
    try:
        body = await response.aread()
    except httpx.HTTPError:
        return ""
    finally:
        await response.aclose()
    return body.decode("utf-8", errors="replace")[:ERROR_BODY_PREVIEW_CHARS]
