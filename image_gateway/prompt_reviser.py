from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

import httpx

from image_gateway.errors import ConfigurationError, GatewayError
from image_gateway.prompts import (
    PLAIN_SYSTEM_PROMPT,
    REASONING_SYSTEM_PROMPT,
    build_user_message,
)
from image_gateway.settings import Settings

logger = logging.getLogger("uvicorn.error")

MAX_PROMPT_WORDS = 50
THINK_START_TAG = "<think>"
THINK_END_TAG = "</think>"


@dataclass(slots=True, frozen=True)
class Revised:
    prompt: str
    thinking: str | None = None


@dataclass(slots=True, frozen=True)
class Recovered:
    """Rewriting failed; ``prompt`` is the caller's original text."""

    prompt: str
    reason: str


@dataclass(slots=True, frozen=True)
class Fatal:
    error: GatewayError


RevisionResult = Union[Revised, Recovered, Fatal]


@dataclass(slots=True, frozen=True)
class RevisionMode:
    model: str
    system_prompt: str
    reasoning: bool


def select_revision_mode(settings: Settings) -> RevisionMode:
    plain_model = settings.openai_model_value
    reasoning_model = settings.openai_model_reasoning_value
    if plain_model and reasoning_model:
        raise ConfigurationError(
            "Prompt optimization configuration error: OPENAI_MODEL and "
            "OPENAI_MODEL_REASONING cannot be configured simultaneously. "
            "Please choose only one.",
            code="prompt_model_conflict",
        )
    if reasoning_model:
        return RevisionMode(
            model=reasoning_model,
            system_prompt=REASONING_SYSTEM_PROMPT,
            reasoning=True,
        )
    if plain_model:
        return RevisionMode(
            model=plain_model,
            system_prompt=PLAIN_SYSTEM_PROMPT,
            reasoning=False,
        )
    raise ConfigurationError(
        "Prompt optimization configuration error: Either OPENAI_MODEL or "
        "OPENAI_MODEL_REASONING must be configured.",
        code="prompt_model_missing",
    )


def split_reasoning_output(raw_output: str) -> tuple[str, str | None]:
    """Return ``(candidate, thinking)`` for reasoning-model output.

    Without a well-formed ``<think>...</think>`` span the whole output is the
    candidate.
    """
    start = raw_output.find(THINK_START_TAG)
    end = raw_output.find(THINK_END_TAG, start) if start != -1 else -1
    if start == -1 or end == -1 or end <= start:
        return raw_output.strip(), None
    thinking = raw_output[start + len(THINK_START_TAG) : end].strip()
    candidate = raw_output[end + len(THINK_END_TAG) :].strip()
    return candidate, thinking


def limit_words(text: str, max_words: int = MAX_PROMPT_WORDS) -> str:
    words = text.split()
    if len(words) > max_words:
        return " ".join(words[:max_words])
    return text


class PromptReviser:
    def __init__(self, *, settings: Settings, client: httpx.AsyncClient) -> None:
        self._settings = settings
        self.client = client

    def _endpoint(self) -> tuple[str, str]:
        api_key = (self._settings.openai_api_key or "").strip()
        if not api_key:
            raise ConfigurationError(
                "Prompt optimization configuration error: Environment variable "
                "OPENAI_API_KEY not set or empty.",
                code="prompt_api_key_missing",
            )
        api_base = (self._settings.openai_api_base or "").strip()
        if not api_base:
            raise ConfigurationError(
                "Prompt optimization configuration error: OPENAI_API_BASE not set "
                "or empty. Set it to the API's base URL (e.g. https://api.openai.com/v1).",
                code="prompt_api_base_missing",
            )
        return f"{api_base.rstrip('/')}/chat/completions", api_key

    async def revise(self, user_text: str, *, request_id: str | None = None) -> RevisionResult:
        try:
            mode = select_revision_mode(self._settings)
            url, api_key = self._endpoint()
        except ConfigurationError as exc:
            logger.error("prompt_revision_config_error request_id=%s error=%s", request_id, exc)
            return Fatal(exc)

        logger.info(
            "prompt_revision_start request_id=%s model=%s reasoning=%s input=%r",
            request_id,
            mode.model,
            mode.reasoning,
            user_text,
        )
        raw_output = await self._request_completion(
            url=url,
            api_key=api_key,
            mode=mode,
            user_text=user_text,
            request_id=request_id,
        )
        if isinstance(raw_output, Recovered):
            return raw_output

        thinking: str | None = None
        if mode.reasoning:
            candidate, thinking = split_reasoning_output(raw_output)
            if thinking is None:
                logger.warning(
                    "prompt_revision_think_missing request_id=%s model=%s",
                    request_id,
                    mode.model,
                )
            else:
                logger.info(
                    "prompt_revision_thinking request_id=%s thinking=%r",
                    request_id,
                    thinking,
                )
        else:
            candidate = raw_output.strip()

        if not candidate.split():
            logger.warning("prompt_revision_empty request_id=%s", request_id)
            return Recovered(user_text, "empty prompt after processing")

        candidate = limit_words(candidate)
        if "," not in candidate:
            logger.warning(
                "prompt_revision_format_warning request_id=%s reason=missing commas prompt=%r",
                request_id,
                candidate,
            )
        logger.info("prompt_revision_complete request_id=%s prompt=%r", request_id, candidate)
        return Revised(candidate, thinking)

    async def _request_completion(
        self,
        *,
        url: str,
        api_key: str,
        mode: RevisionMode,
        user_text: str,
        request_id: str | None,
    ) -> str | Recovered:
        payload = {
            "model": mode.model,
            "messages": [
                {"role": "system", "content": mode.system_prompt},
                {"role": "user", "content": build_user_message(user_text)},
            ],
        }
        try:
            response = await self.client.post(
                url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.RequestError as exc:
            logger.warning(
                "prompt_revision_request_error request_id=%s url=%s error_type=%s error=%s",
                request_id,
                url,
                exc.__class__.__name__,
                str(exc),
            )
            return Recovered(user_text, f"request error: {exc.__class__.__name__}")

        if not response.is_success:
            logger.warning(
                "prompt_revision_upstream_error request_id=%s url=%s model=%s status=%d body=%r",
                request_id,
                url,
                mode.model,
                response.status_code,
                response.text[:500],
            )
            return Recovered(user_text, f"upstream status {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            logger.warning("prompt_revision_invalid_json request_id=%s", request_id)
            return Recovered(user_text, "invalid JSON body")

        content = _extract_message_content(data)
        if content is None:
            logger.warning("prompt_revision_unexpected_shape request_id=%s", request_id)
            return Recovered(user_text, "missing choices[0].message.content")
        logger.info("prompt_revision_raw_output request_id=%s output=%r", request_id, content)
        return content


def _extract_message_content(data: object) -> str | None:
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, str) or not content:
        return None
    return content
