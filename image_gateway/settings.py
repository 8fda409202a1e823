from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    authorized_api_key: str | None = None
    openai_api_base: str | None = None
    openai_api_key: str | None = None
    openai_model: str | None = None
    openai_model_reasoning: str | None = None
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 10.0

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def authorized_api_key_value(self) -> str | None:
        return _strip_or_none(self.authorized_api_key)

    @property
    def openai_model_value(self) -> str | None:
        return _strip_or_none(self.openai_model)

    @property
    def openai_model_reasoning_value(self) -> str | None:
        return _strip_or_none(self.openai_model_reasoning)


def split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


@lru_cache
def get_settings() -> Settings:
    return Settings()
