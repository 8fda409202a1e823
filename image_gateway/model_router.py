from __future__ import annotations

import logging
from dataclasses import dataclass

from image_gateway.errors import (
    ModelConfigurationConflictError,
    ModelConflictError,
    ServerError,
    UnsupportedModelError,
)
from image_gateway.registry import ProviderConfig, ProviderKind, ProviderRegistry

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True, frozen=True)
class RouteTarget:
    model: str
    provider: ProviderConfig

    @property
    def kind(self) -> ProviderKind:
        return self.provider.kind


def _dedupe_preserving_order(values: list[str]) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        output.append(value)
    return output


class ModelRouter:
    def __init__(self, registry: ProviderRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def available_models(self) -> list[str]:
        """Registered names that can actually be routed."""
        return _dedupe_preserving_order(
            [entry.name for entry in self._registry.model_index if not entry.is_conflicted]
        )

    def resolve(self, model_name: str) -> RouteTarget:
        requested = model_name.strip()
        entry = next(
            (item for item in self._registry.model_index if item.name == requested),
            None,
        )
        if entry is None:
            available = self.available_models()
            logger.warning(
                "route_unsupported_model requested_model=%s available_models=%d",
                requested,
                len(available),
            )
            raise UnsupportedModelError(requested, available)

        if entry.is_conflicted:
            detail = entry.conflict_detail or f'Model "{requested}" is ambiguous.'
            logger.error(
                "route_model_conflict requested_model=%s detail=%s", requested, detail
            )
            raise ModelConflictError(requested, detail)

        provider = self._registry.provider(entry.owner_provider_name)
        if provider is None:
            raise ServerError(
                f"Provider {entry.owner_provider_name} for model '{requested}' "
                "was not found in the registry.",
                code="provider_missing",
            )

        logger.info(
            "route_resolved requested_model=%s provider=%s kind=%s",
            requested,
            provider.name,
            provider.kind.value,
        )
        return RouteTarget(model=requested, provider=provider)

    def list_models(self) -> list[str]:
        if self._registry.has_blocking_conflict:
            detail = self._registry.blocking_conflict_detail or "unknown conflict"
            logger.error("models_blocked_by_conflict detail=%s", detail)
            raise ModelConfigurationConflictError(detail)
        return _dedupe_preserving_order(
            [entry.name for entry in self._registry.model_index]
        )
