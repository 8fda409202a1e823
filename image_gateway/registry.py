from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import lru_cache

from image_gateway.settings import split_csv

logger = logging.getLogger("uvicorn.error")

MAX_DIRECT_PROVIDERS = 10

AGGREGATOR_PROVIDER_NAME = "FLUX_GEN"
AGGREGATOR_MODEL_ENV = "FLUX_GEN_MODEL"
AGGREGATOR_API_BASE_ENV = "FLUX_GEN_API_BASE"
AGGREGATOR_API_KEY_ENV = "FLUX_GEN_API_KEY"


class ProviderKind(str, Enum):
    AGGREGATOR = "aggregator"
    DIRECT = "direct"


@dataclass(slots=True, frozen=True)
class ProviderConfig:
    name: str
    api_base: str
    api_keys: tuple[str, ...]
    models: tuple[str, ...]
    kind: ProviderKind
    direct_index: int | None = None

    @property
    def model_source(self) -> str:
        if self.kind == ProviderKind.AGGREGATOR:
            return AGGREGATOR_MODEL_ENV
        return f"IMAGE_GEN_MODEL_{self.direct_index}"


@dataclass(slots=True, frozen=True)
class ModelEntry:
    name: str
    owner_provider_name: str
    kind: ProviderKind
    source: str
    is_conflicted: bool = False
    conflict_detail: str | None = None


@dataclass(slots=True, frozen=True)
class ProviderRegistry:
    aggregator_provider: ProviderConfig | None = None
    direct_providers: tuple[ProviderConfig, ...] = ()
    model_index: tuple[ModelEntry, ...] = ()
    has_blocking_conflict: bool = False
    blocking_conflict_detail: str | None = None
    _providers_by_name: dict[str, ProviderConfig] = field(
        default_factory=dict, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        providers = list(self.direct_providers)
        if self.aggregator_provider is not None:
            providers.insert(0, self.aggregator_provider)
        self._providers_by_name.update(
            {provider.name: provider for provider in providers}
        )

    @property
    def providers(self) -> list[ProviderConfig]:
        return list(self._providers_by_name.values())

    def provider(self, name: str) -> ProviderConfig | None:
        return self._providers_by_name.get(name)

    def entries_for(self, model_name: str) -> list[ModelEntry]:
        return [entry for entry in self.model_index if entry.name == model_name]


def env_direct_api_base(index: int) -> str:
    return f"IMAGE_GEN_API_BASE_{index}"


def env_direct_model(index: int) -> str:
    return f"IMAGE_GEN_MODEL_{index}"


def env_direct_api_key(index: int) -> str:
    return f"IMAGE_GEN_API_KEY_{index}"


def _env_value(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    if value is None or not value.strip():
        return None
    return value


def _load_aggregator(environ: Mapping[str, str]) -> ProviderConfig | None:
    models_raw = _env_value(environ, AGGREGATOR_MODEL_ENV)
    api_base = _env_value(environ, AGGREGATOR_API_BASE_ENV)
    api_keys_raw = _env_value(environ, AGGREGATOR_API_KEY_ENV)

    if not (models_raw and api_base and api_keys_raw):
        if models_raw or api_base or api_keys_raw:
            logger.error(
                "registry_aggregator_incomplete required=%s,%s,%s provider=%s",
                AGGREGATOR_MODEL_ENV,
                AGGREGATOR_API_BASE_ENV,
                AGGREGATOR_API_KEY_ENV,
                AGGREGATOR_PROVIDER_NAME,
            )
        return None

    models = split_csv(models_raw)
    api_keys = split_csv(api_keys_raw)
    if not models or not api_keys:
        logger.warning(
            "registry_aggregator_skipped provider=%s models=%d keys=%d",
            AGGREGATOR_PROVIDER_NAME,
            len(models),
            len(api_keys),
        )
        return None

    logger.info(
        "registry_provider_loaded provider=%s kind=%s models=%d keys=%d",
        AGGREGATOR_PROVIDER_NAME,
        ProviderKind.AGGREGATOR.value,
        len(models),
        len(api_keys),
    )
    return ProviderConfig(
        name=AGGREGATOR_PROVIDER_NAME,
        api_base=api_base.strip(),
        api_keys=tuple(api_keys),
        models=tuple(models),
        kind=ProviderKind.AGGREGATOR,
    )


def _load_direct_providers(environ: Mapping[str, str]) -> list[ProviderConfig]:
    providers: list[ProviderConfig] = []
    for index in range(1, MAX_DIRECT_PROVIDERS + 1):
        api_base = _env_value(environ, env_direct_api_base(index))
        if api_base is None:
            # A missing slot hides every later slot.
            logger.info(
                "registry_direct_scan_stopped missing=%s loaded=%d",
                env_direct_api_base(index),
                len(providers),
            )
            break

        models_raw = _env_value(environ, env_direct_model(index))
        api_keys_raw = _env_value(environ, env_direct_api_key(index))
        if models_raw is None or api_keys_raw is None:
            logger.error(
                "registry_direct_incomplete slot=%d api_base=%s missing=%s",
                index,
                api_base.strip(),
                env_direct_model(index) if models_raw is None else env_direct_api_key(index),
            )
            continue

        models = split_csv(models_raw)
        api_keys = split_csv(api_keys_raw)
        if not models or not api_keys:
            logger.error(
                "registry_direct_empty_list slot=%d api_base=%s models=%d keys=%d",
                index,
                api_base.strip(),
                len(models),
                len(api_keys),
            )
            continue

        provider = ProviderConfig(
            name=f"IMAGE_GEN_{index}",
            api_base=api_base.strip(),
            api_keys=tuple(api_keys),
            models=tuple(models),
            kind=ProviderKind.DIRECT,
            direct_index=index,
        )
        logger.info(
            "registry_provider_loaded provider=%s kind=%s models=%d keys=%d",
            provider.name,
            provider.kind.value,
            len(models),
            len(api_keys),
        )
        providers.append(provider)
    return providers


def _mark_conflicts(
    entries: list[ModelEntry],
) -> tuple[list[ModelEntry], str | None]:
    groups: dict[str, list[int]] = {}
    for position, entry in enumerate(entries):
        groups.setdefault(entry.name, []).append(position)

    marked = list(entries)
    blocking_detail: str | None = None
    for name, positions in groups.items():
        if len(positions) < 2:
            continue
        sources = " and ".join(entries[position].source for position in positions)
        detail = f'Model "{name}" is defined multiple times in {sources}.'
        for position in positions:
            marked[position] = replace(
                entries[position], is_conflicted=True, conflict_detail=detail
            )
        if blocking_detail is None:
            blocking_detail = detail
        logger.error("registry_model_conflict model=%s detail=%s", name, detail)
    return marked, blocking_detail


def build_registry(environ: Mapping[str, str] | None = None) -> ProviderRegistry:
    """Parse provider definitions from an environment mapping.

    Never raises: incomplete providers are logged and dropped, so an empty
    registry is a valid result.
    """
    source = os.environ if environ is None else environ

    aggregator = _load_aggregator(source)
    direct_providers = _load_direct_providers(source)

    entries: list[ModelEntry] = []
    for provider in ([aggregator] if aggregator else []) + direct_providers:
        for model_name in provider.models:
            entries.append(
                ModelEntry(
                    name=model_name,
                    owner_provider_name=provider.name,
                    kind=provider.kind,
                    source=provider.model_source,
                )
            )

    entries, blocking_detail = _mark_conflicts(entries)

    if aggregator is None and not direct_providers:
        logger.warning(
            "registry_empty reason=no valid image generation providers configured"
        )

    registry = ProviderRegistry(
        aggregator_provider=aggregator,
        direct_providers=tuple(direct_providers),
        model_index=tuple(entries),
        has_blocking_conflict=blocking_detail is not None,
        blocking_conflict_detail=blocking_detail,
    )
    logger.info(
        "registry_built aggregator=%s direct_providers=%d models=%d blocking_conflict=%s",
        aggregator.name if aggregator else None,
        len(direct_providers),
        len(entries),
        registry.has_blocking_conflict,
    )
    return registry


@lru_cache
def get_registry() -> ProviderRegistry:
    return build_registry()
