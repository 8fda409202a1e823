from __future__ import annotations

import logging
from typing import Any

from image_gateway.registry import (
    MAX_DIRECT_PROVIDERS,
    ProviderKind,
    build_registry,
    get_registry,
)
from tests.client_test_utils import set_default_test_env


def _direct(index: int, base: str, models: str, keys: str) -> dict[str, str]:
    return {
        f"IMAGE_GEN_API_BASE_{index}": base,
        f"IMAGE_GEN_MODEL_{index}": models,
        f"IMAGE_GEN_API_KEY_{index}": keys,
    }


def test_aggregator_loaded_when_all_three_settings_present() -> None:
    registry = build_registry(
        {
            "FLUX_GEN_MODEL": " flux-dev , flux-schnell ,",
            "FLUX_GEN_API_BASE": " https://flux.example/v1/images ",
            "FLUX_GEN_API_KEY": "k1, ,k2",
        }
    )

    provider = registry.aggregator_provider
    assert provider is not None
    assert provider.name == "FLUX_GEN"
    assert provider.kind == ProviderKind.AGGREGATOR
    assert provider.api_base == "https://flux.example/v1/images"
    assert provider.api_keys == ("k1", "k2")
    assert provider.models == ("flux-dev", "flux-schnell")
    assert provider.direct_index is None
    assert [entry.name for entry in registry.model_index] == ["flux-dev", "flux-schnell"]


def test_aggregator_skipped_unless_all_three_settings_present(caplog: Any) -> None:
    partials = [
        {"FLUX_GEN_MODEL": "flux-dev"},
        {"FLUX_GEN_API_BASE": "https://flux.example"},
        {"FLUX_GEN_API_KEY": "k1"},
        {"FLUX_GEN_MODEL": "flux-dev", "FLUX_GEN_API_BASE": "https://flux.example"},
        {"FLUX_GEN_MODEL": "flux-dev", "FLUX_GEN_API_KEY": "k1"},
        {"FLUX_GEN_API_BASE": "https://flux.example", "FLUX_GEN_API_KEY": "k1"},
    ]
    for environ in partials:
        with caplog.at_level(logging.ERROR):
            registry = build_registry(environ)
        assert registry.aggregator_provider is None
        assert registry.model_index == ()
    assert "registry_aggregator_incomplete" in caplog.text


def test_aggregator_with_empty_lists_is_not_registered() -> None:
    registry = build_registry(
        {
            "FLUX_GEN_MODEL": " , ",
            "FLUX_GEN_API_BASE": "https://flux.example",
            "FLUX_GEN_API_KEY": "k1",
        }
    )
    assert registry.aggregator_provider is None
    assert registry.providers == []


def test_direct_scanning_stops_at_first_missing_base_url() -> None:
    environ = {
        **_direct(1, "https://one.example", "m1", "a"),
        **_direct(3, "https://three.example", "m3", "c"),
    }
    registry = build_registry(environ)

    assert [provider.name for provider in registry.direct_providers] == ["IMAGE_GEN_1"]
    assert registry.provider("IMAGE_GEN_3") is None
    assert [entry.name for entry in registry.model_index] == ["m1"]


def test_direct_slot_missing_models_or_keys_is_skipped_but_scanning_continues(
    caplog: Any,
) -> None:
    environ = {
        **_direct(1, "https://one.example", "m1", "a"),
        "IMAGE_GEN_API_BASE_2": "https://two.example",
        "IMAGE_GEN_MODEL_2": "m2",
        **_direct(3, "https://three.example", " , ", "c"),
        **_direct(4, "https://four.example", "m4", "d1,d2"),
    }
    with caplog.at_level(logging.ERROR):
        registry = build_registry(environ)

    assert [provider.direct_index for provider in registry.direct_providers] == [1, 4]
    provider = registry.provider("IMAGE_GEN_4")
    assert provider is not None
    assert provider.kind == ProviderKind.DIRECT
    assert provider.api_keys == ("d1", "d2")
    assert "registry_direct_incomplete slot=2" in caplog.text
    assert "registry_direct_empty_list slot=3" in caplog.text


def test_direct_scanning_is_bounded() -> None:
    environ: dict[str, str] = {}
    for index in range(1, MAX_DIRECT_PROVIDERS + 2):
        environ.update(_direct(index, f"https://p{index}.example", f"m{index}", "k"))
    registry = build_registry(environ)

    assert len(registry.direct_providers) == MAX_DIRECT_PROVIDERS
    assert registry.provider(f"IMAGE_GEN_{MAX_DIRECT_PROVIDERS + 1}") is None


def test_duplicate_model_marks_every_entry_conflicted() -> None:
    environ = {
        "FLUX_GEN_MODEL": "shared,flux-only",
        "FLUX_GEN_API_BASE": "https://flux.example",
        "FLUX_GEN_API_KEY": "k1",
        **_direct(1, "https://one.example", "shared,direct-only", "a"),
        **_direct(2, "https://two.example", "other,direct-only", "b"),
    }
    registry = build_registry(environ)

    shared = registry.entries_for("shared")
    assert len(shared) == 2
    assert all(entry.is_conflicted for entry in shared)
    assert shared[0].conflict_detail == (
        'Model "shared" is defined multiple times in FLUX_GEN_MODEL and IMAGE_GEN_MODEL_1.'
    )
    assert all(entry.is_conflicted for entry in registry.entries_for("direct-only"))
    assert not registry.entries_for("flux-only")[0].is_conflicted
    assert not registry.entries_for("other")[0].is_conflicted

    assert registry.has_blocking_conflict is True
    assert registry.blocking_conflict_detail == shared[0].conflict_detail


def test_clean_registry_has_no_blocking_conflict() -> None:
    registry = build_registry(_direct(1, "https://one.example", "m1,m2", "a"))
    assert registry.has_blocking_conflict is False
    assert registry.blocking_conflict_detail is None


def test_empty_environment_builds_empty_registry(caplog: Any) -> None:
    with caplog.at_level(logging.WARNING):
        registry = build_registry({})
    assert registry.aggregator_provider is None
    assert registry.direct_providers == ()
    assert registry.model_index == ()
    assert "registry_empty" in caplog.text


def test_get_registry_builds_once_from_process_environment(monkeypatch: Any) -> None:
    set_default_test_env(monkeypatch)
    monkeypatch.setenv("IMAGE_GEN_API_BASE_1", "https://one.example")
    monkeypatch.setenv("IMAGE_GEN_MODEL_1", "m1")
    monkeypatch.setenv("IMAGE_GEN_API_KEY_1", "a")
    get_registry.cache_clear()
    try:
        first = get_registry()
        monkeypatch.setenv("IMAGE_GEN_MODEL_1", "changed")
        second = get_registry()
        assert second is first
        assert [entry.name for entry in second.model_index] == ["m1"]
    finally:
        get_registry.cache_clear()
