from __future__ import annotations

from pathlib import Path

import pytest

from patchstream.models.registry import LookupMode, TierPreference
from patchstream.prompts import SYSTEM_PROMPT
from patchstream.settings import (
    DEFAULT_API_URL,
    ProviderFamily,
    QualityMode,
    SettingsError,
    copy_config_template,
    load_config,
    resolve_settings,
    write_config,
)


def test_defaults_without_config() -> None:
    settings = resolve_settings({}, environ={})

    assert settings.api_url == DEFAULT_API_URL
    assert settings.model == "local-model"
    assert settings.quality_mode is QualityMode.ADAPTIVE_BEST_OF_2
    assert settings.auto_repair_attempts == 3
    assert settings.stream_parse_cadence_ms == 120
    assert settings.system_prompt == SYSTEM_PROMPT


def test_template_resolves_to_defaults() -> None:
    settings = resolve_settings(copy_config_template(), environ={})

    assert settings.lookup_mode is LookupMode.HF_CACHE
    assert settings.hint_cache_path == ".patchstream/model-hints.json"
    assert settings.system_prompt == SYSTEM_PROMPT


def test_sections_are_coerced() -> None:
    config = {
        "model": {"name": "Qwen2.5-Coder-7B", "timeout": "30", "tier_preference": "SMALL", "lookup_ttl_hours": 0},
        "sampling": {"override_enabled": "yes", "profile": "strict-deterministic"},
        "run": {"quality_mode": "single-pass", "auto_repair_attempts": -4, "live_workspace_apply": 1},
    }

    settings = resolve_settings(config, environ={})

    assert settings.model == "Qwen2.5-Coder-7B"
    assert settings.timeout == 30.0
    assert settings.tier_preference is TierPreference.SMALL
    assert settings.lookup_ttl_hours == 1.0
    assert settings.sampling_override_enabled is True
    assert settings.quality_mode is QualityMode.SINGLE_PASS
    assert settings.auto_repair_attempts == 0
    assert settings.live_workspace_apply is True
    assert settings.effective_provider_family() is ProviderFamily.QWEN


def test_environment_overrides_config() -> None:
    environ = {
        "PATCHSTREAM_MODEL": "llama-3.1-8b",
        "PATCHSTREAM_QUALITY_MODE": "always-best-of-2",
        "PATCHSTREAM_AUTO_REPAIR_ATTEMPTS": "1",
        "PATCHSTREAM_TIMEOUT": "not-a-number",
    }

    settings = resolve_settings({"model": {"name": "other", "timeout": 15}}, environ=environ)

    assert settings.model == "llama-3.1-8b"
    assert settings.quality_mode is QualityMode.ALWAYS_BEST_OF_2
    assert settings.auto_repair_attempts == 1
    assert settings.timeout == 15.0
    assert settings.effective_provider_family() is ProviderFamily.GENERIC


def test_invalid_enum_is_rejected() -> None:
    with pytest.raises(SettingsError, match="run.quality_mode"):
        resolve_settings({"run": {"quality_mode": "best-of-9"}}, environ={})


def test_config_file_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "patchstream.yaml"
    data = copy_config_template()
    data["run"]["quality_mode"] = "single-pass"

    write_config(path, data)

    assert load_config(path) == data
    assert load_config(tmp_path / "absent.yaml") == {}


def test_non_mapping_config_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "patchstream.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(SettingsError):
        load_config(path)
