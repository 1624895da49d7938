"""Configuration loading, coercion and environment overrides."""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

import yaml

from .models.registry import DEFAULT_LOOKUP_TTL_HOURS, LookupMode, TierPreference
from .prompts import SYSTEM_PROMPT

DEFAULT_CONFIG_NAME = "patchstream.yaml"
DEFAULT_API_URL = "http://localhost:1234/v1/chat/completions"
DEFAULT_MODEL = "local-model"
DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_AUTO_REPAIR_ATTEMPTS = 3
DEFAULT_STREAM_PARSE_CADENCE_MS = 120

E = TypeVar("E", bound=Enum)


class SettingsError(ValueError):
    """Raised when a configuration value is outside its allowed vocabulary."""


class QualityMode(str, Enum):
    """How many generation attempts a request may use before repair."""

    SINGLE_PASS = "single-pass"
    ADAPTIVE_BEST_OF_2 = "adaptive-best-of-2"
    ALWAYS_BEST_OF_2 = "always-best-of-2"


class ProviderFamily(str, Enum):
    AUTO = "auto"
    QWEN = "qwen"
    GENERIC = "generic"


class SamplingProfile(str, Enum):
    PROVIDER_DEFAULT = "provider-default"
    STRICT_DETERMINISTIC = "strict-deterministic"


DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "model": {
        "api_url": DEFAULT_API_URL,
        "name": DEFAULT_MODEL,
        "timeout": DEFAULT_TIMEOUT_SECONDS,
        "tier_preference": TierPreference.AUTO.value,
        "provider_family": ProviderFamily.AUTO.value,
        "lookup_mode": LookupMode.HF_CACHE.value,
        "lookup_ttl_hours": DEFAULT_LOOKUP_TTL_HOURS,
        "hint_cache_path": ".patchstream/model-hints.json",
        "system_prompt": "",
    },
    "sampling": {
        "override_enabled": False,
        "profile": SamplingProfile.PROVIDER_DEFAULT.value,
    },
    "run": {
        "quality_mode": QualityMode.ADAPTIVE_BEST_OF_2.value,
        "auto_repair_attempts": DEFAULT_AUTO_REPAIR_ATTEMPTS,
        "stream_parse_cadence_ms": DEFAULT_STREAM_PARSE_CADENCE_MS,
        "live_workspace_apply": False,
        "show_wire_debug": False,
    },
}


@dataclass(slots=True)
class GenerationSettings:
    """Resolved settings for model access, sampling and the run loop."""

    api_url: str = DEFAULT_API_URL
    model: str = DEFAULT_MODEL
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    tier_preference: TierPreference = TierPreference.AUTO
    provider_family: ProviderFamily = ProviderFamily.AUTO
    lookup_mode: LookupMode = LookupMode.HF_CACHE
    lookup_ttl_hours: float = DEFAULT_LOOKUP_TTL_HOURS
    hint_cache_path: Optional[str] = None
    system_prompt: str = SYSTEM_PROMPT
    sampling_override_enabled: bool = False
    sampling_profile: SamplingProfile = SamplingProfile.PROVIDER_DEFAULT
    quality_mode: QualityMode = QualityMode.ADAPTIVE_BEST_OF_2
    auto_repair_attempts: int = DEFAULT_AUTO_REPAIR_ATTEMPTS
    stream_parse_cadence_ms: int = DEFAULT_STREAM_PARSE_CADENCE_MS
    live_workspace_apply: bool = False
    show_wire_debug: bool = False

    def effective_provider_family(self) -> ProviderFamily:
        """Explicit family, or one detected from the model id."""
        if self.provider_family is not ProviderFamily.AUTO:
            return self.provider_family
        return ProviderFamily.QWEN if "qwen" in (self.model or "").lower() else ProviderFamily.GENERIC

    def to_dict(self) -> dict[str, Any]:
        return {
            "api_url": self.api_url,
            "model": self.model,
            "timeout": self.timeout,
            "tier_preference": self.tier_preference.value,
            "provider_family": self.provider_family.value,
            "lookup_mode": self.lookup_mode.value,
            "lookup_ttl_hours": self.lookup_ttl_hours,
            "hint_cache_path": self.hint_cache_path,
            "sampling_override_enabled": self.sampling_override_enabled,
            "sampling_profile": self.sampling_profile.value,
            "quality_mode": self.quality_mode.value,
            "auto_repair_attempts": self.auto_repair_attempts,
            "stream_parse_cadence_ms": self.stream_parse_cadence_ms,
            "live_workspace_apply": self.live_workspace_apply,
            "show_wire_debug": self.show_wire_debug,
        }


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration; a missing file yields an empty mapping."""
    if not config_path.exists():
        return {}
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise SettingsError(f"Failed to parse config {config_path}: {error}") from error
    if not isinstance(data, dict):
        raise SettingsError("Configuration must be a mapping at the top level.")
    return data


def _as_int(value: Any, *, minimum: int | None = None) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        candidate = int(value)
    except (TypeError, ValueError):
        return None
    if minimum is not None and candidate < minimum:
        return minimum
    return candidate


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    return None


def _as_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_enum(enum_type: Type[E], value: Any, key: str) -> E | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    raw = value.value if isinstance(value, Enum) else str(value).strip().lower()
    try:
        return enum_type(raw)
    except ValueError as error:
        allowed = ", ".join(member.value for member in enum_type)
        raise SettingsError(f"Invalid value for {key}: {value!r} (expected one of: {allowed})") from error


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = config.get(name)
    return section if isinstance(section, Mapping) else {}


def resolve_settings(
    config: Optional[Mapping[str, Any]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> GenerationSettings:
    """Build settings from a config mapping, then apply ``PATCHSTREAM_*`` overrides."""
    config = config or {}
    env = os.environ if environ is None else environ
    settings = GenerationSettings()

    model_section = _section(config, "model")
    settings.api_url = _as_str(model_section.get("api_url")) or settings.api_url
    settings.model = _as_str(model_section.get("name")) or settings.model
    timeout = _as_float(model_section.get("timeout"))
    if timeout is not None and timeout > 0:
        settings.timeout = timeout
    settings.tier_preference = (
        _as_enum(TierPreference, model_section.get("tier_preference"), "model.tier_preference")
        or settings.tier_preference
    )
    settings.provider_family = (
        _as_enum(ProviderFamily, model_section.get("provider_family"), "model.provider_family")
        or settings.provider_family
    )
    settings.lookup_mode = (
        _as_enum(LookupMode, model_section.get("lookup_mode"), "model.lookup_mode") or settings.lookup_mode
    )
    ttl = _as_float(model_section.get("lookup_ttl_hours"))
    if ttl is not None:
        settings.lookup_ttl_hours = max(1.0, ttl)
    settings.hint_cache_path = _as_str(model_section.get("hint_cache_path")) or settings.hint_cache_path
    settings.system_prompt = _as_str(model_section.get("system_prompt")) or settings.system_prompt

    sampling_section = _section(config, "sampling")
    override = _as_bool(sampling_section.get("override_enabled"))
    if override is not None:
        settings.sampling_override_enabled = override
    settings.sampling_profile = (
        _as_enum(SamplingProfile, sampling_section.get("profile"), "sampling.profile") or settings.sampling_profile
    )

    run_section = _section(config, "run")
    settings.quality_mode = (
        _as_enum(QualityMode, run_section.get("quality_mode"), "run.quality_mode") or settings.quality_mode
    )
    attempts = _as_int(run_section.get("auto_repair_attempts"), minimum=0)
    if attempts is not None:
        settings.auto_repair_attempts = attempts
    cadence = _as_int(run_section.get("stream_parse_cadence_ms"), minimum=0)
    if cadence is not None:
        settings.stream_parse_cadence_ms = cadence
    live_apply = _as_bool(run_section.get("live_workspace_apply"))
    if live_apply is not None:
        settings.live_workspace_apply = live_apply
    wire_debug = _as_bool(run_section.get("show_wire_debug"))
    if wire_debug is not None:
        settings.show_wire_debug = wire_debug

    settings.api_url = _as_str(env.get("PATCHSTREAM_API_URL")) or settings.api_url
    settings.model = _as_str(env.get("PATCHSTREAM_MODEL")) or settings.model
    settings.quality_mode = (
        _as_enum(QualityMode, env.get("PATCHSTREAM_QUALITY_MODE"), "PATCHSTREAM_QUALITY_MODE")
        or settings.quality_mode
    )
    env_attempts = _as_int(env.get("PATCHSTREAM_AUTO_REPAIR_ATTEMPTS"), minimum=0)
    if env_attempts is not None:
        settings.auto_repair_attempts = env_attempts
    env_cadence = _as_int(env.get("PATCHSTREAM_STREAM_CADENCE_MS"), minimum=0)
    if env_cadence is not None:
        settings.stream_parse_cadence_ms = env_cadence
    env_timeout = _as_float(env.get("PATCHSTREAM_TIMEOUT"))
    if env_timeout is not None and env_timeout > 0:
        settings.timeout = env_timeout
    settings.tier_preference = (
        _as_enum(TierPreference, env.get("PATCHSTREAM_TIER_PREFERENCE"), "PATCHSTREAM_TIER_PREFERENCE")
        or settings.tier_preference
    )
    return settings


__all__ = [
    "DEFAULT_API_URL",
    "DEFAULT_AUTO_REPAIR_ATTEMPTS",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "DEFAULT_MODEL",
    "DEFAULT_STREAM_PARSE_CADENCE_MS",
    "GenerationSettings",
    "ProviderFamily",
    "QualityMode",
    "SamplingProfile",
    "SettingsError",
    "copy_config_template",
    "load_config",
    "resolve_settings",
    "write_config",
]
