"""Model parameter-size hints, profile tiers and model discovery."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional
from urllib.parse import quote

import httpx

from ..telemetry import emit_event
from .llm_client import LLMResponseFormatError, LLMTransportError

LOGGER = logging.getLogger(__name__)

SMALL_MODEL_THRESHOLD_B = 25.0
DEFAULT_LOOKUP_TTL_HOURS = 168
REQUEST_TIMEOUT_SECONDS = 4.0
HF_MODELS_API = "https://huggingface.co/api/models/"

KNOWN_MODEL_PARAM_HINTS: tuple[tuple[re.Pattern[str], float], ...] = (
    (re.compile(r"qwen3[-_ ]coder[-_ ]next", re.IGNORECASE), 80),
    (re.compile(r"qwen2\.5[-_ ]coder[-_ ]32b", re.IGNORECASE), 32),
    (re.compile(r"qwen2\.5[-_ ]coder[-_ ]14b", re.IGNORECASE), 14),
    (re.compile(r"qwen2\.5[-_ ]coder[-_ ]7b", re.IGNORECASE), 7),
    (re.compile(r"deepseek[-_ ]coder[-_ ]v2", re.IGNORECASE), 236),
    (re.compile(r"deepseek[-_ ]coder[-_ ]33b", re.IGNORECASE), 33),
    (re.compile(r"llama[-_ ]3\.1[-_ ]70b", re.IGNORECASE), 70),
    (re.compile(r"llama[-_ ]3\.1[-_ ]8b", re.IGNORECASE), 8),
    (re.compile(r"llama[-_ ]3[-_ ]70b", re.IGNORECASE), 70),
    (re.compile(r"llama[-_ ]3[-_ ]8b", re.IGNORECASE), 8),
)

_ID_B_SUFFIX_RE = re.compile(r"(?:^|[-_ /])(\d+(?:\.\d+)?)b(?:$|[-_ /])")
_ID_M_SUFFIX_RE = re.compile(r"(?:^|[-_ /])(\d+(?:\.\d+)?)m(?:$|[-_ /])")
_LOOSE_B_RE = re.compile(r"(\d+(?:\.\d+)?)\s*b\b")
_LOOSE_M_RE = re.compile(r"(\d+(?:\.\d+)?)\s*m\b")
_VALUE_B_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*b$")
_VALUE_M_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*m$")
_STEM_SUFFIX_RES = (
    re.compile(r"[-_](mlx|gguf|awq|gptq|int\d+|fp\d+|instruct|chat|quantized)$", re.IGNORECASE),
    re.compile(r"[-_](q\d+_k_[msl]|q\d+)$", re.IGNORECASE),
)

_METADATA_PATHS: tuple[tuple[str, ...], ...] = (
    ("parameter_count",),
    ("parameters",),
    ("model_size",),
    ("size",),
    ("n_params",),
    ("details", "parameter_count"),
    ("details", "parameters"),
    ("details", "model_size"),
    ("metadata", "parameter_count"),
    ("metadata", "parameters"),
    ("metadata", "model_size"),
    ("meta", "parameters"),
)
_HF_PAYLOAD_PATHS: tuple[tuple[str, ...], ...] = (
    ("cardData", "parameters"),
    ("cardData", "model_size"),
    ("cardData", "parameter_count"),
    ("config", "parameters"),
    ("config", "parameter_count"),
    ("config", "num_parameters"),
    ("model_size",),
    ("parameter_count",),
)


class ModelTier(str, Enum):
    SMALL = "small"
    LARGE = "large"
    UNKNOWN = "unknown"


class TierPreference(str, Enum):
    AUTO = "auto"
    SMALL = "small"
    LARGE = "large"


class LookupMode(str, Enum):
    """How far a hint lookup may go: local table only, persisted cache, or the live hub."""

    OFF = "off"
    HF_CACHE = "hf-cache"
    HF_LIVE = "hf-live"


class HintSource(str, Enum):
    HF = "hf"
    FALLBACK = "fallback"
    UNKNOWN = "unknown"


class ProfileSource(str, Enum):
    METADATA = "metadata"
    NAME = "name"
    HF = "hf"
    MANUAL = "manual"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class ModelHint:
    """Parameter-size hint for one model id."""

    id: str
    approx_params_b: Optional[float]
    source: HintSource
    resolved_id: Optional[str] = None
    fetched_at: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "approx_params_b": self.approx_params_b,
            "source": self.source.value,
            "resolved_id": self.resolved_id,
            "fetched_at": self.fetched_at,
        }


@dataclass(slots=True)
class ModelProfile:
    id: str
    tier: ModelTier
    approx_params_b: Optional[float]
    source: ProfileSource

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tier": self.tier.value,
            "approx_params_b": self.approx_params_b,
            "source": self.source.value,
        }


def _to_number(value: str) -> Optional[float]:
    try:
        return float(value)
    except ValueError:
        return None


def _dig(payload: Any, path: tuple[str, ...]) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def parse_param_value_to_b(value: Any) -> Optional[float]:
    """Parse ``7``, ``"7b"``, ``"350m"`` or a raw parameter count into billions."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        return value / 1_000_000_000 if value > 1_000_000 else float(value)
    if not isinstance(value, str):
        return None
    clean = value.strip().lower().replace(",", "")
    if not clean:
        return None
    match = _VALUE_B_RE.match(clean)
    if match:
        return _to_number(match.group(1))
    match = _VALUE_M_RE.match(clean)
    if match:
        number = _to_number(match.group(1))
        return None if number is None else number / 1000
    numeric = _to_number(clean)
    if numeric is not None:
        return numeric / 1_000_000_000 if numeric > 1_000_000 else numeric
    return None


def parse_param_from_string(value: str) -> Optional[float]:
    lower = value.lower()
    match = _LOOSE_B_RE.search(lower)
    if match:
        return _to_number(match.group(1))
    match = _LOOSE_M_RE.search(lower)
    if match:
        number = _to_number(match.group(1))
        return None if number is None else number / 1000
    return None


def known_param_hint(model_id: str) -> Optional[float]:
    for pattern, params_b in KNOWN_MODEL_PARAM_HINTS:
        if pattern.search(model_id):
            return float(params_b)
    return None


def infer_params_from_model_id(model_id: str) -> Optional[float]:
    """Size from the hint table, then from a delimited ``NNb``/``NNm`` token in the id."""
    known = known_param_hint(model_id)
    if known is not None:
        return known
    lower = model_id.lower()
    match = _ID_B_SUFFIX_RE.search(lower)
    if match:
        return _to_number(match.group(1))
    match = _ID_M_SUFFIX_RE.search(lower)
    if match:
        number = _to_number(match.group(1))
        return None if number is None else number / 1000
    return None


def local_fallback_hint(model_id: str) -> Optional[float]:
    known = known_param_hint(model_id)
    if known is not None:
        return known
    return parse_param_from_string(model_id)


def detect_params_from_metadata(raw: Any) -> Optional[float]:
    for path in _METADATA_PATHS:
        parsed = parse_param_value_to_b(_dig(raw, path))
        if parsed is not None:
            return parsed
    return None


def classify_tier(params_b: Optional[float]) -> ModelTier:
    if params_b is None:
        return ModelTier.UNKNOWN
    return ModelTier.SMALL if params_b < SMALL_MODEL_THRESHOLD_B else ModelTier.LARGE


def build_model_profile(model_id: str, raw: Any = None) -> ModelProfile:
    """Profile from server metadata first, then from the model id."""
    from_meta = detect_params_from_metadata(raw)
    if from_meta is not None:
        return ModelProfile(model_id, classify_tier(from_meta), from_meta, ProfileSource.METADATA)
    from_name = infer_params_from_model_id(model_id)
    if from_name is not None:
        return ModelProfile(model_id, classify_tier(from_name), from_name, ProfileSource.NAME)
    return ModelProfile(model_id, ModelTier.UNKNOWN, None, ProfileSource.UNKNOWN)


def apply_tier_preference(profile: ModelProfile, preference: TierPreference | str | None) -> ModelProfile:
    """A manual small/large preference overrides the detected tier."""
    if preference in (TierPreference.SMALL, TierPreference.SMALL.value):
        tier = ModelTier.SMALL
    elif preference in (TierPreference.LARGE, TierPreference.LARGE.value):
        tier = ModelTier.LARGE
    else:
        return profile
    return ModelProfile(profile.id, tier, profile.approx_params_b, ProfileSource.MANUAL)


def models_url_from_api_url(api_url: str) -> str:
    """Derive the ``/models`` listing endpoint from a chat-completions URL."""
    if "/chat/completions" in api_url:
        return api_url.replace("/chat/completions", "/models")
    if "/v1" in api_url:
        return f"{api_url}models" if api_url.endswith("/") else f"{api_url}/models"
    return f"{api_url}v1/models" if api_url.endswith("/") else f"{api_url}/v1/models"


def normalize_candidate_stem(model_id: str) -> str:
    stem = model_id
    for pattern in _STEM_SUFFIX_RES:
        stem = pattern.sub("", stem)
    return stem


def build_hf_candidates(model_id: str) -> list[str]:
    """Hub repository ids worth querying for ``model_id``, in order."""
    model_id = model_id.strip()
    candidates = [model_id]
    if "/" not in model_id:
        candidates.append(f"Qwen/{model_id}")
        candidates.append(f"Qwen/{normalize_candidate_stem(model_id)}")
    if KNOWN_MODEL_PARAM_HINTS[0][0].search(model_id):
        candidates.append("Qwen/Qwen3-Coder-Next")
    return list(dict.fromkeys(candidate.strip() for candidate in candidates if candidate.strip()))


def extract_param_hint_from_payload(payload: Any, resolved_id: str) -> Optional[float]:
    if not isinstance(payload, Mapping):
        return None
    for path in _HF_PAYLOAD_PATHS:
        parsed = parse_param_value_to_b(_dig(payload, path))
        if parsed is not None:
            return parsed
    tags = payload.get("tags")
    if isinstance(tags, list):
        for tag in tags:
            if isinstance(tag, str):
                parsed = parse_param_from_string(tag)
                if parsed is not None:
                    return parsed
    return parse_param_from_string(resolved_id)


class HintCache:
    """Model hints keyed by id, expiring after ``ttl_hours`` (minimum one hour)."""

    def __init__(
        self,
        ttl_hours: float = DEFAULT_LOOKUP_TTL_HOURS,
        *,
        clock: Callable[[], float] = time.time,
        entries: Optional[Mapping[str, ModelHint]] = None,
    ) -> None:
        self.ttl_hours = max(1.0, float(ttl_hours))
        self._clock = clock
        self._entries: dict[str, ModelHint] = dict(entries or {})

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, model_id: str) -> Optional[ModelHint]:
        hit = self._entries.get(model_id)
        if hit is None or hit.fetched_at is None:
            return None
        if self._clock() - hit.fetched_at > self.ttl_hours * 3600:
            return None
        return hit

    def put(self, hint: ModelHint) -> None:
        if hint.fetched_at is None:
            hint.fetched_at = self._clock()
        self._entries[hint.id] = hint

    @classmethod
    def load(
        cls,
        path: Path,
        ttl_hours: float = DEFAULT_LOOKUP_TTL_HOURS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "HintCache":
        """Read a cache file; a missing or unreadable file yields an empty cache."""
        entries: dict[str, ModelHint] = {}
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raw = {}
        except (OSError, json.JSONDecodeError) as error:
            LOGGER.warning("Ignoring unreadable model hint cache %s: %s", path, error)
            raw = {}
        if isinstance(raw, dict):
            for model_id, item in raw.items():
                if not isinstance(item, dict):
                    continue
                try:
                    source = HintSource(item.get("source", HintSource.UNKNOWN.value))
                except ValueError:
                    continue
                fetched_at = item.get("fetched_at")
                entries[str(model_id)] = ModelHint(
                    id=str(model_id),
                    approx_params_b=parse_param_value_to_b(item.get("approx_params_b")),
                    source=source,
                    resolved_id=item.get("resolved_id"),
                    fetched_at=float(fetched_at) if isinstance(fetched_at, (int, float)) else None,
                )
        return cls(ttl_hours, clock=clock, entries=entries)

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {model_id: hint.to_dict() for model_id, hint in sorted(self._entries.items())}
        path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")


class ModelRegistry:
    """Resolves model profiles and parameter hints, caching both per process.

    Live lookups query the model hub with a short timeout; any transport error
    or unusable payload is treated as "no data".
    """

    def __init__(
        self,
        *,
        lookup_mode: LookupMode = LookupMode.HF_CACHE,
        cache: Optional[HintCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        hub_api_url: str = HF_MODELS_API,
    ) -> None:
        self.lookup_mode = LookupMode(lookup_mode)
        self.cache = cache if cache is not None else HintCache()
        self._transport = transport
        self._timeout = timeout
        self._hub_api_url = hub_api_url
        self._profiles: dict[str, ModelProfile] = {}

    def profile_for(self, model_id: str) -> ModelProfile:
        cached = self._profiles.get(model_id)
        if cached is not None:
            return cached
        created = build_model_profile(model_id, {"id": model_id})
        self._profiles[model_id] = created
        return created

    def remember(self, profile: ModelProfile) -> None:
        self._profiles[profile.id] = profile

    async def lookup_hint(self, model_id: str, client: Optional[httpx.AsyncClient] = None) -> ModelHint:
        """Resolve a hint: cache, then (in ``hf-live`` mode) the hub, then the local table."""
        if not model_id:
            return ModelHint(model_id, None, HintSource.UNKNOWN)
        fallback_params = local_fallback_hint(model_id)
        fallback = (
            ModelHint(model_id, fallback_params, HintSource.FALLBACK, resolved_id=model_id, fetched_at=time.time())
            if fallback_params is not None
            else ModelHint(model_id, None, HintSource.UNKNOWN)
        )

        hint = self.cache.get(model_id)
        if hint is None and self.lookup_mode is LookupMode.HF_LIVE:
            if client is None:
                async with self._client() as owned:
                    hint = await self._fetch_hub_hint(owned, model_id)
            else:
                hint = await self._fetch_hub_hint(client, model_id)
            if hint is not None:
                self.cache.put(hint)
        if hint is None:
            hint = fallback
        emit_event(
            "registry.lookup",
            model=model_id,
            mode=self.lookup_mode,
            source=hint.source,
            approx_params_b=hint.approx_params_b,
        )
        return hint

    async def resolve_profile(self, model_id: str) -> ModelProfile:
        """Profile for ``model_id``, refined by a hint lookup unless metadata already decided it."""
        profile = self.profile_for(model_id)
        if self.lookup_mode is LookupMode.OFF or profile.source in (ProfileSource.METADATA, ProfileSource.HF):
            return profile
        self._refine_profile(profile, await self.lookup_hint(model_id))
        return self.profile_for(model_id)

    async def discover_models(self, api_url: str) -> list[str]:
        """List server model ids and refine their profiles with concurrent hint lookups."""
        url = models_url_from_api_url(api_url)
        async with self._client() as client:
            try:
                response = await client.get(url)
            except httpx.HTTPError as error:
                raise LLMTransportError(f"Failed to reach models endpoint: {error}", details={"url": url}) from error
            if response.status_code >= 400:
                raise LLMTransportError(
                    f"HTTP Error: {response.status_code} {response.reason_phrase}",
                    details={"url": url, "status": response.status_code},
                )
            try:
                data = response.json()
            except ValueError as error:
                raise LLMResponseFormatError("Models endpoint returned invalid JSON.", details={"url": url}) from error

            entries = data.get("data") if isinstance(data, dict) else None
            if not isinstance(entries, list):
                return []

            ids: list[str] = []
            pending: list[tuple[str, ModelProfile]] = []
            for entry in entries:
                model_id = str(entry.get("id") or "").strip() if isinstance(entry, dict) else ""
                if not model_id:
                    continue
                ids.append(model_id)
                profile = build_model_profile(model_id, entry)
                self.remember(profile)
                if self.lookup_mode is LookupMode.OFF or profile.source is ProfileSource.METADATA:
                    continue
                pending.append((model_id, profile))

            results = await asyncio.gather(
                *(self.lookup_hint(model_id, client) for model_id, _ in pending), return_exceptions=True
            )
        for (model_id, profile), outcome in zip(pending, results):
            if isinstance(outcome, BaseException):
                LOGGER.debug("Hint lookup failed for %s: %s", model_id, outcome)
                continue
            self._refine_profile(profile, outcome)
        return ids

    def _refine_profile(self, profile: ModelProfile, hint: ModelHint) -> None:
        params = hint.approx_params_b
        if params is None:
            return
        if hint.source is HintSource.HF:
            self.remember(ModelProfile(profile.id, classify_tier(params), params, ProfileSource.HF))
        elif hint.source is HintSource.FALLBACK and profile.source is ProfileSource.UNKNOWN:
            self.remember(ModelProfile(profile.id, classify_tier(params), params, ProfileSource.NAME))

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    async def _fetch_hub_hint(self, client: httpx.AsyncClient, model_id: str) -> Optional[ModelHint]:
        for resolved_id in build_hf_candidates(model_id):
            payload = await self._fetch_json(client, f"{self._hub_api_url}{quote(resolved_id, safe='')}")
            if payload is None:
                continue
            params = extract_param_hint_from_payload(payload, resolved_id)
            return ModelHint(
                id=model_id,
                approx_params_b=params,
                source=HintSource.UNKNOWN if params is None else HintSource.HF,
                resolved_id=resolved_id,
                fetched_at=time.time(),
            )
        return None

    async def _fetch_json(self, client: httpx.AsyncClient, url: str) -> Any:
        try:
            response = await client.get(url, timeout=self._timeout)
        except httpx.HTTPError as error:
            LOGGER.debug("Model hub request failed for %s: %s", url, error)
            return None
        if response.status_code >= 400:
            return None
        try:
            return response.json()
        except ValueError:
            return None


__all__ = [
    "DEFAULT_LOOKUP_TTL_HOURS",
    "HintCache",
    "HintSource",
    "KNOWN_MODEL_PARAM_HINTS",
    "LookupMode",
    "ModelHint",
    "ModelProfile",
    "ModelRegistry",
    "ModelTier",
    "ProfileSource",
    "SMALL_MODEL_THRESHOLD_B",
    "TierPreference",
    "apply_tier_preference",
    "build_hf_candidates",
    "build_model_profile",
    "classify_tier",
    "detect_params_from_metadata",
    "extract_param_hint_from_payload",
    "infer_params_from_model_id",
    "local_fallback_hint",
    "models_url_from_api_url",
    "parse_param_from_string",
    "parse_param_value_to_b",
]
