"""Stream reconciliation: channel accumulation, snapshot cadence and generation."""

from __future__ import annotations

import logging
import re
import time
from typing import Callable, Mapping, Optional, Sequence

from ..models.chat_stream import ChatDelta
from ..models.llm_client import ChatClient, ChatRequest, ModelProfileError
from ..models.registry import ModelRegistry, ModelTier, TierPreference, apply_tier_preference
from ..prompts import compose_messages
from ..settings import GenerationSettings, ProviderFamily, SamplingProfile
from ..telemetry import emit_event
from ..tools.assets import split_protocol_files
from ..validation.validator import StructuralValidator
from .normalizer import decode_tool_text
from .parser import AttemptType, ParseMode, StreamUpdate, parse_response

LOGGER = logging.getLogger(__name__)

MIN_CADENCE_MS = 40
MIN_EMIT_CHARS = 80
REASONING_CAP = 200_000
TOOL_ARGS_CAP = 500_000
INTERNAL_RETRY_LIMIT = 2

_SPECIAL_TOKEN_RE = re.compile(r"<\|im_start\|>|<\|im_end\|>")
_PARSEABLE_RE = re.compile(
    r"(import\s+React|export\s+default|```|<replace>|<find>|<with>|<!--\s*(filename|patch):)", re.IGNORECASE
)
_TOOL_WRAPPER_RE = re.compile(r"<tool_call>|<toolcall>|<tool>|<function_call>", re.IGNORECASE)

UpdateCallback = Callable[[StreamUpdate], None]


def _append_capped(current: str, delta: str, cap: int) -> str:
    combined = current + delta
    return combined[-cap:] if len(combined) > cap else combined


class StreamReconciler:
    """Accumulates one streamed response and turns it into ``StreamUpdate`` snapshots.

    Only assistant content is parsed. Reasoning and tool-call arguments are kept
    in capped side channels; the wire trace is recorded only when requested.
    Snapshots are emitted when enough time or text has accumulated, and every
    snapshot re-parses the full text against the same base files. Files in
    ``passthrough_files`` (binary assets, vendored code) are never parsed and are
    carried into every update unchanged.
    """

    def __init__(
        self,
        base_files: Mapping[str, str],
        *,
        passthrough_files: Optional[Mapping[str, str]] = None,
        on_update: Optional[UpdateCallback] = None,
        cadence_ms: int = 120,
        live_apply: bool = False,
        wire_debug: bool = False,
        attempt_index: int = 0,
        attempt_type: AttemptType = AttemptType.PRIMARY,
        validator: Optional[StructuralValidator] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_files: dict[str, str] = dict(base_files)
        self.passthrough_files: dict[str, str] = dict(passthrough_files or {})
        self._on_update = on_update
        self.cadence_ms = max(MIN_CADENCE_MS, cadence_ms)
        self.live_apply = live_apply
        self.wire_debug = wire_debug
        self.attempt_index = attempt_index
        self.attempt_type = attempt_type
        self._validator = validator
        self._clock = clock

        self.content = ""
        self.reasoning = ""
        self.tool_args = ""
        self.wire = ""
        self.saw_markers = False
        self._pending_chars = 0
        self._last_emit_at: Optional[float] = None
        self._offsets = {"raw": 0, "wire": 0, "clean": 0, "parsed": 0}

    @property
    def model_text(self) -> str:
        return self.content

    def channel_stats(self) -> dict[str, int]:
        return {
            "content_chars": len(self.content),
            "reasoning_chars": len(self.reasoning),
            "tool_arg_chars": len(self.tool_args),
            "wire_chars": len(self.wire),
        }

    def record_wire(self, line: str) -> None:
        if self.wire_debug and line:
            self.wire += f"{line}\n"

    def feed(self, delta: ChatDelta) -> Optional[StreamUpdate]:
        """Add one delta; returns the snapshot when the cadence allowed one."""
        reasoning = "".join(part for part in (delta.reasoning_content, delta.reasoning) if isinstance(part, str))
        content = delta.content if isinstance(delta.content, str) else ""
        tool_text = delta.tool_text()
        decoded_tool_text = decode_tool_text(tool_text) if tool_text else ""

        if reasoning:
            self.reasoning = _append_capped(self.reasoning, reasoning, REASONING_CAP)
        if decoded_tool_text:
            self.tool_args = _append_capped(self.tool_args, decoded_tool_text, TOOL_ARGS_CAP)
        if content:
            self.content += content
        if not (reasoning or content or tool_text):
            return None

        self._pending_chars += len(reasoning) + len(content) + len(decoded_tool_text)
        now = self._clock()
        due = self._last_emit_at is None or (now - self._last_emit_at) * 1000 >= self.cadence_ms
        if self._pending_chars < MIN_EMIT_CHARS and not due:
            return None
        parse_mode = ParseMode.FINAL_FULL if self.live_apply else ParseMode.STREAM_LITE
        update = self.emit(is_final=False, apply_to_files=self.live_apply, parse_mode=parse_mode)
        self._last_emit_at = now
        self._pending_chars = 0
        return update

    def parse(self, *, is_final: bool, apply_to_files: bool, parse_mode: ParseMode = ParseMode.FINAL_FULL) -> StreamUpdate:
        """Parse the accumulated text without emitting or advancing deltas."""
        return parse_response(
            self.content,
            self.reasoning,
            self.base_files,
            is_final=is_final,
            apply_to_files=apply_to_files,
            raw_model_text=self.content,
            raw_wire_text=self.wire,
            parse_mode=parse_mode,
            validator=self._validator,
        )

    def emit(self, *, is_final: bool, apply_to_files: bool, parse_mode: ParseMode) -> StreamUpdate:
        update = self.parse(is_final=is_final, apply_to_files=apply_to_files, parse_mode=parse_mode)
        update.delta_raw = self.content[self._offsets["raw"] :]
        update.delta_wire = self.wire[self._offsets["wire"] :]
        update.delta_clean = update.clean_model_text[self._offsets["clean"] :]
        update.delta_parsed = update.parsed_blocks_text[self._offsets["parsed"] :]
        self._offsets = {
            "raw": len(self.content),
            "wire": len(self.wire),
            "clean": len(update.clean_model_text),
            "parsed": len(update.parsed_blocks_text),
        }
        self._stamp(update)
        if update.marker_count > 0:
            self.saw_markers = True
        emit_event(
            "stream.snapshot",
            attempt_index=self.attempt_index,
            attempt_type=self.attempt_type,
            is_final=is_final,
            parse_mode=parse_mode,
            marker_count=update.marker_count,
            applied_ops=update.applied_ops,
            has_real_diff=update.has_real_diff,
            channels=update.channel_stats,
        )
        if self._on_update is not None:
            self._on_update(update)
        return update

    def finish(self) -> StreamUpdate:
        return self.emit(is_final=True, apply_to_files=True, parse_mode=ParseMode.FINAL_FULL)

    def regeneration_probe(self) -> Optional[tuple[str, StreamUpdate]]:
        """Warning and probe update when this response should be regenerated, else ``None``."""
        text = self.content
        stripped = _SPECIAL_TOKEN_RE.sub("", text).strip()
        if _SPECIAL_TOKEN_RE.search(text) and not stripped:
            probe = self.parse(is_final=False, apply_to_files=False)
            return "AUTO_RETRY: Special tokens detected; retrying once.", probe

        if self.saw_markers:
            return None
        probe = self.parse(is_final=False, apply_to_files=True)
        if probe.marker_count > 0:
            return None
        actionable = bool(probe.touched_files) or probe.applied_ops > 0
        if actionable:
            return None
        if _TOOL_WRAPPER_RE.search(text):
            return "AUTO_RETRY: Tool-call wrappers detected with no actionable edits; retrying once.", probe
        if _PARSEABLE_RE.search(text):
            return "AUTO_RETRY: Parseable content without actionable edits; retrying once.", probe
        return None

    def notify_regeneration(self, warning: str, probe: StreamUpdate) -> None:
        probe.warnings = [*probe.warnings, warning]
        probe.is_final = False
        self._stamp(probe)
        if self._on_update is not None:
            self._on_update(probe)

    def _stamp(self, update: StreamUpdate) -> None:
        for name, content in self.passthrough_files.items():
            update.files.setdefault(name, content)
        update.attempt_index = self.attempt_index
        update.attempt_type = self.attempt_type
        update.channel_stats = self.channel_stats()


def build_chat_request(messages: list[dict[str, str]], settings: GenerationSettings) -> ChatRequest:
    """Chat request with sampling knobs only when the override is enabled."""
    request = ChatRequest(messages=messages, model=settings.model, stream=True)
    if not settings.sampling_override_enabled:
        return request
    if settings.sampling_profile is SamplingProfile.STRICT_DETERMINISTIC:
        request.temperature = 0.2
        request.top_p = 0.9
    elif settings.effective_provider_family() is ProviderFamily.QWEN:
        request.temperature = 1.0
        request.top_p = 0.95
        request.top_k = 40
    return request


async def generate_edits(
    client: ChatClient,
    prompt: str,
    history: Sequence[Mapping[str, str]],
    files: Mapping[str, str],
    on_update: Optional[UpdateCallback] = None,
    *,
    settings: GenerationSettings,
    registry: Optional[ModelRegistry] = None,
    attempt_index: int = 1,
    attempt_type: AttemptType = AttemptType.PRIMARY,
    validator: Optional[StructuralValidator] = None,
    clock: Callable[[], float] = time.monotonic,
) -> StreamUpdate:
    """Run one generation attempt and return its authoritative final update.

    Binary assets are listed to the model but never parsed; they come back
    unchanged in every update so callers see the complete file set. Responses that are
    only special tokens, or markerless output without actionable edits, are
    regenerated at most ``INTERNAL_RETRY_LIMIT`` times.
    """
    protocol_files, asset_names = split_protocol_files(files)
    passthrough = {name: content for name, content in files.items() if name not in protocol_files}
    registry = registry or ModelRegistry(lookup_mode=settings.lookup_mode)
    profile = apply_tier_preference(await registry.resolve_profile(settings.model), settings.tier_preference)
    if profile.tier is ModelTier.UNKNOWN and settings.tier_preference is TierPreference.AUTO:
        raise ModelProfileError(
            "Unknown model size. Choose small-model or large-model mode in settings before running generation.",
            details={"model": settings.model},
        )

    messages = compose_messages(
        prompt,
        history,
        protocol_files,
        profile=profile,
        system_prompt=settings.system_prompt,
        asset_names=asset_names,
    )
    request = build_chat_request(messages, settings)

    regeneration = 0
    while True:
        reconciler = StreamReconciler(
            protocol_files,
            passthrough_files=passthrough,
            on_update=on_update,
            cadence_ms=settings.stream_parse_cadence_ms,
            live_apply=settings.live_workspace_apply,
            wire_debug=settings.show_wire_debug,
            attempt_index=attempt_index,
            attempt_type=attempt_type,
            validator=validator,
            clock=clock,
        )
        async for frame in client.stream_chat(request):
            reconciler.record_wire(frame.wire_line)
            if frame.delta is not None:
                reconciler.feed(frame.delta)

        if regeneration < INTERNAL_RETRY_LIMIT:
            outcome = reconciler.regeneration_probe()
            if outcome is not None:
                warning, probe = outcome
                regeneration += 1
                LOGGER.info("Regenerating response (%d/%d): %s", regeneration, INTERNAL_RETRY_LIMIT, warning)
                emit_event(
                    "stream.regenerate",
                    attempt_index=attempt_index,
                    attempt_type=attempt_type,
                    regeneration=regeneration,
                    reason=warning,
                )
                reconciler.notify_regeneration(warning, probe)
                continue
        return reconciler.finish()


__all__ = [
    "INTERNAL_RETRY_LIMIT",
    "MIN_CADENCE_MS",
    "MIN_EMIT_CHARS",
    "StreamReconciler",
    "UpdateCallback",
    "build_chat_request",
    "generate_edits",
]
