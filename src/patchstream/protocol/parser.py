"""One parse pass over the accumulated model text."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from ..telemetry import emit_event
from ..tools.transaction import get_changed_files_between
from ..validation.confidence import compute_parser_confidence, is_low_confidence
from ..validation.validator import StructuralValidator
from .engine import apply_patches
from .extractor import (
    MarkerKind,
    extract_first_with,
    find_markers,
    has_patch_tags,
    looks_like_full_file,
    looks_like_whole_replacement,
    resolve_file_key,
    slice_marker_blocks,
)
from .fallback import is_inline_patch_shape, markerless_failure, run_fallback_chain, run_inline_rescue
from .normalizer import normalize_model_text

LOGGER = logging.getLogger(__name__)

CORE_SCAFFOLD_FILES: tuple[str, ...] = ("index.html", "index.tsx", "App.tsx")
STREAM_LITE_CONFIDENCE = 0.5
MARKER_NO_DIFF_FAILURE = "NO_OP: marker patch detected but produced no file diff"

_THREE_SCRIPT_RE = re.compile(r"<script[^>]+src=[\"'][^\"']*three[^\"']*[\"'][^>]*>", re.IGNORECASE)
_THREE_CDN_RES = (
    re.compile(r"(https?://[^\s\"'`>]*(?:unpkg|jsdelivr|cdnjs|cdn)[^\s\"'`>]*three)", re.IGNORECASE),
    re.compile(r"(https?://[^\s\"'`>]*three(?:\.module)?\.js)", re.IGNORECASE),
)
_THREE_EXAMPLES_RE = re.compile(r"from\s+['\"]three/examples/jsm/", re.IGNORECASE)


class ParserStage(str, Enum):
    """Furthest stage a parse pass reached."""

    RAW = "raw"
    NORMALIZED = "normalized"
    MARKERS = "markers"
    FALLBACK = "fallback"


class ParseMode(str, Enum):
    STREAM_LITE = "stream-lite"
    FINAL_FULL = "final-full"


class AttemptType(str, Enum):
    """Why a generation attempt was started."""

    PRIMARY = "primary"
    RETRY = "retry"
    REPAIR = "repair"


@dataclass(slots=True)
class ParserStats:
    marker_count: int = 0
    markers: list[str] = field(default_factory=list)
    applied_ops: int = 0
    touched_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "marker_count": self.marker_count,
            "markers": list(self.markers),
            "applied_ops": self.applied_ops,
            "touched_files": list(self.touched_files),
        }


@dataclass(slots=True)
class StreamUpdate:
    """Parse outcome for one emission; ``is_final`` marks the authoritative pass."""

    files: dict[str, str]
    parser_stage: ParserStage
    confidence: float
    warnings: list[str] = field(default_factory=list)
    failed_patches: list[str] = field(default_factory=list)
    repair_hints: list[str] = field(default_factory=list)
    stats: ParserStats = field(default_factory=ParserStats)
    is_final: bool = False
    parse_mode: ParseMode = ParseMode.FINAL_FULL
    thought: str | None = None
    raw_model_text: str = ""
    raw_wire_text: str = ""
    clean_model_text: str = ""
    parsed_blocks_text: str = ""
    has_real_diff: bool = False
    changed_files: list[str] = field(default_factory=list)
    delta_raw: str = ""
    delta_wire: str = ""
    delta_clean: str = ""
    delta_parsed: str = ""
    attempt_index: int = 0
    attempt_type: AttemptType = AttemptType.PRIMARY
    channel_stats: dict[str, int] = field(default_factory=dict)

    @property
    def applied_ops(self) -> int:
        return self.stats.applied_ops

    @property
    def touched_files(self) -> list[str]:
        return self.stats.touched_files

    @property
    def marker_count(self) -> int:
        return self.stats.marker_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "parser_stage": self.parser_stage.value,
            "parse_mode": self.parse_mode.value,
            "confidence": round(self.confidence, 4),
            "is_final": self.is_final,
            "warnings": list(self.warnings),
            "failed_patches": list(self.failed_patches),
            "repair_hints": list(self.repair_hints),
            "stats": self.stats.to_dict(),
            "has_real_diff": self.has_real_diff,
            "changed_files": list(self.changed_files),
            "attempt_index": self.attempt_index,
            "attempt_type": self.attempt_type.value,
            "thought": self.thought,
        }


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def detect_three_misuse(text: str) -> tuple[bool, bool, bool]:
    """Return ``(script_tag, cdn_reference, examples_import)`` flags for three.js usage."""
    return (
        _THREE_SCRIPT_RE.search(text) is not None,
        any(pattern.search(text) for pattern in _THREE_CDN_RES),
        _THREE_EXAMPLES_RE.search(text) is not None,
    )


def restore_core_scaffold(base_files: Mapping[str, str], files: dict[str, str]) -> list[str]:
    """Put back core scaffold files that exist in ``base_files`` but vanished from ``files``."""
    restored: list[str] = []
    for name in CORE_SCAFFOLD_FILES:
        if name in base_files and name not in files:
            files[name] = base_files[name]
            restored.append(name)
    return restored


class _ParsePass:
    """Mutable bookkeeping for a single :func:`parse_response` call."""

    def __init__(self, base_files: Mapping[str, str], *, is_final: bool) -> None:
        self.files: dict[str, str] = dict(base_files)
        self.is_final = is_final
        self.warnings: list[str] = []
        self.failures: list[str] = []
        self.hints: list[str] = []
        self.touched: list[str] = []
        self.parsed_parts: list[str] = []
        self.applied_ops = 0

    def set_file(self, name: str, content: str) -> bool:
        if (self.files.get(name) or "") == content:
            return False
        self.files[name] = content
        if name not in self.touched:
            self.touched.append(name)
        return True

    def apply_patch_block(self, name: str, body: str) -> None:
        result = apply_patches(self.files.get(name) or "", body, is_final=self.is_final)
        if result.success:
            if self.set_file(name, result.content):
                self.applied_ops += result.applied_ops
            else:
                self.warnings.append(f"NO_OP: Patch for {name} produced no content changes.")
            return
        if result.no_op:
            self.warnings.append(f"NO_OP: Patch for {name} produced no content changes.")
            return
        payload = extract_first_with(body)
        if payload and looks_like_whole_replacement(payload, self.files.get(name) or "", name):
            self.warnings.append(f"AUTO_CORRECT: patch failure; used <with> as full file for {name}.")
            self.set_file(name, payload)
        elif self.is_final:
            self.failures.append(f"{name}: {result.reason}")
            self.hints.append(f"patch_failed:{name}")


def parse_response(
    content: str,
    reasoning: str = "",
    base_files: Mapping[str, str] | None = None,
    *,
    is_final: bool,
    apply_to_files: bool = True,
    raw_model_text: str = "",
    raw_wire_text: str = "",
    parse_mode: ParseMode = ParseMode.FINAL_FULL,
    validator: StructuralValidator | None = None,
) -> StreamUpdate:
    """Parse the whole accumulated assistant text against ``base_files``.

    Every call starts from ``base_files``; the input mapping is never mutated.
    Markerless text is only acted on when ``is_final`` is set. Expected
    malformed input never raises: problems surface as warnings, failures and
    repair hints on the returned update.
    """
    base: dict[str, str] = dict(base_files or {})
    normalized = normalize_model_text(content)
    text = normalized.text
    thought = reasoning.strip() or normalized.thought
    state = _ParsePass(base, is_final=is_final)
    state.warnings.extend(normalized.warnings)
    stage = ParserStage.NORMALIZED

    if parse_mode is ParseMode.STREAM_LITE:
        markers = find_markers(text)
        return StreamUpdate(
            files=dict(base),
            parser_stage=stage,
            confidence=STREAM_LITE_CONFIDENCE,
            warnings=state.warnings,
            stats=ParserStats(marker_count=len(markers), markers=[marker.label for marker in markers]),
            is_final=is_final,
            parse_mode=parse_mode,
            thought=thought,
            raw_model_text=raw_model_text,
            raw_wire_text=raw_wire_text,
            clean_model_text=text,
        )

    script_tag, cdn_reference, examples_import = detect_three_misuse(text)
    if script_tag or cdn_reference or examples_import:
        state.hints.append("use_local_three_dependency")
        if script_tag:
            state.warnings.append("RUNTIME_RISK: Found <script src=...three...>. Use local import from 'three'.")
        if cdn_reference:
            state.warnings.append("RUNTIME_RISK: Found CDN reference for three.js. Use local dependency import.")
        if examples_import:
            state.warnings.append("RUNTIME_RISK: three/examples/jsm/* is not supported in this environment.")
            state.hints.append("three_examples_not_supported")
        if is_final and (script_tag or cdn_reference):
            state.failures.append(
                "RUNTIME_RISK: Remove CDN/script usage for three.js and use local import `from 'three'`."
            )
        if is_final and examples_import:
            state.failures.append(
                "RUNTIME_RISK: Import path `three/examples/jsm/*` is unsupported. Use core `three` only."
            )

    markers = find_markers(text)
    any_patch_tags = has_patch_tags(text)
    inline_attempted = False
    inline_applied = False
    inline_ambiguous = False
    inline_candidate = ""
    used_fallback = False

    if apply_to_files and not markers and is_final:
        candidate = run_fallback_chain(text, state.files)
        inline_attempted = is_inline_patch_shape(text) and (
            candidate is None or candidate.strategy != "named_fence_blocks"
        )
        if candidate is None:
            failure, hint = markerless_failure(text)
            state.failures.append(failure)
            state.hints.append(hint)
        else:
            LOGGER.debug("Markerless output handled by %s fallback", candidate.strategy)
            state.warnings.extend(candidate.warnings)
            state.failures.extend(candidate.failures)
            state.hints.extend(candidate.hints)
            if candidate.ambiguous:
                inline_ambiguous = True
            else:
                used_fallback = True
                stage = ParserStage.FALLBACK
                inline_candidate = candidate.target_file
                changed = False
                for name, body in candidate.edits:
                    changed = state.set_file(name, body) or changed
                if changed:
                    inline_applied = True
                    state.applied_ops += candidate.applied_ops

    if apply_to_files and markers:
        stage = ParserStage.MARKERS
        seen_patch_blocks: set[str] = set()
        for block in slice_marker_blocks(text, markers):
            marker = block.marker
            name = resolve_file_key(marker.file, state.files)
            header = f"<!-- {marker.kind.value}: {marker.file} -->\n{block.content}"
            block_has_ops = has_patch_tags(block.content)

            if marker.kind is MarkerKind.FILENAME:
                if block_has_ops:
                    state.warnings.append(
                        f"AUTO_CORRECT: filename block with patch ops treated as patch for {name}."
                    )
                    state.apply_patch_block(name, block.content)
                    state.parsed_parts.append(header)
                    continue
                if not block.has_fence:
                    if not looks_like_full_file(block.content, name):
                        if is_final:
                            state.failures.append(
                                f"PROTOCOL_VIOLATION:{name}: Filename blocks must use fenced code."
                            )
                        continue
                    state.warnings.append(f"WARN: filename block missing fence; accepted raw content for {name}.")
                state.set_file(name, block.content)
                state.parsed_parts.append(header)
                continue

            if block_has_ops:
                signature = f"{name}\n---\n{block.content.strip()}"
                if signature in seen_patch_blocks:
                    state.warnings.append(f"AUTO_CORRECT: Skipped duplicate patch block for {name}.")
                    state.parsed_parts.append(header)
                    continue
                seen_patch_blocks.add(signature)
                state.apply_patch_block(name, block.content)
            else:
                state.warnings.append(f"WARN: patch block missing ops; treated as full file for {name}.")
                state.set_file(name, block.content)
            state.parsed_parts.append(header)

        if is_final and state.applied_ops == 0 and any_patch_tags:
            inline_attempted = True
            rescue = run_inline_rescue(text, state.files)
            dedupe_warning = rescue.dedupe_warning()
            if dedupe_warning:
                state.warnings.append(dedupe_warning)
            if rescue.operations and rescue.targets:
                if rescue.ambiguous:
                    inline_ambiguous = True
                    state.hints.append("ambiguous_target")
                    state.failures.append(rescue.ambiguity_failure())
                elif rescue.chosen is not None:
                    chosen = rescue.chosen
                    inline_candidate = chosen.file
                    if state.set_file(chosen.file, chosen.result.content):
                        inline_applied = True
                        used_fallback = True
                        stage = ParserStage.FALLBACK
                        state.applied_ops += chosen.result.applied_ops
                        state.warnings.append(
                            f"AUTO_RECOVER: Applied inline rescue patch to {chosen.file} after marker parse miss."
                        )
                    else:
                        state.warnings.append(
                            f"NO_OP: Inline rescue patch for {chosen.file} produced no content changes."
                        )

    if used_fallback and stage is not ParserStage.MARKERS:
        stage = ParserStage.FALLBACK

    if is_final and inline_attempted and not inline_applied and not inline_ambiguous:
        suffix = f" (candidate: {inline_candidate})" if inline_candidate else ""
        state.failures.append(f"NO_OP: inline patch detected but no anchor matched{suffix}")
        state.hints.append("inline_anchor_miss")

    if is_final and apply_to_files and markers and any_patch_tags and state.applied_ops == 0:
        if MARKER_NO_DIFF_FAILURE not in state.failures:
            state.failures.append(MARKER_NO_DIFF_FAILURE)
        state.hints.append("inline_anchor_miss")

    if is_final and apply_to_files:
        restored = restore_core_scaffold(base, state.files)
        if restored:
            state.touched.extend(name for name in restored if name not in state.touched)
            state.warnings.append(f"AUTO_GUARD: Restored core scaffold file(s): {', '.join(restored)}.")
            state.hints.append("scaffold_guard_restore")

    confidence = compute_parser_confidence(
        marker_count=len(markers),
        applied_ops=state.applied_ops,
        touched_files=state.touched,
        failed_patches=state.failures,
        warnings=state.warnings,
        used_fallback_stage=stage is ParserStage.FALLBACK,
        files=state.files,
        validator=validator,
    )
    if is_low_confidence(confidence):
        state.hints.append("low_parser_confidence")

    changed_files = get_changed_files_between(base, state.files)
    update = StreamUpdate(
        files=state.files,
        parser_stage=stage,
        confidence=confidence,
        warnings=state.warnings,
        failed_patches=state.failures,
        repair_hints=_unique(state.hints),
        stats=ParserStats(
            marker_count=len(markers),
            markers=[marker.label for marker in markers],
            applied_ops=state.applied_ops,
            touched_files=list(state.touched),
        ),
        is_final=is_final,
        parse_mode=parse_mode,
        thought=thought,
        raw_model_text=raw_model_text,
        raw_wire_text=raw_wire_text,
        clean_model_text=text,
        parsed_blocks_text="\n\n".join(state.parsed_parts),
        has_real_diff=bool(changed_files),
        changed_files=changed_files,
    )
    if is_final:
        emit_event(
            "parse.completed",
            stage=stage,
            confidence=round(confidence, 4),
            marker_count=len(markers),
            applied_ops=state.applied_ops,
            touched_files=state.touched,
            failed_patches=len(state.failures),
            warnings=len(state.warnings),
        )
    return update


__all__ = [
    "AttemptType",
    "CORE_SCAFFOLD_FILES",
    "MARKER_NO_DIFF_FAILURE",
    "ParseMode",
    "ParserStage",
    "ParserStats",
    "StreamUpdate",
    "detect_three_misuse",
    "parse_response",
    "restore_core_scaffold",
]
