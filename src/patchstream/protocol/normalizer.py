"""Repairs applied to raw model text before any structural parsing."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

_REASONING_BLOCK_RE = re.compile(r"<(?:thinking|think)>[\s\S]*?</(?:thinking|think)>", re.IGNORECASE)
_REASONING_TAG_RE = re.compile(r"</?(?:thinking|think)>", re.IGNORECASE)
_TOOL_WRAPPER_RE = re.compile(r"</?\s*(?:tool_call|toolcall|tool|function_call)\b[^>]*>", re.IGNORECASE)
_DISCLOSURE_TAG_RE = re.compile(r"</?(?:details|summary)>", re.IGNORECASE)

_MARKER_DIALECTS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"<function\s*=\s*patch:\s*([^>\s]+)\s*>", re.IGNORECASE), "patch"),
    (re.compile(r"<function\s*=\s*filename:\s*([^>\s]+)\s*>", re.IGNORECASE), "filename"),
    (re.compile(r"<patch:\s*([^>\n]+?)\s*>", re.IGNORECASE), "patch"),
    (re.compile(r"<filename:\s*([^>\n]+?)\s*>", re.IGNORECASE), "filename"),
)
_STRAY_CLOSERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"</patch>", re.IGNORECASE), "AUTO_CORRECT: Removed </patch> wrapper."),
    (re.compile(r"</function>", re.IGNORECASE), "AUTO_CORRECT: Removed </function> wrapper."),
)

OPERATION_VOCABULARY: tuple[str, ...] = (
    "replace",
    "insert_before",
    "insert_after",
    "delete",
    "create",
    "find",
    "with",
)
_TRUNCATED_CLOSERS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(rf"</{tag}(?=\s|\Z|<)", re.IGNORECASE), f"</{tag}>") for tag in OPERATION_VOCABULARY
)
_DANGLING_CLOSER_RE = re.compile(r"(?:</\s*)+\Z")


@dataclass(slots=True)
class NormalizedText:
    """Cleaned text plus the auto-correction warnings produced along the way."""

    text: str
    warnings: list[str] = field(default_factory=list)
    thought: str | None = None


def normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def strip_reasoning_blocks(text: str) -> tuple[str, str | None]:
    """Remove ``<think>``/``<thinking>`` blocks and return the first block's body."""
    captured: list[str] = []

    def _capture(match: re.Match[str]) -> str:
        if not captured:
            captured.append(_REASONING_TAG_RE.sub("", match.group(0)).strip())
        return ""

    cleaned = _REASONING_BLOCK_RE.sub(_capture, text)
    thought = captured[0] if captured and captured[0] else None
    return cleaned, thought


def strip_wrapper_tags(text: str) -> str:
    """Drop tool-call wrappers and disclosure tags while keeping their inner text."""
    return _DISCLOSURE_TAG_RE.sub("", _TOOL_WRAPPER_RE.sub("", text))


def normalize_tool_markers(text: str, warnings: list[str]) -> str:
    """Rewrite vendor marker dialects into canonical ``<!-- kind: file -->`` comments."""
    out = text
    for pattern, kind in _MARKER_DIALECTS:

        def _rewrite(match: re.Match[str], kind: str = kind) -> str:
            file_name = re.sub(r"[\"']", "", match.group(1) or "").strip()
            warnings.append(f"AUTO_CORRECT: Converted <{kind}: ...> wrapper to marker for {file_name}.")
            return f"<!-- {kind}: {file_name} -->"

        out = pattern.sub(_rewrite, out)

    out = _TOOL_WRAPPER_RE.sub("", out)
    for pattern, message in _STRAY_CLOSERS:
        if pattern.search(out):
            warnings.append(message)
            out = pattern.sub("", out)
    return out


def repair_broken_closings(text: str, warnings: list[str]) -> str:
    """Close truncated operation tags such as ``</replace`` and drop a dangling ``</``."""
    out = text
    for pattern, replacement in _TRUNCATED_CLOSERS:
        out = pattern.sub(replacement, out)
    out = _DANGLING_CLOSER_RE.sub("", out)
    if out != text:
        warnings.append("AUTO_CORRECT: Repaired malformed XML closing tags in patch text.")
    return out


def normalize_model_text(text: str) -> NormalizedText:
    """Run the full normalisation pipeline over raw assistant content.

    The pipeline is idempotent: feeding its output back in yields the same
    text and no new warnings.
    """
    warnings: list[str] = []
    cleaned, thought = strip_reasoning_blocks(normalize_line_endings(text))
    cleaned = strip_wrapper_tags(cleaned)
    cleaned = normalize_tool_markers(cleaned, warnings)
    cleaned = repair_broken_closings(cleaned, warnings)
    return NormalizedText(text=cleaned, warnings=warnings, thought=thought)


def decode_escapes(text: str) -> str:
    return (
        text.replace("\\n", "\n")
        .replace("\\r", "\n")
        .replace("\\t", "\t")
        .replace('\\"', '"')
        .replace("\\\\", "\\")
    )


def _collect_strings(value: Any, out: list[str]) -> None:
    if isinstance(value, str):
        out.append(value)
    elif isinstance(value, list):
        for item in value:
            _collect_strings(item, out)
    elif isinstance(value, dict):
        for item in value.values():
            _collect_strings(item, out)


def decode_tool_text(tool_text: str) -> str:
    """Turn streamed tool-call arguments into readable text."""
    trimmed = tool_text.strip()
    if not trimmed:
        return ""
    looks_json = (trimmed.startswith("{") and trimmed.endswith("}")) or (
        trimmed.startswith("[") and trimmed.endswith("]")
    )
    if looks_json:
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError:
            parsed = None
        parts: list[str] = []
        _collect_strings(parsed, parts)
        if parts:
            return "\n".join(parts)
    if "\\n" in trimmed or '\\"' in trimmed:
        return decode_escapes(trimmed)
    return tool_text


__all__ = [
    "NormalizedText",
    "OPERATION_VOCABULARY",
    "decode_escapes",
    "decode_tool_text",
    "normalize_line_endings",
    "normalize_model_text",
    "normalize_tool_markers",
    "repair_broken_closings",
    "strip_reasoning_blocks",
    "strip_wrapper_tags",
]
