"""Marker scanning and operation extraction for the edit protocol."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Sequence

from .normalizer import normalize_line_endings


class MarkerKind(str, Enum):
    """Block kinds announced by an in-stream marker."""

    FILENAME = "filename"
    PATCH = "patch"


class OperationType(str, Enum):
    """Operation vocabulary understood inside patch bodies."""

    REPLACE = "replace"
    INSERT_BEFORE = "insert_before"
    INSERT_AFTER = "insert_after"
    DELETE = "delete"
    CREATE = "create"


MARKER_RE = re.compile(r"<!--\s*(filename|patch):\s*([^\s>]+)\s*-->", re.IGNORECASE | re.MULTILINE)
PATCH_TAG_RE = re.compile(r"<(?:replace|insert_before|insert_after|delete|create)>", re.IGNORECASE)
CREATE_TAG_RE = re.compile(r"<create>", re.IGNORECASE)

_WRAPPER_RE = re.compile(
    r"<(replace|insert_before|insert_after|delete|create)>([\s\S]*?)</\1>", re.IGNORECASE
)
_REPLACE_WRAPPER_RE = re.compile(r"<replace>([\s\S]*?)</replace>", re.IGNORECASE)
_FIND_RE = re.compile(r"<find>([\s\S]*?)</find>", re.IGNORECASE)
_WITH_RE = re.compile(r"<with>([\s\S]*?)</with>", re.IGNORECASE)
_WITH_OPEN_RE = re.compile(r"<with>", re.IGNORECASE)
_WITH_CLOSE_RE = re.compile(r"</with>", re.IGNORECASE)
_SIBLING_RE = re.compile(r"<find>([\s\S]*?)</find>\s*<with>([\s\S]*?)</with>", re.IGNORECASE)
_LEADING_FENCE_RE = re.compile(r"^```[a-z]*\n", re.IGNORECASE)
_TRAILING_FENCE_RE = re.compile(r"```$")

_LANGUAGE_LABELS = frozenset(
    {"js", "ts", "tsx", "jsx", "css", "html", "json", "javascript", "typescript", "react", "xml"}
)
_SCRIPT_FULL_FILE_RE = re.compile(
    r"(export\s+default|import\s+.+from|const\s+\w+|function\s+\w+|class\s+\w+|module\.exports\s*=)"
)


@dataclass(slots=True)
class Marker:
    """A ``<!-- kind: file -->`` delimiter found in the stream."""

    kind: MarkerKind
    file: str
    stream_offset: int
    length: int

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.file}"


@dataclass(slots=True, frozen=True)
class PatchOperation:
    """One find/with instruction parsed from a patch body."""

    type: OperationType
    find: str
    with_text: str

    @property
    def identity(self) -> str:
        return f"{self.type.value}\n{self.find}\n---\n{self.with_text}"


@dataclass(slots=True)
class MarkerBlock:
    """A marker and the content of its body."""

    marker: Marker
    raw: str
    content: str
    has_fence: bool


def find_markers(text: str) -> list[Marker]:
    """Return every marker in ``text`` ordered by stream position."""
    markers = [
        Marker(
            kind=MarkerKind(match.group(1).lower()),
            file=match.group(2),
            stream_offset=match.start(),
            length=len(match.group(0)),
        )
        for match in MARKER_RE.finditer(text)
    ]
    markers.sort(key=lambda marker: marker.stream_offset)
    return markers


def extract_block_content(block_raw: str) -> str:
    """Return the first fenced block inside ``block_raw`` (unclosed fences run to the end)."""
    trimmed = block_raw.strip()
    fence_start = trimmed.find("```")
    if fence_start == -1:
        return trimmed
    after_fence = trimmed[fence_start + 3 :]
    first_newline = after_fence.find("\n")
    body_start = fence_start + 3 if first_newline == -1 else fence_start + 3 + first_newline + 1
    fence_end = trimmed.find("```", body_start)
    if fence_end == -1:
        return trimmed[body_start:].strip()
    return trimmed[body_start:fence_end].strip()


def strip_leading_language_label(content: str) -> str:
    stripped = content.strip()
    lines = stripped.split("\n")
    if len(lines) < 2:
        return stripped
    if lines[0].strip().lower() not in _LANGUAGE_LABELS:
        return stripped
    return "\n".join(lines[1:]).strip()


def slice_marker_blocks(text: str, markers: Sequence[Marker]) -> list[MarkerBlock]:
    """Cut the text between consecutive markers into per-marker bodies."""
    blocks: list[MarkerBlock] = []
    for index, marker in enumerate(markers):
        start = marker.stream_offset + marker.length
        end = markers[index + 1].stream_offset if index + 1 < len(markers) else len(text)
        raw = text[start:end].strip()
        has_fence = "```" in raw
        content = extract_block_content(raw)
        if not has_fence:
            content = strip_leading_language_label(content)
        blocks.append(MarkerBlock(marker=marker, raw=raw, content=content, has_fence=has_fence))
    return blocks


def has_patch_tags(text: str) -> bool:
    return PATCH_TAG_RE.search(text) is not None


def has_create_tag(text: str) -> bool:
    return CREATE_TAG_RE.search(text) is not None


def strip_body_fence(body: str) -> str:
    """Remove a markdown fence wrapped around a whole patch body."""
    text = normalize_line_endings(body).strip()
    text = _LEADING_FENCE_RE.sub("", text, count=1)
    text = _TRAILING_FENCE_RE.sub("", text, count=1)
    return text.strip()


def dedupe_operations(operations: Iterable[PatchOperation]) -> list[PatchOperation]:
    """Drop verbatim repeats while keeping first-seen order."""
    seen: set[str] = set()
    unique: list[PatchOperation] = []
    for operation in operations:
        if operation.identity in seen:
            continue
        seen.add(operation.identity)
        unique.append(operation)
    return unique


def extract_operations(body: str) -> list[PatchOperation]:
    """Parse typed wrapper operations, falling back to bare find/with siblings.

    The returned list is not de-duplicated.
    """
    text = strip_body_fence(body)
    operations: list[PatchOperation] = []
    for match in _WRAPPER_RE.finditer(text):
        op_type = OperationType(match.group(1).lower())
        inner = match.group(2)
        find_match = _FIND_RE.search(inner)
        with_match = _WITH_RE.search(inner)
        find_text = normalize_line_endings(find_match.group(1)) if find_match else ""
        with_text = normalize_line_endings(with_match.group(1)) if with_match else ""

        if op_type is OperationType.CREATE:
            if with_text.strip():
                operations.append(PatchOperation(op_type, "", with_text))
        elif op_type is OperationType.DELETE:
            if find_text.strip():
                operations.append(PatchOperation(op_type, find_text, ""))
        elif find_text.strip() and with_text.strip():
            operations.append(PatchOperation(op_type, find_text, with_text))

    if not operations:
        for match in _SIBLING_RE.finditer(text):
            find_text = normalize_line_endings(match.group(1))
            with_text = normalize_line_endings(match.group(2))
            if find_text.strip() and with_text.strip():
                operations.append(PatchOperation(OperationType.REPLACE, find_text, with_text))
    return operations


def extract_inline_replace_operations(text: str) -> list[PatchOperation]:
    """Collect trimmed replace operations from markerless text.

    Both ``<replace>`` wrappers and free-standing find/with siblings outside
    any wrapper are gathered, in that order.
    """
    body = strip_body_fence(text)
    operations: list[PatchOperation] = []
    wrapper_ranges: list[tuple[int, int]] = []

    for match in _REPLACE_WRAPPER_RE.finditer(body):
        wrapper_ranges.append((match.start(), match.end()))
        inner = match.group(1)
        find_match = _FIND_RE.search(inner)
        with_match = _WITH_RE.search(inner)
        find_text = normalize_line_endings(find_match.group(1)).strip() if find_match else ""
        with_text = normalize_line_endings(with_match.group(1)).strip() if with_match else ""
        if find_text and with_text:
            operations.append(PatchOperation(OperationType.REPLACE, find_text, with_text))

    for match in _SIBLING_RE.finditer(body):
        position = match.start()
        if any(start <= position < end for start, end in wrapper_ranges):
            continue
        find_text = normalize_line_endings(match.group(1)).strip()
        with_text = normalize_line_endings(match.group(2)).strip()
        if find_text and with_text:
            operations.append(PatchOperation(OperationType.REPLACE, find_text, with_text))
    return operations


def render_patch_body(operations: Sequence[PatchOperation]) -> str:
    """Serialise replace operations back into canonical patch-body text."""
    return "\n\n".join(
        f"<replace>\n<find>\n{op.find}\n</find>\n<with>\n{op.with_text}\n</with>\n</replace>"
        for op in operations
    )


def extract_first_with(text: str) -> str:
    match = _WITH_RE.search(text)
    if not match:
        return ""
    return normalize_line_endings(match.group(1)).strip()


def extract_first_with_loose(text: str) -> str:
    """Like :func:`extract_first_with` but tolerates a missing ``</with>``."""
    strict = extract_first_with(text)
    if strict:
        return strict
    opening = _WITH_OPEN_RE.search(text)
    if not opening:
        return ""
    tail = text[opening.end() :]
    closing = _WITH_CLOSE_RE.search(tail)
    body = tail if not closing else tail[: closing.start()]
    return normalize_line_endings(body).strip()


def extract_first_find(text: str) -> str:
    match = _FIND_RE.search(text or "")
    return match.group(1).strip() if match else ""


def looks_like_full_file(content: str, filename: str) -> bool:
    """Heuristically decide whether ``content`` is a whole file for ``filename``."""
    text = content.strip()
    lower = filename.lower()
    if len(text) < 12:
        return False
    if lower.endswith(".html"):
        return re.search(r"<!doctype|<html", text, re.IGNORECASE) is not None
    if lower.endswith(".css"):
        return re.search(r"@tailwind|:root|body\s*\{", text, re.IGNORECASE) is not None
    if lower.endswith(".json"):
        return text.startswith("{") or text.startswith("[")
    if lower.endswith("tailwind.config.js"):
        return re.search(r"module\.exports\s*=", text) is not None
    if lower.endswith((".js", ".ts", ".tsx", ".jsx")):
        return _SCRIPT_FULL_FILE_RE.search(text) is not None
    return True


def _non_blank_lines(text: str) -> int:
    return sum(1 for line in text.split("\n") if line.strip())


def looks_like_whole_replacement(payload: str, current: str, filename: str) -> bool:
    """Decide whether a stray ``<with>`` payload can stand in for the whole file.

    Besides :func:`looks_like_full_file`, the payload must carry at least half
    as many non-blank lines as the current content.
    """
    if not looks_like_full_file(payload, filename):
        return False
    current_lines = _non_blank_lines(current)
    if current_lines == 0:
        return True
    return _non_blank_lines(payload) * 2 >= current_lines


def resolve_file_key(file_raw: str, files: Mapping[str, str]) -> str:
    """Map a model-written path onto an existing project key where possible."""
    candidate = file_raw.strip()
    candidate = re.sub(r"^[\"']|[\"']$", "", candidate)
    candidate = re.sub(r"^\./+", "", candidate)
    candidate = candidate.replace("\\", "/")

    if candidate in files:
        return candidate
    has_src_root = any(key.startswith("src/") for key in files)
    if candidate.startswith("src/"):
        alternative = candidate[len("src/") :]
        if alternative in files or not has_src_root:
            return alternative
    lowered = candidate.lower()
    for key in files:
        if key.lower() == lowered:
            return key
    return candidate


__all__ = [
    "CREATE_TAG_RE",
    "MARKER_RE",
    "Marker",
    "MarkerBlock",
    "MarkerKind",
    "OperationType",
    "PATCH_TAG_RE",
    "PatchOperation",
    "dedupe_operations",
    "extract_block_content",
    "extract_first_find",
    "extract_first_with",
    "extract_first_with_loose",
    "extract_inline_replace_operations",
    "extract_operations",
    "find_markers",
    "has_create_tag",
    "has_patch_tags",
    "looks_like_full_file",
    "looks_like_whole_replacement",
    "render_patch_body",
    "resolve_file_key",
    "slice_marker_blocks",
    "strip_body_fence",
    "strip_leading_language_label",
]
