"""Ordered fallback strategies for model output that carries no markers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Mapping

from .engine import PatchResult, apply_patches
from .extractor import (
    PatchOperation,
    dedupe_operations,
    extract_first_with_loose,
    extract_inline_replace_operations,
    has_create_tag,
    has_patch_tags,
    looks_like_whole_replacement,
    render_patch_body,
    resolve_file_key,
)
from .normalizer import normalize_line_endings

PRIMARY_COMPONENT = "App.tsx"

_NAMED_FENCE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"(?:^|\n)\s*(?:[#>*-]+\s*)?(?:file(?:name)?|path)\s*:?\s*"
        r"([A-Za-z0-9_./-]+\.(?:tsx?|jsx?|css|html|json|md))\s*\n\s*```[^\n]*\n([\s\S]*?)\n```",
        re.IGNORECASE | re.MULTILINE,
    ),
    re.compile(
        r"(?:^|\n)\s*([A-Za-z0-9_./-]+\.(?:tsx?|jsx?|css|html|json|md))\s*\n\s*```[^\n]*\n([\s\S]*?)\n```",
        re.IGNORECASE | re.MULTILINE,
    ),
)
_FENCE_RE = re.compile(r"```[^\n]*\n([\s\S]*?)\n```", re.IGNORECASE | re.MULTILINE)
_RAW_APP_RE = re.compile(
    r"(?:^|\n)(import\s+React[\s\S]*?export\s+default\s+[A-Za-z0-9_]+\s*;?)(?:\n|$)", re.MULTILINE
)
_PROTOCOL_TAG_RE = re.compile(r"</?(find|with|replace|patch|tool_call|toolcall|tool|function_call)>", re.IGNORECASE)


@dataclass(slots=True)
class FallbackCandidate:
    """Edits proposed by one fallback strategy.

    An ``ambiguous`` candidate carries failures instead of edits and ends the
    chain without touching any file.
    """

    strategy: str
    edits: list[tuple[str, str]] = field(default_factory=list)
    applied_ops: int = 0
    warnings: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    hints: list[str] = field(default_factory=list)
    target_file: str = ""
    ambiguous: bool = False


FallbackStrategy = Callable[[str, Mapping[str, str]], "FallbackCandidate | None"]


@dataclass(slots=True)
class RescueTarget:
    file: str
    result: PatchResult
    score: int


@dataclass(slots=True)
class InlineRescue:
    """Result of running markerless operations against every project file."""

    operations: list[PatchOperation]
    duplicate_count: int
    targets: list[RescueTarget]

    @property
    def top(self) -> list[RescueTarget]:
        if not self.targets:
            return []
        best = self.targets[0].score
        return [target for target in self.targets if target.score == best]

    @property
    def ambiguous(self) -> bool:
        return len(self.top) > 1

    @property
    def chosen(self) -> RescueTarget | None:
        top = self.top
        return top[0] if len(top) == 1 else None

    def dedupe_warning(self) -> str | None:
        if self.duplicate_count <= 0:
            return None
        return f"AUTO_CORRECT: Deduplicated {self.duplicate_count} repeated inline patch op(s)."

    def ambiguity_failure(self) -> str:
        names = ", ".join(target.file for target in self.top)
        return f"PROTOCOL_VIOLATION: Inline patch target ambiguous ({names})."


def run_inline_rescue(text: str, files: Mapping[str, str]) -> InlineRescue:
    """Apply markerless replace operations best-effort to every file and rank the targets.

    Targets score ``applied_ops * 100`` plus one when every operation applied;
    ties are never broken by guessing.
    """
    raw_operations = extract_inline_replace_operations(text)
    operations = dedupe_operations(raw_operations)
    body = render_patch_body(operations) if operations else text

    targets: list[RescueTarget] = []
    for name, content in files.items():
        result = apply_patches(content, body, is_final=True, best_effort=True)
        if result.success and result.applied_ops > 0 and result.content != content:
            score = result.applied_ops * 100 + (1 if result.ops_count == result.applied_ops else 0)
            targets.append(RescueTarget(file=name, result=result, score=score))
    targets.sort(key=lambda target: (-target.score, target.file))
    return InlineRescue(
        operations=operations,
        duplicate_count=len(raw_operations) - len(operations),
        targets=targets,
    )


def detect_named_fence_blocks(text: str, files: Mapping[str, str]) -> list[tuple[str, str]]:
    """Find ``path`` lines immediately followed by a fenced block."""
    blocks: list[tuple[str, str]] = []
    seen: set[str] = set()
    for pattern in _NAMED_FENCE_PATTERNS:
        for match in pattern.finditer(text):
            name = resolve_file_key(match.group(1), files)
            content = normalize_line_endings(match.group(2) or "").strip()
            if not name or not content:
                continue
            key = f"{name}::{len(content)}::{match.start()}"
            if key in seen:
                continue
            seen.add(key)
            blocks.append((name, content))
    return blocks


def infer_single_fence_target(text: str, files: Mapping[str, str]) -> tuple[str, str] | None:
    """Map the largest fenced block to the project file its content most resembles."""
    best = ""
    for match in _FENCE_RE.finditer(text):
        body = normalize_line_endings(match.group(1) or "").strip()
        if len(body) > len(best):
            best = body
    if not best:
        return None

    target = ""
    if re.search(r"</?html|<!doctype", best, re.IGNORECASE):
        target = "index.html" if "index.html" in files else ""
    elif "ReactDOM.createRoot" in best:
        target = "index.tsx" if "index.tsx" in files else ""
    elif re.search(r"@tailwind\s+base;", best):
        target = "input.css" if "input.css" in files else ""
    elif re.search(r"module\.exports\s*=", best):
        target = "tailwind.config.js" if "tailwind.config.js" in files else ""
    elif re.search(r"export\s+default|React\.FC|useState\(|function\s+[A-Z]", best):
        if PRIMARY_COMPONENT in files:
            target = PRIMARY_COMPONENT
        else:
            target = next((name for name in files if name.endswith(".tsx")), "")
    if not target:
        return None
    return target, best


def infer_raw_app_tsx(text: str, files: Mapping[str, str]) -> tuple[str, str] | None:
    """Detect an unfenced, unmarked whole ``App.tsx`` inside prose."""
    if not files.get(PRIMARY_COMPONENT):
        return None
    match = _RAW_APP_RE.search(normalize_line_endings(text))
    if match is None:
        return None
    candidate = match.group(1).strip()
    if len(candidate) < 120:
        return None
    if _PROTOCOL_TAG_RE.search(candidate):
        return None
    if not re.search(r"const\s+App\b|function\s+App\b", candidate):
        return None
    if not re.search(r"return\s*\(", candidate):
        return None
    if not re.search(r"export\s+default\s+App\s*;?", candidate):
        return None
    return PRIMARY_COMPONENT, candidate


def is_inline_patch_shape(text: str) -> bool:
    """Operation tags present without a ``<create>``: a markerless in-place patch."""
    return has_patch_tags(text) and not has_create_tag(text)


def named_fence_strategy(text: str, files: Mapping[str, str]) -> FallbackCandidate | None:
    blocks = detect_named_fence_blocks(text, files)
    if not blocks:
        return None
    working = dict(files)
    changed = 0
    for name, content in blocks:
        if (working.get(name) or "") != content:
            working[name] = content
            changed += 1
    warning = (
        f"AUTO_INFER: Applied {changed} fenced filename block(s) without markers."
        if changed
        else "NO_OP: Inferred fenced blocks matched existing content."
    )
    return FallbackCandidate(strategy="named_fence_blocks", edits=blocks, warnings=[warning])


def inline_rescue_strategy(text: str, files: Mapping[str, str]) -> FallbackCandidate | None:
    if not is_inline_patch_shape(text):
        return None
    rescue = run_inline_rescue(text, files)
    if not rescue.targets:
        return None
    warnings = [warning for warning in (rescue.dedupe_warning(),) if warning]
    if rescue.ambiguous:
        return FallbackCandidate(
            strategy="inline_rescue",
            warnings=warnings,
            failures=[rescue.ambiguity_failure()],
            hints=["ambiguous_target"],
            ambiguous=True,
        )
    chosen = rescue.chosen
    assert chosen is not None
    warnings.append(f"AUTO_APPLY: Markerless inline patch applied to {chosen.file}.")
    return FallbackCandidate(
        strategy="inline_rescue",
        edits=[(chosen.file, chosen.result.content)],
        applied_ops=chosen.result.applied_ops,
        warnings=warnings,
        target_file=chosen.file,
    )


def loose_with_strategy(text: str, files: Mapping[str, str]) -> FallbackCandidate | None:
    if not is_inline_patch_shape(text) or PRIMARY_COMPONENT not in files:
        return None
    payload = extract_first_with_loose(text)
    current = files.get(PRIMARY_COMPONENT) or ""
    if not payload or not looks_like_whole_replacement(payload, current, PRIMARY_COMPONENT):
        return None
    return FallbackCandidate(
        strategy="loose_with",
        edits=[(PRIMARY_COMPONENT, payload)],
        warnings=["AUTO_INFER: Applied markerless <with> fallback to App.tsx."],
    )


def raw_full_file_strategy(text: str, files: Mapping[str, str]) -> FallbackCandidate | None:
    inferred = infer_raw_app_tsx(text, files)
    if inferred is None:
        return None
    return FallbackCandidate(
        strategy="raw_full_file",
        edits=[inferred],
        warnings=["AUTO_INFER: Applied markerless raw App.tsx content."],
    )


def largest_fence_strategy(text: str, files: Mapping[str, str]) -> FallbackCandidate | None:
    if is_inline_patch_shape(text):
        return None
    inferred = infer_single_fence_target(text, files)
    if inferred is None:
        return None
    return FallbackCandidate(
        strategy="largest_fence",
        edits=[inferred],
        warnings=[f"AUTO_INFER: Applied largest fenced block to {inferred[0]}."],
    )


FALLBACK_STRATEGIES: tuple[tuple[str, FallbackStrategy], ...] = (
    ("named_fence_blocks", named_fence_strategy),
    ("inline_rescue", inline_rescue_strategy),
    ("loose_with", loose_with_strategy),
    ("raw_full_file", raw_full_file_strategy),
    ("largest_fence", largest_fence_strategy),
)


def run_fallback_chain(
    text: str,
    files: Mapping[str, str],
    strategies: tuple[tuple[str, FallbackStrategy], ...] = FALLBACK_STRATEGIES,
) -> FallbackCandidate | None:
    """Return the first candidate produced by ``strategies`` in priority order."""
    for _, strategy in strategies:
        candidate = strategy(text, files)
        if candidate is not None:
            return candidate
    return None


def markerless_failure(text: str) -> tuple[str, str]:
    """Failure message and repair hint when no fallback produced anything."""
    if is_inline_patch_shape(text):
        return "PROTOCOL_VIOLATION: Patch blocks missing markers and no matching file.", "missing_markers"
    if has_create_tag(text):
        return "PROTOCOL_VIOLATION: Create op found but no filename marker.", "create_without_filename_marker"
    return "PROTOCOL_VIOLATION: No marker blocks found.", "no_marker_blocks"


__all__ = [
    "FALLBACK_STRATEGIES",
    "FallbackCandidate",
    "FallbackStrategy",
    "InlineRescue",
    "PRIMARY_COMPONENT",
    "RescueTarget",
    "detect_named_fence_blocks",
    "infer_raw_app_tsx",
    "infer_single_fence_target",
    "inline_rescue_strategy",
    "is_inline_patch_shape",
    "largest_fence_strategy",
    "loose_with_strategy",
    "markerless_failure",
    "named_fence_strategy",
    "raw_full_file_strategy",
    "run_fallback_chain",
    "run_inline_rescue",
]
