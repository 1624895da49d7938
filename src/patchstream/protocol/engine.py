"""Apply a patch body to one file's content."""

from __future__ import annotations

import re
from dataclasses import dataclass

from .anchors import AnchorMatch, AnchorTier, locate_anchor
from .extractor import OperationType, PatchOperation, dedupe_operations, extract_operations
from .normalizer import normalize_line_endings

NO_OPS_REASON = "No valid operation segments found."
CREATE_NO_DIFF_REASON = "Create op produced no file diff."
NO_DIFF_REASON = "Patch produced no file diff."
ANCHOR_EXCERPT_CHARS = 60
NO_ANCHORS_REASON = "No anchors matched."

_COMMENT_TAIL_RE = re.compile(r"\s*//.*$")


@dataclass(slots=True)
class PatchResult:
    """Outcome of one patch batch against one file."""

    content: str
    success: bool
    reason: str = ""
    ops_count: int = 0
    applied_ops: int = 0
    no_op: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "reason": self.reason,
            "ops_count": self.ops_count,
            "applied_ops": self.applied_ops,
            "no_op": self.no_op,
        }


def anchor_excerpt(find: str) -> str:
    """First non-blank line of an anchor, trimmed for failure messages."""
    line = next((line.strip() for line in find.split("\n") if line.strip()), "")
    if len(line) > ANCHOR_EXCERPT_CHARS:
        return f"{line[:ANCHOR_EXCERPT_CHARS]}..."
    return line


def not_found_reason(index: int, find: str) -> str:
    return f'Anchor not found for op {index} ("{anchor_excerpt(find)}"); check whitespace/indentation.'


def ambiguous_reason(count: int, index: int, find: str) -> str:
    return f'Anchor found {count}x for op {index} ("{anchor_excerpt(find)}"); ambiguous.'


def carry_trailing_comments(matched_text: str, replacement: str) -> str:
    """Copy ``// comments`` from matched source lines onto replacement lines that lack one.

    Lines are paired by position among non-blank lines; when the counts differ
    the replacement is returned untouched.
    """
    source_lines = [line for line in matched_text.split("\n") if line.strip()]
    out_lines = replacement.split("\n")
    slots = [index for index, line in enumerate(out_lines) if line.strip()]
    if len(slots) != len(source_lines):
        return replacement
    for slot, source_line in zip(slots, source_lines):
        comment = _COMMENT_TAIL_RE.search(source_line)
        if comment is None or "//" in out_lines[slot]:
            continue
        out_lines[slot] = out_lines[slot].rstrip() + comment.group(0)
    return "\n".join(out_lines)


def _splice(content: str, hit: AnchorMatch, operation: PatchOperation) -> str:
    start = hit.start or 0
    end = start + len(hit.matched_text)
    replacement = operation.with_text
    if hit.tier is AnchorTier.COMMENT and operation.type is OperationType.REPLACE:
        replacement = carry_trailing_comments(hit.matched_text, replacement)

    if operation.type is OperationType.REPLACE:
        return content[:start] + replacement + content[end:]
    if operation.type is OperationType.INSERT_BEFORE:
        return content[:start] + replacement + hit.matched_text + content[end:]
    if operation.type is OperationType.INSERT_AFTER:
        return content[:start] + hit.matched_text + replacement + content[end:]
    if operation.type is OperationType.DELETE:
        return content[:start] + content[end:]
    return content


def apply_operations(
    content: str,
    operations: list[PatchOperation],
    *,
    is_final: bool,
    best_effort: bool = False,
) -> PatchResult:
    """Apply already de-duplicated operations in order against a running buffer.

    Strict mode aborts on the first failing anchor and returns ``content``
    unchanged. Best-effort mode skips failing operations and succeeds only if at
    least one operation changed the buffer.
    """
    original = normalize_line_endings(content)
    ops_count = len(operations)

    creates = [op for op in operations if op.type is OperationType.CREATE]
    if creates:
        payload = creates[-1].with_text
        if payload == original:
            if is_final:
                return PatchResult(original, False, CREATE_NO_DIFF_REASON, 1, 0, no_op=True)
            return PatchResult(original, True, "", 1, 0)
        return PatchResult(payload, True, "", 1, 1)

    if not operations:
        if is_final:
            return PatchResult(original, False, NO_OPS_REASON, 0, 0)
        return PatchResult(original, True, "", 0, 0)

    buffer = original
    applied = 0
    fail_reason = ""
    for index, operation in enumerate(operations, start=1):
        hit = locate_anchor(buffer, operation.find)
        if not hit.found:
            if hit.ambiguous:
                fail_reason = ambiguous_reason(hit.occurrence_count, index, operation.find)
            else:
                fail_reason = not_found_reason(index, operation.find)
            if best_effort:
                continue
            return PatchResult(original, False, fail_reason, ops_count, applied)

        before = buffer
        buffer = _splice(buffer, hit, operation)
        if buffer != before:
            applied += 1

    if best_effort and applied == 0:
        return PatchResult(original, False, fail_reason or NO_ANCHORS_REASON, ops_count, applied)
    if is_final and buffer == original:
        return PatchResult(original, False, NO_DIFF_REASON, ops_count, applied, no_op=True)
    return PatchResult(buffer, True, "", ops_count, applied)


def apply_patches(
    content: str,
    patch_body: str,
    *,
    is_final: bool,
    best_effort: bool = False,
) -> PatchResult:
    """Parse ``patch_body`` and apply its de-duplicated operations to ``content``."""
    operations = dedupe_operations(extract_operations(patch_body))
    return apply_operations(content, operations, is_final=is_final, best_effort=best_effort)


__all__ = [
    "ANCHOR_EXCERPT_CHARS",
    "CREATE_NO_DIFF_REASON",
    "NO_ANCHORS_REASON",
    "NO_DIFF_REASON",
    "NO_OPS_REASON",
    "PatchResult",
    "ambiguous_reason",
    "anchor_excerpt",
    "apply_operations",
    "apply_patches",
    "carry_trailing_comments",
    "not_found_reason",
]
