"""Locate ``find`` anchors inside source text with progressively looser matching."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable

_TRAILING_COMMENT_RE = re.compile(r"\s*//.*$")


class AnchorTier(str, Enum):
    """Matching strategy that produced an anchor decision."""

    EXACT = "exact"
    LINE = "line"
    COMMENT = "comment"


@dataclass(slots=True)
class AnchorMatch:
    """Result of locating one anchor.

    ``start`` is ``None`` unless ``occurrence_count == 1``. ``matched_text`` is
    taken from the source, not from the anchor, so indentation is preserved.
    """

    start: int | None
    matched_text: str
    occurrence_count: int
    tier: AnchorTier | None = None

    @property
    def found(self) -> bool:
        return self.occurrence_count == 1 and self.start is not None

    @property
    def ambiguous(self) -> bool:
        return self.occurrence_count > 1

    def to_dict(self) -> dict[str, object]:
        return {
            "start": self.start,
            "matched_text": self.matched_text,
            "occurrence_count": self.occurrence_count,
            "tier": self.tier.value if self.tier else None,
        }


def count_occurrences(source: str, needle: str) -> int:
    """Count non-overlapping occurrences of ``needle``."""
    if not needle:
        return 0
    return source.count(needle)


def strip_trailing_comment(line: str) -> str:
    return _TRAILING_COMMENT_RE.sub("", line).strip()


def _line_hits(
    source_lines: list[str],
    find_lines: list[str],
    key: Callable[[str], str],
) -> list[int]:
    wanted = [key(line) for line in find_lines]
    span = len(find_lines)
    hits: list[int] = []
    for index in range(len(source_lines) - span + 1):
        if all(key(source_lines[index + offset]) == wanted[offset] for offset in range(span)):
            hits.append(index)
    return hits


def _line_offset(source_lines: list[str], index: int) -> int:
    return len("\n".join(source_lines[:index])) + (1 if index > 0 else 0)


def locate_anchor(source: str, find: str) -> AnchorMatch:
    """Find ``find`` in ``source`` using the exact, line-trimmed and comment-insensitive tiers.

    The first tier with a non-zero hit count decides: one hit is a match, more
    than one is reported as ambiguous without consulting looser tiers.
    """
    exact_count = count_occurrences(source, find)
    if exact_count == 1:
        return AnchorMatch(source.index(find), find, 1, AnchorTier.EXACT)
    if exact_count > 1:
        return AnchorMatch(None, "", exact_count, AnchorTier.EXACT)

    source_lines = source.split("\n")
    find_lines = [line for line in find.split("\n") if line.strip()]
    if not find_lines:
        return AnchorMatch(None, "", 0)

    tiers: tuple[tuple[AnchorTier, Callable[[str], str]], ...] = (
        (AnchorTier.LINE, str.strip),
        (AnchorTier.COMMENT, strip_trailing_comment),
    )
    for tier, key in tiers:
        hits = _line_hits(source_lines, find_lines, key)
        if len(hits) == 1:
            index = hits[0]
            matched = "\n".join(source_lines[index : index + len(find_lines)])
            return AnchorMatch(_line_offset(source_lines, index), matched, 1, tier)
        if hits:
            return AnchorMatch(None, "", len(hits), tier)
    return AnchorMatch(None, "", 0)


def locate_line_index(source: str, find: str) -> int | None:
    """Return the source line index of the first comment-insensitive match."""
    find_lines = [line for line in find.split("\n") if line.strip()]
    if not find_lines:
        return None
    hits = _line_hits(source.split("\n"), find_lines, strip_trailing_comment)
    return hits[0] if hits else None


__all__ = [
    "AnchorMatch",
    "AnchorTier",
    "count_occurrences",
    "locate_anchor",
    "locate_line_index",
    "strip_trailing_comment",
]
