"""Before/after bookkeeping for project file sets."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Mapping

_HASH_SEED = 2166136261
_MASK_32 = 0xFFFFFFFF


@dataclass(slots=True)
class TransactionResult:
    """Outcome of applying a mutation to a copy of a baseline file set."""

    files: dict[str, str]
    changed_files: list[str] = field(default_factory=list)
    before_hashes: dict[str, str] = field(default_factory=dict)
    after_hashes: dict[str, str] = field(default_factory=dict)

    @property
    def changed_count(self) -> int:
        return len(self.changed_files)

    @property
    def has_real_diff(self) -> bool:
        return bool(self.changed_files)

    def to_dict(self) -> dict[str, object]:
        return {
            "changed_files": list(self.changed_files),
            "changed_count": self.changed_count,
            "has_real_diff": self.has_real_diff,
            "before_hashes": dict(self.before_hashes),
            "after_hashes": dict(self.after_hashes),
        }


def hash_text(text: str) -> str:
    """Return a cheap deterministic 32-bit FNV-style hash of ``text`` as hex."""
    value = _HASH_SEED
    encoded = text.encode("utf-16-le")
    for index in range(0, len(encoded), 2):
        unit = encoded[index] | (encoded[index + 1] << 8)
        value = (value ^ unit) & _MASK_32
        value = (
            value + (value << 1) + (value << 4) + (value << 7) + (value << 8) + (value << 24)
        ) & _MASK_32
    return format(value, "x")


def hash_project_files(files: Mapping[str, str]) -> dict[str, str]:
    return {name: hash_text(str(files[name] or "")) for name in sorted(files)}


def get_changed_files_between(before: Mapping[str, str], after: Mapping[str, str]) -> list[str]:
    """Return the sorted paths whose content differs (missing counts as empty)."""
    changed = [
        key
        for key in set(before) | set(after)
        if (before.get(key) or "") != (after.get(key) or "")
    ]
    return sorted(changed)


def files_equal(left: Mapping[str, str], right: Mapping[str, str]) -> bool:
    if len(left) != len(right):
        return False
    return all(key in right and left[key] == right[key] for key in left)


def run_patch_transaction(
    baseline: Mapping[str, str],
    apply_fn: Callable[[dict[str, str]], None],
) -> TransactionResult:
    """Run ``apply_fn`` against a draft copy and report what changed."""
    before = dict(baseline)
    draft = dict(baseline)
    apply_fn(draft)
    return TransactionResult(
        files=draft,
        changed_files=get_changed_files_between(before, draft),
        before_hashes=hash_project_files(before),
        after_hashes=hash_project_files(draft),
    )


__all__ = [
    "TransactionResult",
    "files_equal",
    "get_changed_files_between",
    "hash_project_files",
    "hash_text",
    "run_patch_transaction",
]
