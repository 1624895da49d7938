"""Local fix-ups applied to candidate file sets before they are scored."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Mapping

LOCAL_PROJECT_PREFIX = "local-project/"
_RESOLVE_EXTENSIONS: tuple[str, ...] = (".tsx", ".ts", ".jsx", ".js", ".css", ".json", ".html")
_SCRIPT_RE = re.compile(r"\.(tsx|ts|jsx|js)$", re.IGNORECASE)

_FROM_IMPORT_RE = re.compile(r"from\s+(['\"])(local-project/[^'\"]+)\1")
_SIDE_EFFECT_IMPORT_RE = re.compile(r"import\s+(['\"])(local-project/[^'\"]+)\1")
_DYNAMIC_IMPORT_RE = re.compile(r"import\(\s*(['\"])(local-project/[^'\"]+)\1\s*\)")
_ABSOLUTE_CSS_IMPORT_RE = re.compile(r"import\s+(['\"])/input\.css\1;?")
_CSS_IMPORT_RE = re.compile(r"(^|\n)\s*import\s+['\"][^'\"]*input\.css['\"];?", re.MULTILINE)


@dataclass(slots=True)
class SanitizeResult:
    files: dict[str, str]
    warnings: list[str] = field(default_factory=list)
    changed: bool = False


def _dirname(path: str) -> str:
    return "/".join(path.split("/")[:-1])


def to_relative_specifier(from_file: str, to_file: str) -> str:
    """Build a ``./``/``../`` import specifier from one project file to another."""
    from_parts = [part for part in _dirname(from_file).split("/") if part]
    to_parts = [part for part in to_file.split("/") if part]
    common = 0
    while common < len(from_parts) and common < len(to_parts) and from_parts[common] == to_parts[common]:
        common += 1
    relative = "/".join([".."] * (len(from_parts) - common) + to_parts[common:])
    if not relative:
        return "./"
    return relative if relative.startswith(".") else f"./{relative}"


def resolve_local_project_target(files: Mapping[str, str], spec: str) -> str:
    """Map a ``local-project/...`` specifier onto an existing project path."""
    normalized = re.sub(r"^/+", "", re.sub(r"^local-project/", "", spec))
    if normalized in files:
        return normalized
    for extension in _RESOLVE_EXTENSIONS:
        if f"{normalized}{extension}" in files:
            return f"{normalized}{extension}"
    for extension in _RESOLVE_EXTENSIONS:
        if f"{normalized}/index{extension}" in files:
            return f"{normalized}/index{extension}"
    return normalized


_IMPORT_REWRITES: tuple[tuple[re.Pattern[str], str, str], ...] = (
    (_FROM_IMPORT_RE, "import path", "from {quote}{spec}{quote}"),
    (_SIDE_EFFECT_IMPORT_RE, "side-effect import", "import {quote}{spec}{quote}"),
    (_DYNAMIC_IMPORT_RE, "dynamic import", "import({quote}{spec}{quote})"),
)


def _rewrite_local_imports(name: str, content: str, files: Mapping[str, str], warnings: list[str]) -> str:
    updated = content
    for pattern, label, template in _IMPORT_REWRITES:

        def _replace(match: re.Match[str], label: str = label, template: str = template) -> str:
            quote, spec = match.group(1), match.group(2)
            fixed = to_relative_specifier(name, resolve_local_project_target(files, spec))
            if fixed != spec:
                warnings.append(f"AUTO_FIX: Normalized {label} in {name}: {spec} -> {fixed}")
            return template.format(quote=quote, spec=fixed)

        updated = pattern.sub(_replace, updated)
    return updated


def _wire_entry_stylesheet(content: str, files: Mapping[str, str], warnings: list[str]) -> str:
    updated = _ABSOLUTE_CSS_IMPORT_RE.sub("import './input.css';", content)
    if updated != content:
        warnings.append("AUTO_FIX: Rewrote absolute CSS import to relative in index.tsx.")
    if not _CSS_IMPORT_RE.search(updated) and files.get("input.css"):
        updated = f"import './input.css';\n{updated}"
        warnings.append("AUTO_FIX: Added missing input.css import to index.tsx.")
    return updated


def sanitize_generated_files(files: Mapping[str, str]) -> SanitizeResult:
    """Rewrite ``local-project/`` imports to relative ones and wire ``input.css`` into ``index.tsx``."""
    next_files = dict(files)
    warnings: list[str] = []
    for name, content in list(next_files.items()):
        if not _SCRIPT_RE.search(name):
            continue
        updated = _rewrite_local_imports(name, content, next_files, warnings)
        if name == "index.tsx":
            updated = _wire_entry_stylesheet(updated, next_files, warnings)
        if updated != content:
            next_files[name] = updated
    return SanitizeResult(files=next_files, warnings=list(dict.fromkeys(warnings)), changed=bool(warnings))


__all__ = [
    "LOCAL_PROJECT_PREFIX",
    "SanitizeResult",
    "resolve_local_project_target",
    "sanitize_generated_files",
    "to_relative_specifier",
]
