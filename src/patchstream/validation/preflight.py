"""Preview preflight: can a candidate file set be mounted at all."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Mapping

from .validator import resolve_import_to_existing_file

ENTRY_CANDIDATES: tuple[str, ...] = (
    "index.tsx",
    "index.jsx",
    "main.tsx",
    "main.jsx",
    "src/index.tsx",
    "src/index.jsx",
    "src/main.tsx",
    "src/main.jsx",
)
PREVIEW_TITLE = "Preview"

_ROOT_MOUNT_RE = re.compile(r"id=[\"']root[\"']")
_BODY_OPEN_RE = re.compile(r"<body[^>]*>", re.IGNORECASE)
_APP_IMPORT_RE = re.compile(r"import\s+([A-Za-z_$][\w$]*)\s+from\s+['\"]([^'\"]+)['\"]")
_DEFAULT_EXPORT_RE = re.compile(r"export\s+default\s+", re.MULTILINE)

_SYNTHETIC_INDEX_HTML = f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>{PREVIEW_TITLE}</title>
  </head>
  <body>
    <div id="root"></div>
  </body>
</html>"""


@dataclass(slots=True)
class PreflightResult:
    """Whether the preview shell can mount the candidate."""

    ok: bool
    fatal_errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    entry_file: str | None = None
    synthetic_index_html: str | None = None
    auto_healed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "fatal_errors": list(self.fatal_errors),
            "warnings": list(self.warnings),
            "entry_file": self.entry_file,
            "auto_healed": list(self.auto_healed),
        }


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def run_preview_preflight(files: Mapping[str, str]) -> PreflightResult:
    """Check for a runnable entry file and a mount point, healing the HTML shell when possible.

    A missing shell or mount point is only a warning because a synthetic shell
    can be produced; a missing entry file is fatal.
    """
    fatal_errors: list[str] = []
    warnings: list[str] = []
    auto_healed: list[str] = []

    entry_file = next(
        (name for name in ENTRY_CANDIDATES if isinstance(files.get(name), str) and files[name].strip()),
        None,
    )
    if entry_file is None:
        fatal_errors.append("No JS/TS entry file found (expected index/main in root or src).")

    synthetic_html: str | None = None
    existing_html = files.get("index.html")
    if not existing_html:
        synthetic_html = _SYNTHETIC_INDEX_HTML
        warnings.append("missing_index_html_auto_healed")
        auto_healed.append("index.html")
    elif not _ROOT_MOUNT_RE.search(existing_html):
        if "<body" in existing_html:
            synthetic_html = _BODY_OPEN_RE.sub(
                lambda match: f'{match.group(0)}\n<div id="root"></div>', existing_html, count=1
            )
        else:
            synthetic_html = (
                f'<!DOCTYPE html><html><head><meta charset="UTF-8"><title>{PREVIEW_TITLE}</title></head>'
                f'<body><div id="root"></div>{existing_html}</body></html>'
            )
        warnings.append("missing_root_mount_auto_healed")
        auto_healed.append("index.html#root")

    if entry_file is not None:
        entry_content = files.get(entry_file) or ""
        default_imports = [match.group(2) for match in _APP_IMPORT_RE.finditer(entry_content)]
        local_imports = [spec for spec in default_imports if spec.startswith(("./", "../"))]
        if not default_imports:
            warnings.append(f"{entry_file}: no default app import detected; preview may still mount.")
        elif local_imports:
            # the app component is the first local default import
            spec = local_imports[0]
            resolved = resolve_import_to_existing_file(files, entry_file, spec)
            if resolved is None:
                warnings.append(f"{entry_file}: import target not found: {spec}")
            elif not _DEFAULT_EXPORT_RE.search(files.get(resolved) or ""):
                warnings.append(f"{resolved}: imported as default but no default export detected.")

    return PreflightResult(
        ok=not fatal_errors,
        fatal_errors=_unique(fatal_errors),
        warnings=_unique(warnings),
        entry_file=entry_file,
        synthetic_index_html=synthetic_html,
        auto_healed=_unique(auto_healed),
    )


__all__ = ["ENTRY_CANDIDATES", "PreflightResult", "run_preview_preflight"]
