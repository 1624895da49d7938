"""Structural checks run against a produced project file set."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Protocol

from ..tools.assets import is_asset_filename, is_encoded_asset
from .syntax import find_syntax_error

MANDATORY_FILES: tuple[str, ...] = ("index.html", "index.tsx", "App.tsx", "input.css", "tailwind.config.js")
IMPORT_EXTENSIONS: tuple[str, ...] = (".tsx", ".ts", ".jsx", ".js", ".json", ".css", ".html")

_CODE_MODULE_RE = re.compile(r"\.(tsx?|jsx?)$", re.IGNORECASE)
_IMPORT_SPEC_RE = re.compile(r"import\s+[\s\S]*?from\s+['\"]([^'\"]+)['\"]")
_DEFAULT_IMPORT_RE = re.compile(
    r"import\s+([A-Za-z_$][\w$]*)\s*(?:,\s*{[^}]*})?\s+from\s+['\"]([^'\"]+)['\"]"
)
_DEFAULT_EXPORT_RE = re.compile(r"export\s+default\s+", re.MULTILINE)
_DEFAULT_REEXPORT_RE = re.compile(r"export\s*{\s*default\s*(?:as\s+[A-Za-z_$][\w$]*)?\s*}", re.MULTILINE)
_APP_DECL_RE = re.compile(r"(const|function|class)\s+App\b", re.MULTILINE)
_JSX_TAG_RE = re.compile(r"<([A-Z][A-Za-z0-9_]*)\b")


@dataclass(slots=True)
class ValidationResult:
    """Validity flag plus every structural error found."""

    valid: bool
    errors: list[str] = field(default_factory=list)

    def new_errors(self, baseline: Iterable[str]) -> list[str]:
        """Return errors not already present in ``baseline``."""
        known = set(baseline)
        return [error for error in self.errors if error not in known]

    def to_dict(self) -> dict[str, object]:
        return {"valid": self.valid, "errors": list(self.errors)}


class StructuralValidator(Protocol):
    """Anything that can judge a file set structurally."""

    def validate(self, files: Mapping[str, str]) -> ValidationResult:
        ...


def resolve_path(base_file: str, target_path: str) -> str:
    """Resolve a relative import specifier against the importing file's directory."""
    if not target_path.startswith("."):
        return target_path
    parts = base_file.split("/")[:-1]
    for part in target_path.split("/"):
        if part == ".":
            continue
        if part == "..":
            if parts:
                parts.pop()
        else:
            parts.append(part)
    return "/".join(parts)


def resolve_import_to_existing_file(files: Mapping[str, str], base_file: str, spec: str) -> str | None:
    """Return the project key an import resolves to, trying extensions and ``index`` files."""
    direct = resolve_path(base_file, spec)
    if files.get(direct):
        return direct
    for extension in IMPORT_EXTENSIONS:
        if files.get(f"{direct}{extension}"):
            return f"{direct}{extension}"
    for extension in IMPORT_EXTENSIONS:
        if files.get(f"{direct}/index{extension}"):
            return f"{direct}/index{extension}"
    return None


def has_default_export(content: str) -> bool:
    return bool(_DEFAULT_EXPORT_RE.search(content) or _DEFAULT_REEXPORT_RE.search(content))


class RegexStructuralValidator:
    """Pattern checks for the React/Tailwind project shape plus a real parse of each code module."""

    def __init__(self, mandatory_files: Iterable[str] = MANDATORY_FILES) -> None:
        self.mandatory_files = tuple(mandatory_files)

    def validate(self, files: Mapping[str, str]) -> ValidationResult:
        errors: list[str] = []
        for name in self.mandatory_files:
            if not files.get(name):
                errors.append(f"Missing mandatory file: {name}")

        index_html = files.get("index.html")
        if index_html and 'id="root"' not in index_html:
            errors.append('index.html must contain a <div id="root"> element.')
        index_tsx = files.get("index.tsx")
        if index_tsx and "ReactDOM.createRoot" not in index_tsx:
            errors.append("index.tsx must use ReactDOM.createRoot for React 18+ syntax.")

        input_css = files.get("input.css")
        if input_css and not all(
            directive in input_css
            for directive in ("@tailwind base;", "@tailwind components;", "@tailwind utilities;")
        ):
            errors.append("input.css must contain all three @tailwind directives (base, components, utilities).")

        app = files.get("App.tsx") or ""
        if app and not _DEFAULT_EXPORT_RE.search(app):
            errors.append("App.tsx must contain a default export (e.g., export default App;).")
        if app and "```" in app:
            errors.append("App.tsx contains markdown code fences. Return plain TSX source only.")
        if app and not _APP_DECL_RE.search(app):
            errors.append("App.tsx should define an App component before exporting it.")

        for name, content in files.items():
            text = str(content or "")
            if is_asset_filename(name) or is_encoded_asset(text):
                continue
            errors.extend(self._check_module(files, name, text))

        return ValidationResult(valid=not errors, errors=errors)

    def _check_module(self, files: Mapping[str, str], name: str, text: str) -> list[str]:
        errors: list[str] = []
        is_code = _CODE_MODULE_RE.search(name) is not None

        if is_code:
            for match in _IMPORT_SPEC_RE.finditer(text):
                spec = match.group(1)
                if spec.startswith("local-project/"):
                    errors.append(f'{name}: Invalid import "{spec}". Use relative imports like ./Component.tsx.')
                    continue
                if spec.startswith(("./", "../")) and not resolve_import_to_existing_file(files, name, spec):
                    errors.append(f"{name}: Import not found: {spec}.")

            for match in _DEFAULT_IMPORT_RE.finditer(text):
                imported, spec = match.group(1), match.group(2)
                if not spec.startswith(("./", "../")):
                    continue
                resolved = resolve_import_to_existing_file(files, name, spec)
                if not resolved or not _CODE_MODULE_RE.search(resolved):
                    continue
                if not has_default_export(files.get(resolved) or ""):
                    errors.append(
                        f'{name}: Default import "{spec}" ({imported}) requires a default export in {resolved}.'
                    )

        if name.endswith(".tsx") and ("grid-cols-" in text or "gridTemplateColumns" in text):
            has_rows = any(token in text for token in ("grid-rows-", "auto-rows-", "gridTemplateRows"))
            has_aspect = "aspect-square" in text
            has_height = any(token in text for token in ("h-", "height:", "h["))
            if not (has_rows or has_aspect or has_height):
                errors.append(
                    f"{name}: Grid layout detected without explicit rows, aspect-square, or height. "
                    "Container might be zero-height."
                )

        if is_code and "NodeJS.Timeout" in text:
            errors.append(f"{name}: Forbidden 'NodeJS.Timeout' used. Use 'ReturnType<typeof setTimeout>' instead.")

        if name.endswith(".tsx"):
            seen: list[str] = []
            for match in _JSX_TAG_RE.finditer(text):
                tag = match.group(1)
                if tag in seen:
                    continue
                seen.append(tag)
                # the name must sit inside one import clause, not anywhere after an import
                imported = re.search(rf"import\s+[^;'\"]*?\b{tag}\b[^;'\"]*?\bfrom\s", text)
                declared = re.search(rf"(const|function|class)\s+{tag}\b", text)
                if not imported and not declared:
                    errors.append(f'{name}: JSX tag <{tag}> used but "{tag}" is not imported or defined.')

        if is_code:
            problem = find_syntax_error(name, text)
            if problem:
                errors.append(f"{name}: Syntax error: {problem}")
        return errors


DEFAULT_VALIDATOR = RegexStructuralValidator()


def validate_project(files: Mapping[str, str], validator: StructuralValidator | None = None) -> ValidationResult:
    """Validate ``files`` with ``validator`` (the regex validator by default)."""
    return (validator or DEFAULT_VALIDATOR).validate(files)


__all__ = [
    "DEFAULT_VALIDATOR",
    "IMPORT_EXTENSIONS",
    "MANDATORY_FILES",
    "RegexStructuralValidator",
    "StructuralValidator",
    "ValidationResult",
    "has_default_export",
    "resolve_import_to_existing_file",
    "resolve_path",
    "validate_project",
]
