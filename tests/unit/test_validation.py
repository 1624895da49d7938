from __future__ import annotations

from typing import Dict

from patchstream.validation import (
    RegexStructuralValidator,
    ValidationResult,
    compute_parser_confidence,
    is_low_confidence,
    resolve_import_to_existing_file,
    resolve_path,
    run_preview_preflight,
    validate_project,
)
from patchstream.validation.syntax import find_syntax_error, grammar_for


def test_starter_project_is_valid(starter_files: Dict[str, str]) -> None:
    result = validate_project(starter_files)

    assert result.valid, result.errors


def test_missing_mandatory_file_and_default_export(starter_files: Dict[str, str]) -> None:
    files = dict(starter_files)
    del files["input.css"]
    files["App.tsx"] = "const App = () => null;"

    result = validate_project(files)

    assert not result.valid
    assert "Missing mandatory file: input.css" in result.errors
    assert "App.tsx must contain a default export (e.g., export default App;)." in result.errors
    assert any("requires a default export in App.tsx" in error for error in result.errors)


def test_unresolved_imports_and_undeclared_jsx(starter_files: Dict[str, str]) -> None:
    files = {
        **starter_files,
        "App.tsx": (
            "import React from 'react';\nimport Board from './Board';\n\n"
            "const App = () => <Board><Cell /></Board>;\n\nexport default App;"
        ),
    }

    errors = validate_project(files).errors

    assert "App.tsx: Import not found: ./Board." in errors
    assert 'App.tsx: JSX tag <Cell> used but "Cell" is not imported or defined.' in errors
    assert not any("<Board>" in error for error in errors)


def test_local_project_import_and_node_timeout_are_rejected(starter_files: Dict[str, str]) -> None:
    files = {
        **starter_files,
        "util.ts": "import x from 'local-project/thing';\nlet t: NodeJS.Timeout;\nexport default x;",
    }

    errors = validate_project(files).errors

    assert any('Invalid import "local-project/thing"' in error for error in errors)
    assert any("Forbidden 'NodeJS.Timeout'" in error for error in errors)


def test_grid_without_height_is_flagged(starter_files: Dict[str, str]) -> None:
    files = {**starter_files, "Grid.tsx": "const Grid = () => <div className=\"grid grid-cols-3\" />;\nexport default Grid;"}

    errors = validate_project(files).errors

    assert any(error.startswith("Grid.tsx: Grid layout detected") for error in errors)


def test_syntax_check_understands_regex_strings_and_jsx_text() -> None:
    source = (
        "const re = /[(]/;\n"
        "const a = '(';\n"
        "// )\n"
        "/* ] */\n"
        "const b = `x ${ {a: 1}.a } y`;\n"
        "const el = <p>Don't panic</p>;\n"
    )

    assert find_syntax_error("App.tsx", source) is None


def test_syntax_check_reports_real_errors() -> None:
    assert find_syntax_error("App.tsx", "const x = ;") is not None
    assert find_syntax_error("App.tsx", "function f() {\n  return (1;\n}") is not None
    assert find_syntax_error("input.css", "not { code") is None


def test_plain_typescript_allows_angle_bracket_casts() -> None:
    source = "declare const value: unknown;\nconst n = <number>value;\n"

    assert grammar_for("cast.ts") == "typescript"
    assert grammar_for("Cast.TSX") == "tsx"
    assert find_syntax_error("cast.ts", source) is None


def test_regex_literal_is_not_a_syntax_error(starter_files: Dict[str, str]) -> None:
    app = starter_files["App.tsx"].replace("export default App;", "const re = /[(]/;\n\nexport default App;")

    result = validate_project({**starter_files, "App.tsx": app})

    assert result.valid, result.errors


def test_incomplete_expression_is_a_syntax_error(starter_files: Dict[str, str]) -> None:
    app = starter_files["App.tsx"].replace("export default App;", "const x = ;\n\nexport default App;")

    result = validate_project({**starter_files, "App.tsx": app})

    assert not result.valid
    assert any(error.startswith("App.tsx: Syntax error: ") for error in result.errors)


def test_import_resolution_tries_extensions_and_index_files() -> None:
    files = {"components/Button.tsx": "x", "hooks/index.ts": "y"}

    assert resolve_path("components/Panel.tsx", "../hooks") == "hooks"
    assert resolve_import_to_existing_file(files, "App.tsx", "./components/Button") == "components/Button.tsx"
    assert resolve_import_to_existing_file(files, "App.tsx", "./hooks") == "hooks/index.ts"
    assert resolve_import_to_existing_file(files, "App.tsx", "./missing") is None


def test_new_errors_ignore_baseline() -> None:
    result = ValidationResult(valid=False, errors=["a", "b"])

    assert result.new_errors(["a"]) == ["b"]


def test_custom_mandatory_files() -> None:
    validator = RegexStructuralValidator(mandatory_files=["main.ts"])

    assert validate_project({"main.ts": "export default 1;"}, validator).valid


def test_preflight_missing_entry_is_fatal() -> None:
    result = run_preview_preflight({"App.tsx": "export default App;"})

    assert not result.ok
    assert result.fatal_errors == ["No JS/TS entry file found (expected index/main in root or src)."]
    assert "missing_index_html_auto_healed" in result.warnings
    assert result.synthetic_index_html is not None
    assert "<title>Preview</title>" in result.synthetic_index_html


def test_preflight_heals_missing_root_mount(starter_files: Dict[str, str]) -> None:
    files = {**starter_files, "index.html": "<html><body class=\"x\"></body></html>"}

    result = run_preview_preflight(files)

    assert result.ok
    assert result.entry_file == "index.tsx"
    assert result.auto_healed == ["index.html#root"]
    assert '<body class="x">\n<div id="root"></div>' in (result.synthetic_index_html or "")


def test_preflight_warns_on_missing_default_export(starter_files: Dict[str, str]) -> None:
    files = {**starter_files, "App.tsx": "export const App = () => null;"}

    result = run_preview_preflight(files)

    assert result.ok
    assert "App.tsx: imported as default but no default export detected." in result.warnings


def test_confidence_combines_evidence(starter_files: Dict[str, str]) -> None:
    strong = compute_parser_confidence(
        marker_count=5,
        applied_ops=2,
        touched_files=["App.tsx"],
        failed_patches=[],
        warnings=[],
        used_fallback_stage=False,
        files=starter_files,
    )
    inferred = compute_parser_confidence(
        marker_count=0,
        applied_ops=0,
        touched_files=["App.tsx"],
        failed_patches=[],
        warnings=["AUTO_INFER: Applied markerless raw App.tsx content."],
        used_fallback_stage=True,
        files=starter_files,
    )

    assert strong == 1.0
    assert round(inferred, 2) == 0.17
    assert is_low_confidence(inferred)
    assert not is_low_confidence(0.35)
