from __future__ import annotations

from typing import Dict

from patchstream.tools.assets import (
    asset_placeholder,
    decode_asset,
    encode_asset,
    infer_mime_type,
    is_asset_filename,
    split_protocol_files,
)
from patchstream.tools.sanitize import sanitize_generated_files, to_relative_specifier
from patchstream.tools.transaction import (
    files_equal,
    get_changed_files_between,
    hash_text,
    run_patch_transaction,
)


def test_changed_files_treat_missing_as_empty() -> None:
    before = {"a.ts": "1", "b.ts": "", "c.ts": "3"}
    after = {"a.ts": "1", "c.ts": "4", "d.ts": "new"}

    assert get_changed_files_between(before, after) == ["c.ts", "d.ts"]


def test_transaction_reports_changes_without_touching_baseline() -> None:
    baseline = {"App.tsx": "old"}

    def _mutate(draft: Dict[str, str]) -> None:
        draft["App.tsx"] = "new"
        draft["extra.ts"] = "x"

    result = run_patch_transaction(baseline, _mutate)

    assert baseline == {"App.tsx": "old"}
    assert result.changed_files == ["App.tsx", "extra.ts"]
    assert result.has_real_diff
    assert result.before_hashes["App.tsx"] != result.after_hashes["App.tsx"]


def test_hash_is_stable_and_content_sensitive() -> None:
    assert hash_text("abc") == hash_text("abc")
    assert hash_text("abc") != hash_text("abd")
    assert files_equal({"a": "1"}, {"a": "1"})
    assert not files_equal({"a": "1"}, {"a": "1", "b": "2"})


def test_local_project_imports_become_relative() -> None:
    files = {
        "components/Board.tsx": "import Cell from 'local-project/components/Cell';\nexport default Cell;",
        "components/Cell.tsx": "export default function Cell() { return null; }",
        "App.tsx": "const Board = import('local-project/components/Board');",
    }

    result = sanitize_generated_files(files)

    assert result.changed
    assert result.files["components/Board.tsx"].startswith("import Cell from './Cell.tsx';")
    assert "import('./components/Board.tsx')" in result.files["App.tsx"]
    assert (
        "AUTO_FIX: Normalized import path in components/Board.tsx: "
        "local-project/components/Cell -> ./Cell.tsx"
    ) in result.warnings
    assert files["App.tsx"].startswith("const Board = import('local-project/")


def test_entry_stylesheet_is_wired_once(starter_files: Dict[str, str]) -> None:
    first = sanitize_generated_files(starter_files)
    second = sanitize_generated_files(first.files)

    assert first.files["index.tsx"].startswith("import './input.css';\n")
    assert "AUTO_FIX: Added missing input.css import to index.tsx." in first.warnings
    assert not second.changed


def test_absolute_stylesheet_import_is_rewritten(starter_files: Dict[str, str]) -> None:
    files = {**starter_files, "index.tsx": "import '/input.css';\n" + starter_files["index.tsx"]}

    result = sanitize_generated_files(files)

    assert result.files["index.tsx"].startswith("import './input.css';")
    assert result.warnings == ["AUTO_FIX: Rewrote absolute CSS import to relative in index.tsx."]


def test_relative_specifier() -> None:
    assert to_relative_specifier("a/b/c.tsx", "a/d.tsx") == "../d.tsx"
    assert to_relative_specifier("App.tsx", "components/X.tsx") == "./components/X.tsx"


def test_assets_round_trip_and_placeholder() -> None:
    encoded = encode_asset("aGVsbG8=", mime="image/png", name="logo.png", size=2048)
    payload = decode_asset(encoded)

    assert payload is not None
    assert payload.base64 == "aGVsbG8="
    assert payload.size == 2048
    assert asset_placeholder("assets/logo.png", encoded) == "[binary asset omitted: assets/logo.png | image/png | ~2KB]"
    assert decode_asset("plain text") is None
    assert infer_mime_type("Song.MP3") == "audio/mpeg"
    assert is_asset_filename("font.woff2")
    assert not is_asset_filename("App.tsx")


def test_split_protocol_files_separates_assets_and_drops_vendor_paths() -> None:
    files = {
        "App.tsx": "x",
        "assets/logo.png": encode_asset("AA==", mime="image/png"),
        "data.txt": encode_asset("AA==", mime="text/plain"),
        "assets/vendor/lib.js": "vendored",
        "node_modules/react/index.js": "lib",
    }

    protocol_files, asset_names = split_protocol_files(files)

    assert protocol_files == {"App.tsx": "x"}
    assert asset_names == ["assets/logo.png", "data.txt"]
