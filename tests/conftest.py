from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from patchstream.orchestrator import INITIAL_PROJECT_FILES  # noqa: E402


@pytest.fixture()
def starter_files() -> Dict[str, str]:
    """A fresh copy of the untouched starter project."""

    return dict(INITIAL_PROJECT_FILES)


@pytest.fixture()
def project_dir(tmp_path: Path, starter_files: Dict[str, str]) -> Path:
    """Starter project written to disk for CLI tests."""

    root = tmp_path / "project"
    root.mkdir()
    for name, content in starter_files.items():
        (root / name).write_text(content, encoding="utf-8")
    return root
