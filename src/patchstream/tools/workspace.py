"""Load a project directory into a file set and write accepted changes back."""

from __future__ import annotations

import base64
import binascii
import logging
from pathlib import Path
from typing import Iterable, Mapping

from .assets import decode_asset, encode_asset, infer_mime_type, is_asset_filename, is_encoded_asset

__all__ = [
    "MAX_TEXT_FILE_BYTES",
    "SKIPPED_DIRECTORIES",
    "read_project_files",
    "write_project_files",
]

LOGGER = logging.getLogger(__name__)

# Oversized text files are not useful model context.
MAX_TEXT_FILE_BYTES = 1_000_000
SKIPPED_DIRECTORIES = frozenset({"node_modules", "dist", "build", "__pycache__"})


def _is_skipped(relative: Path, ignore: frozenset[str]) -> bool:
    if relative.as_posix() in ignore:
        return True
    return any(part.startswith(".") or part in SKIPPED_DIRECTORIES for part in relative.parts)


def read_project_files(root: Path, *, ignore: Iterable[str] = ()) -> dict[str, str]:
    """Return ``{relative_posix_path: content}`` for every project file under ``root``.

    Binary files (by extension or failed UTF-8 decoding) are stored as
    sentinel-encoded assets so they survive a round trip untouched.
    """
    ignored = frozenset(ignore)
    files: dict[str, str] = {}
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        relative = path.relative_to(root)
        if _is_skipped(relative, ignored):
            continue
        name = relative.as_posix()
        try:
            data = path.read_bytes()
        except OSError as error:
            LOGGER.warning("Skipping unreadable file %s: %s", name, error)
            continue
        if not is_asset_filename(name):
            if len(data) > MAX_TEXT_FILE_BYTES:
                LOGGER.info("Skipping oversized file %s (%d bytes)", name, len(data))
                continue
            try:
                files[name] = data.decode("utf-8")
                continue
            except UnicodeDecodeError:
                LOGGER.debug("Treating %s as binary asset", name)
        files[name] = encode_asset(
            base64.b64encode(data).decode("ascii"),
            mime=infer_mime_type(name),
            name=path.name,
            size=len(data),
        )
    return files


def write_project_files(root: Path, files: Mapping[str, str], changed: Iterable[str]) -> list[str]:
    """Write (or remove) each changed path; returns the paths actually touched on disk."""
    root_resolved = root.resolve()
    written: list[str] = []
    for name in changed:
        target = (root_resolved / name).resolve()
        try:
            target.relative_to(root_resolved)
        except ValueError:
            LOGGER.warning("Refusing to write outside the project: %s", name)
            continue
        if name not in files:
            if target.is_file():
                target.unlink()
                written.append(name)
            continue
        content = files[name]
        target.parent.mkdir(parents=True, exist_ok=True)
        if is_encoded_asset(content):
            payload = decode_asset(content)
            if payload is None:
                LOGGER.warning("Skipping malformed asset payload for %s", name)
                continue
            try:
                target.write_bytes(base64.b64decode(payload.base64))
            except (binascii.Error, ValueError):
                LOGGER.warning("Skipping undecodable asset payload for %s", name)
                continue
        else:
            target.write_text(content, encoding="utf-8")
        written.append(name)
    return written
