"""Binary asset payloads stored alongside text files in a project file set."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Mapping

ASSET_PREFIX = "__LOCALSHIP_ASSET_V1__:"

ASSET_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".webp",
        ".svg",
        ".ico",
        ".bmp",
        ".mp3",
        ".wav",
        ".ogg",
        ".flac",
        ".aac",
        ".m4a",
        ".mp4",
        ".webm",
        ".mov",
        ".glb",
        ".gltf",
        ".bin",
        ".woff",
        ".woff2",
        ".ttf",
        ".otf",
        ".pdf",
    }
)

_MIME_BY_EXTENSION: dict[str, str] = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".bmp": "image/bmp",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
    ".aac": "audio/aac",
    ".m4a": "audio/mp4",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".glb": "model/gltf-binary",
    ".gltf": "model/gltf+json",
    ".bin": "application/octet-stream",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".pdf": "application/pdf",
}

_EXCLUDED_PATH_PARTS = ("assets/vendor/", "node_modules")


@dataclass(slots=True)
class AssetPayload:
    """Decoded binary asset: metadata plus the base64 body."""

    mime: str
    base64: str
    name: str | None = None
    size: int | None = None


def file_extension(filename: str) -> str:
    name = filename.strip().replace("\\", "/")
    index = name.rfind(".")
    if index < 0:
        return ""
    return name[index:].lower()


def is_asset_filename(filename: str) -> bool:
    return file_extension(filename) in ASSET_EXTENSIONS


def infer_mime_type(filename: str) -> str:
    return _MIME_BY_EXTENSION.get(file_extension(filename), "application/octet-stream")


def is_encoded_asset(content: str) -> bool:
    return isinstance(content, str) and content.startswith(ASSET_PREFIX)


def encode_asset(base64: str, *, mime: str, name: str | None = None, size: int | None = None) -> str:
    """Wrap base64 data in the sentinel-prefixed text form used inside file sets."""
    meta = {"mime": mime or "application/octet-stream", "name": name, "size": size}
    return f"{ASSET_PREFIX}{json.dumps(meta)}\n{base64}"


def decode_asset(content: str) -> AssetPayload | None:
    """Return the decoded payload, or ``None`` when ``content`` is not a valid asset."""
    if not is_encoded_asset(content):
        return None
    line_break = content.find("\n")
    if line_break < 0:
        return None
    meta_raw = content[len(ASSET_PREFIX) : line_break].strip()
    body = content[line_break + 1 :].strip()
    if not meta_raw or not body:
        return None
    try:
        meta = json.loads(meta_raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(meta, dict):
        return None
    mime = meta.get("mime")
    name = meta.get("name")
    size = meta.get("size")
    return AssetPayload(
        mime=mime if isinstance(mime, str) and mime.strip() else "application/octet-stream",
        base64=body,
        name=name if isinstance(name, str) else None,
        size=size if isinstance(size, int) else None,
    )


def asset_placeholder(filename: str, content: str) -> str:
    """Short human-readable stand-in for an asset inside model context."""
    payload = decode_asset(content)
    if payload is None:
        return content
    mime = payload.mime or infer_mime_type(filename)
    size = payload.size if payload.size is not None else (len(payload.base64) * 3) // 4
    kilobytes = max(1, round(size / 1024))
    return f"[binary asset omitted: {filename} | {mime} | ~{kilobytes}KB]"


def is_protocol_excluded(path: str, content: str) -> bool:
    """Return True for files that never take part in edit-protocol parsing."""
    if any(part in path for part in _EXCLUDED_PATH_PARTS):
        return True
    return is_asset_filename(path) or is_encoded_asset(content)


def split_protocol_files(files: Mapping[str, str]) -> tuple[dict[str, str], list[str]]:
    """Split a file set into protocol-visible text files and asset paths.

    Vendored and ``node_modules`` paths are dropped from both results.
    """
    protocol_files: dict[str, str] = {}
    asset_names: list[str] = []
    for name, content in files.items():
        text = content or ""
        if any(part in name for part in _EXCLUDED_PATH_PARTS):
            continue
        if is_asset_filename(name) or is_encoded_asset(text):
            asset_names.append(name)
            continue
        protocol_files[name] = text
    return protocol_files, asset_names


__all__ = [
    "ASSET_EXTENSIONS",
    "ASSET_PREFIX",
    "AssetPayload",
    "asset_placeholder",
    "decode_asset",
    "encode_asset",
    "file_extension",
    "infer_mime_type",
    "is_asset_filename",
    "is_encoded_asset",
    "is_protocol_excluded",
    "split_protocol_files",
]
