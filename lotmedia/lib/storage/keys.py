"""Canonical storage key construction and normalization.

Everything here is pure string manipulation: no I/O, and no function raises
for malformed input.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from urllib.parse import unquote, urlparse

from lotmedia.lib.storage.base import StorageKey, Variant

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")
_UNSAFE_SEGMENT_CHARS = re.compile(r"[^a-zA-Z0-9._-]")

NAMESPACES = ("images", "documents")

FOLDER_PREFIXES: dict[str, str] = {
    "listings": "images/listings",
    "news": "images/news",
    "news-gallery": "images/news/gallery",
    "dealers": "images/dealers",
    "providers": "images/providers",
    "rentals": "images/rentals",
    "trailers": "images/trailers",
    "transport": "images/transport",
    "inventory": "images/inventory",
    "avatars": "images/avatars",
    "videos": "images/videos",
    "provider-requests": "documents/provider-requests",
    "ministry-requests": "documents/ministry-requests",
}

DEFAULT_PREFIX = "images/default"

VARIANT_FOLDERS: dict[Variant, str] = {
    Variant.THUMBNAIL: "thumbnails",
    Variant.MEDIUM: "medium",
    Variant.LARGE: "large",
}

LEGACY_THUMBNAIL_SUFFIX = "-thumbnails"


def normalize_key(raw) -> str:
    """Collapse degenerate path segments in a storage key.

    ``images/images/x.jpg`` becomes ``images/x.jpg``; leading slashes, empty
    segments and ``.`` segments are dropped. A trailing slash is kept so
    prefixes stay prefixes. Idempotent.
    """
    if raw is None:
        return ""
    text = raw if isinstance(raw, str) else str(raw)
    text = text.replace("\\", "/")
    trailing = text.endswith("/")

    segments: list[str] = []
    for segment in text.split("/"):
        if segment in ("", "."):
            continue
        if segments and segments[-1] == segment:
            continue
        segments.append(segment)

    key = "/".join(segments)
    if trailing and key:
        key += "/"
    return key


def safe_filename(name: str) -> str:
    """Replace anything outside ``[A-Za-z0-9.-]`` with an underscore."""
    return _UNSAFE_FILENAME_CHARS.sub("_", name or "")


def _safe_segments(folder: str) -> list[str]:
    segments = []
    for segment in normalize_key(folder).strip("/").split("/"):
        if not segment or segment == "..":
            continue
        segments.append(_UNSAFE_SEGMENT_CHARS.sub("_", segment))
    return segments


def folder_prefix(folder: str) -> str:
    """Map a business folder name to its key namespace.

    Folders that are already namespaced (``images/...``, ``documents/...``)
    are returned normalized. ``<folder>-thumbnails`` resolves to the
    ``thumbnails`` subfolder of ``<folder>``.
    """
    segments = _safe_segments(folder)
    if not segments:
        return DEFAULT_PREFIX
    if segments[0] in NAMESPACES:
        return normalize_key("/".join(segments))

    name = "/".join(segments)
    if name in FOLDER_PREFIXES:
        return FOLDER_PREFIXES[name]
    if name.endswith(LEGACY_THUMBNAIL_SUFFIX):
        base = name[: -len(LEGACY_THUMBNAIL_SUFFIX)]
        return f"{folder_prefix(base)}/{VARIANT_FOLDERS[Variant.THUMBNAIL]}"
    return normalize_key(f"images/{name}")


def build_key(folder: str, filename: str) -> StorageKey:
    """Build the canonical key for an original upload."""
    return StorageKey(folder=folder_prefix(folder), filename=safe_filename(filename))


def variant_key(key: StorageKey, variant: Variant) -> StorageKey:
    """Key of *variant* derived from an original key."""
    if variant is Variant.ORIGINAL:
        return key
    folder = f"{key.folder}/{VARIANT_FOLDERS[variant]}" if key.folder else VARIANT_FOLDERS[variant]
    return StorageKey(folder=normalize_key(folder), filename=key.filename)


def is_variant_key(key: str) -> bool:
    """True when *key* addresses a derived variant rather than an original."""
    parsed = StorageKey.parse(key)
    if not parsed.folder:
        return False
    last = parsed.folder.rsplit("/", 1)[-1]
    return last in VARIANT_FOLDERS.values() or last.endswith(LEGACY_THUMBNAIL_SUFFIX)


def sibling_keys(key: str) -> list[str]:
    """Keys of the variants derived from the same upload as *key*.

    Only originals have siblings; a thumbnail key yields nothing.
    """
    parsed = StorageKey.parse(key)
    if not parsed.filename or not parsed.folder or is_variant_key(key):
        return []
    return [str(variant_key(parsed, variant)) for variant in VARIANT_FOLDERS]


def key_from_url(key_or_url, base_urls: Iterable[str] = ()) -> str:
    """Extract a normalized key from a key, a public URL or a local URL path."""
    if key_or_url is None:
        return ""
    text = str(key_or_url).strip()

    for base in base_urls:
        if not base:
            continue
        base = base.rstrip("/")
        if text.startswith(base + "/"):
            text = text[len(base) + 1:]
            return normalize_key(text.split("?", 1)[0])

    if text.startswith(("http://", "https://")):
        try:
            text = unquote(urlparse(text).path)
        except ValueError:
            return ""
    return normalize_key(text.split("?", 1)[0])
