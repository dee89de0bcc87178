"""Tiered read resolution for stored media."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from lotmedia.config import ReadConfig
from lotmedia.lib import observability
from lotmedia.lib.exceptions import MediaError
from lotmedia.lib.imaging import detect_image_content_type, render_placeholder
from lotmedia.lib.storage.base import StorageBackend, StorageKey
from lotmedia.lib.storage.keys import NAMESPACES, normalize_key

logger = logging.getLogger(__name__)

SOURCE_REMOTE = "remote"
SOURCE_LOCAL = "local"
SOURCE_PLACEHOLDER = "placeholder"


@dataclass(frozen=True)
class ResolvedAsset:
    data: bytes
    content_type: str
    cache_ttl: int
    source: str

    @property
    def is_placeholder(self) -> bool:
        return self.source == SOURCE_PLACEHOLDER

    @property
    def cache_control(self) -> str:
        if self.is_placeholder:
            return f"public, max-age={self.cache_ttl}"
        return f"public, max-age={self.cache_ttl}, immutable"


def candidate_keys(key: str, legacy_folders: Sequence[str] = ()) -> list[str]:
    """Local keys that may hold *key*, most specific first.

    Covers keys written before uploads were namespaced: ``images/listings/x``
    may live at ``listings/x``, and bare filenames under the legacy folders.
    """
    normalized = normalize_key(key).rstrip("/")
    if not normalized:
        return []
    parsed = StorageKey.parse(normalized)
    candidates = [normalized]

    segments = normalized.split("/")
    if len(segments) > 1 and segments[0] in NAMESPACES:
        candidates.append("/".join(segments[1:]))

    if parsed.folder:
        last = parsed.folder.rsplit("/", 1)[-1]
        candidates.append(f"{last}/{parsed.filename}")

    for legacy in legacy_folders:
        legacy = normalize_key(legacy).strip("/")
        if not legacy:
            continue
        candidates.append(f"{legacy}/{parsed.filename}")
        candidates.append(f"{legacy}/thumbnails/{parsed.filename}")

    return list(dict.fromkeys(candidates))


class ReadResolver:
    """Resolve a key to bytes via remote store, local trees, then placeholder."""

    def __init__(
        self,
        remote: StorageBackend,
        local: StorageBackend,
        config: ReadConfig | None = None,
    ) -> None:
        self._remote = remote
        self._local = local
        self._config = config or ReadConfig()
        self._placeholder: tuple[bytes, str] | None = None

    async def resolve(self, key: str) -> ResolvedAsset:
        """Return the asset for *key*, or the placeholder. Never raises for a miss."""
        normalized = normalize_key(key).rstrip("/")
        with observability.storage_span("resolve", key=normalized) as span:
            asset = None
            if normalized:
                for tier in (self._from_remote, self._from_local):
                    try:
                        asset = await tier(normalized)
                    except Exception:
                        observability.exception(
                            "Resolving {key} failed in {tier}", key=normalized, tier=tier.__name__
                        )
                        continue
                    if asset is not None:
                        break
            if asset is None:
                asset = await self.placeholder()
            if span is not None:
                span.set_attribute("source", asset.source)
            return asset

    async def _from_remote(self, key: str) -> ResolvedAsset | None:
        if not self._remote.enabled:
            return None
        try:
            get_with_type = getattr(self._remote, "get_with_type", None)
            if get_with_type is not None:
                data, content_type = await get_with_type(key)
            else:
                data, content_type = await self._remote.get(key), None
        except MediaError as exc:
            logger.debug("Remote lookup for %s missed: %s", key, exc.message)
            return None
        return ResolvedAsset(
            data=data,
            content_type=content_type or _guess_type(key, data),
            cache_ttl=self._config.cache_ttl,
            source=SOURCE_REMOTE,
        )

    async def _from_local(self, key: str) -> ResolvedAsset | None:
        for candidate in candidate_keys(key, self._config.legacy_folders):
            try:
                data = await self._local.get(candidate)
            except (MediaError, OSError):
                continue
            return ResolvedAsset(
                data=data,
                content_type=_guess_type(candidate, data),
                cache_ttl=self._config.cache_ttl,
                source=SOURCE_LOCAL,
            )
        return None

    async def placeholder(self) -> ResolvedAsset:
        if self._placeholder is None:
            self._placeholder = await asyncio.to_thread(self._load_placeholder)
        data, content_type = self._placeholder
        return ResolvedAsset(
            data=data,
            content_type=content_type,
            cache_ttl=self._config.placeholder_ttl,
            source=SOURCE_PLACEHOLDER,
        )

    def _load_placeholder(self) -> tuple[bytes, str]:
        path = self._config.placeholder_path
        if path:
            try:
                data = Path(path).read_bytes()
                return data, _guess_type(path, data)
            except OSError:
                logger.warning("Placeholder image %s is not readable, using generated one", path)
        return render_placeholder(), "image/png"


def _guess_type(name: str, data: bytes) -> str:
    return (
        detect_image_content_type(data)
        or mimetypes.guess_type(name)[0]
        or "application/octet-stream"
    )
