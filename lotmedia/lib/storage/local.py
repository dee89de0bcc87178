"""Local filesystem storage backend writing to several parallel roots."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from lotmedia.lib.exceptions import BackendUnavailable, StorageNotFound
from lotmedia.lib.storage.base import BackendKind, StoredObject
from lotmedia.lib.storage.keys import normalize_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RootDiagnostics:
    path: str
    exists: bool
    writable: bool
    error: str | None = None


class LocalFilesystemStore:
    """Store files under every configured root directory.

    A write succeeds when at least one root accepts it, so the internal tree
    and the statically served public tree can diverge only by a failed
    mirror, never by a missing original.
    """

    kind = BackendKind.LOCAL

    def __init__(self, roots: Sequence[Path | str], url_prefix: str = "/uploads") -> None:
        if not roots:
            raise ValueError("LocalFilesystemStore needs at least one root")
        self._roots = [Path(root) for root in roots]
        self._url_prefix = url_prefix.rstrip("/")

    @property
    def enabled(self) -> bool:
        return True

    @property
    def roots(self) -> list[Path]:
        return list(self._roots)

    @property
    def url_prefix(self) -> str:
        return self._url_prefix

    async def put(self, key: str, data: bytes, content_type: str) -> StoredObject:
        key = normalize_key(key)
        written = 0
        errors: list[str] = []
        for root in self._roots:
            try:
                path = self._key_to_path(root, key)
                await asyncio.to_thread(self._write_file, path, data)
                written += 1
            except (OSError, ValueError) as exc:
                logger.warning("Local write of %s under %s failed: %s", key, root, exc)
                errors.append(f"{root}: {exc}")

        if not written:
            raise BackendUnavailable(
                f"Could not write {key!r} to any local root ({'; '.join(errors)})",
                backend=BackendKind.LOCAL.value,
            )

        return StoredObject(
            key=key,
            url=self.url_for(key),
            content_type=content_type,
            size=len(data),
            backend=BackendKind.LOCAL,
        )

    async def get(self, key: str) -> bytes:
        key = normalize_key(key)
        for root in self._roots:
            try:
                path = self._key_to_path(root, key)
            except ValueError:
                break
            try:
                return await asyncio.to_thread(path.read_bytes)
            except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
                continue
        raise StorageNotFound(key)

    async def delete(self, key: str) -> None:
        key = normalize_key(key)
        errors: list[str] = []
        for root in self._roots:
            try:
                path = self._key_to_path(root, key)
                await asyncio.to_thread(self._unlink, path)
            except (OSError, ValueError) as exc:
                errors.append(f"{root}: {exc}")
        if errors:
            raise BackendUnavailable(
                f"Could not delete {key!r} locally ({'; '.join(errors)})",
                backend=BackendKind.LOCAL.value,
            )

    async def exists(self, key: str) -> bool:
        key = normalize_key(key)
        for root in self._roots:
            try:
                path = self._key_to_path(root, key)
            except ValueError:
                return False
            if await asyncio.to_thread(path.is_file):
                return True
        return False

    def url_for(self, key: str) -> str:
        return f"{self._url_prefix}/{normalize_key(key)}"

    async def verify_roots(self) -> list[RootDiagnostics]:
        """Create each root if needed and check that it is writable."""
        return [await asyncio.to_thread(self._check_root, root) for root in self._roots]

    # -- internal helpers --

    @staticmethod
    def _key_to_path(root: Path, key: str) -> Path:
        """Map a key under *root*, refusing anything that escapes it."""
        if not key or "\x00" in key or ".." in key.split("/"):
            raise ValueError(f"Invalid storage key: {key!r}")
        base = root.resolve()
        path = (base / key).resolve()
        if not path.is_relative_to(base):
            raise ValueError(f"Key {key!r} escapes storage root")
        return path

    @staticmethod
    def _write_file(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=path.suffix)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def _unlink(path: Path) -> None:
        path.unlink(missing_ok=True)

    @staticmethod
    def _check_root(root: Path) -> RootDiagnostics:
        try:
            root.mkdir(parents=True, exist_ok=True)
            marker = root / ".write-test"
            marker.write_bytes(b"ok")
            marker.unlink()
        except OSError as exc:
            return RootDiagnostics(path=str(root), exists=root.is_dir(), writable=False, error=str(exc))
        return RootDiagnostics(path=str(root), exists=True, writable=True)
