"""Storage backend protocol and common types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, runtime_checkable

from lotmedia.lib.imaging import Variant


class BackendKind(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"


@dataclass(frozen=True)
class StorageKey:
    """Canonical folder + filename address of a stored object."""

    folder: str
    filename: str

    def __str__(self) -> str:
        from lotmedia.lib.storage.keys import normalize_key

        if not self.folder:
            return normalize_key(self.filename)
        return normalize_key(f"{self.folder}/{self.filename}")

    @classmethod
    def parse(cls, raw: str) -> StorageKey:
        """Split a rendered key into folder and filename."""
        from lotmedia.lib.storage.keys import normalize_key

        key = normalize_key(raw).rstrip("/")
        folder, _, filename = key.rpartition("/")
        return cls(folder=folder, filename=filename)


@dataclass(frozen=True)
class StoredObject:
    """Result of a single backend write."""

    key: str
    url: str
    content_type: str
    size: int
    backend: BackendKind


@dataclass(frozen=True)
class StorageBackendResult:
    """Outcome of a write attempt, used only to pick the next backend."""

    backend: BackendKind
    success: bool


@dataclass(frozen=True)
class ImageAsset:
    """One stored variant of an upload. Never mutated after writing."""

    key: StorageKey
    url: str
    content_type: str
    size_bytes: int
    variant: Variant


@dataclass(frozen=True)
class UploadInput:
    """Raw upload as handed over by the multipart layer."""

    data: bytes
    content_type: str
    filename: str = ""


@dataclass(frozen=True)
class UploadOptions:
    primary_index: int | None = None
    preserve_original: bool = False
    quality: int | None = None


@dataclass(frozen=True)
class UploadResult:
    """Descriptor returned to callers for one uploaded file."""

    url: str
    thumbnail_url: str | None
    key: str
    thumbnail_key: str | None
    size_bytes: int
    content_type: str
    is_primary: bool = False
    variants: dict[Variant, ImageAsset] = field(default_factory=dict, compare=False)


@runtime_checkable
class StorageBackend(Protocol):
    """Interface shared by the remote and local stores."""

    kind: BackendKind

    @property
    def enabled(self) -> bool:
        """Whether the backend may be called at all."""
        ...

    async def put(self, key: str, data: bytes, content_type: str) -> StoredObject:
        """Store data under the given key."""
        ...

    async def get(self, key: str) -> bytes:
        """Retrieve the raw bytes for a key."""
        ...

    async def delete(self, key: str) -> None:
        """Remove a key from storage. Missing keys are not an error."""
        ...

    async def exists(self, key: str) -> bool:
        """Check whether a key exists in storage."""
        ...

    def url_for(self, key: str) -> str:
        """Return the URL under which the key is served."""
        ...
