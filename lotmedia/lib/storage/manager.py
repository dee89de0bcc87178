"""Media storage wiring: builds the stores and the three public services."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from lotmedia.lib.imaging import VariantGenerator
from lotmedia.lib.storage.deletion import DeletionCoordinator
from lotmedia.lib.storage.gateway import StorageGateway
from lotmedia.lib.storage.local import LocalFilesystemStore, RootDiagnostics
from lotmedia.lib.storage.resolver import ReadResolver
from lotmedia.lib.storage.s3 import RemoteDiagnostics, RemoteObjectStore

if TYPE_CHECKING:
    from lotmedia.config import MediaConfig


@dataclass(frozen=True)
class StorageDiagnostics:
    remote: RemoteDiagnostics
    local: list[RootDiagnostics] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        """At least one tier can take writes."""
        return self.remote.reachable or any(root.writable for root in self.local)

    def as_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "remote": {
                "enabled": self.remote.enabled,
                "reachable": self.remote.reachable,
                "bucket": self.remote.bucket,
                "reason": self.remote.kind.value if self.remote.kind else None,
                "message": self.remote.message,
            },
            "local": [
                {"path": r.path, "exists": r.exists, "writable": r.writable, "error": r.error}
                for r in self.local
            ],
        }


class MediaStorage:
    """Holds the stores and exposes the gateway, resolver and deleter."""

    def __init__(self, remote: RemoteObjectStore, local: LocalFilesystemStore, config: MediaConfig) -> None:
        self.remote = remote
        self.local = local
        self.config = config
        self.gateway = StorageGateway(
            remote,
            local,
            generator=VariantGenerator(config.imaging),
            config=config.upload,
        )
        self.resolver = ReadResolver(remote, local, config.read)
        self.deleter = DeletionCoordinator(remote, local)

    async def diagnostics(self) -> StorageDiagnostics:
        return StorageDiagnostics(
            remote=await self.remote.check_connection(),
            local=await self.local.verify_roots(),
        )

    async def close(self) -> None:
        """Release resources held by backends."""
        await self.remote.close()


def create_media_storage(config: MediaConfig, *, s3_session: Any = None) -> MediaStorage:
    """Instantiate both stores and the services from configuration."""
    remote = RemoteObjectStore(config.s3, session=s3_session)
    local = LocalFilesystemStore(config.local.roots, url_prefix=config.local.url_prefix)
    return MediaStorage(remote, local, config)
