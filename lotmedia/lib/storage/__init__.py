"""Media storage: upload gateway, tiered reads and cleanup."""

from lotmedia.lib.storage.base import (
    BackendKind,
    ImageAsset,
    StorageBackend,
    StorageKey,
    StoredObject,
    UploadInput,
    UploadOptions,
    UploadResult,
    Variant,
)
from lotmedia.lib.storage.deletion import DeletionCoordinator, DeletionReport
from lotmedia.lib.storage.gateway import StorageGateway, assign_primary, choose_backend
from lotmedia.lib.storage.keys import normalize_key
from lotmedia.lib.storage.local import LocalFilesystemStore
from lotmedia.lib.storage.manager import MediaStorage, create_media_storage
from lotmedia.lib.storage.resolver import ReadResolver, ResolvedAsset
from lotmedia.lib.storage.s3 import PresignedUpload, RemoteObjectStore

__all__ = [
    "BackendKind",
    "DeletionCoordinator",
    "DeletionReport",
    "ImageAsset",
    "LocalFilesystemStore",
    "MediaStorage",
    "PresignedUpload",
    "ReadResolver",
    "RemoteObjectStore",
    "ResolvedAsset",
    "StorageBackend",
    "StorageGateway",
    "StorageKey",
    "StoredObject",
    "UploadInput",
    "UploadOptions",
    "UploadResult",
    "Variant",
    "assign_primary",
    "choose_backend",
    "create_media_storage",
    "normalize_key",
]
