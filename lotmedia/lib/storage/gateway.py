"""Upload orchestration: variants, backend fallback and batch atomicity.

A batch either lands completely or not at all. Callers index the returned
list positionally against their inputs, so a short list would be ambiguous.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field

from lotmedia.config import UploadConfig
from lotmedia.lib import observability
from lotmedia.lib.exceptions import (
    BackendUnavailable,
    InvalidImageData,
    InvalidInput,
    StorageNotFound,
    UploadTooLarge,
)
from lotmedia.lib.imaging import VariantGenerator, VariantSet, extension_for
from lotmedia.lib.storage.base import (
    BackendKind,
    ImageAsset,
    StorageBackend,
    StorageBackendResult,
    StorageKey,
    UploadInput,
    UploadOptions,
    UploadResult,
    Variant,
)
from lotmedia.lib.storage.keys import build_key, variant_key

logger = logging.getLogger(__name__)


def choose_backend(remote_enabled: bool, remote_result: StorageBackendResult | None) -> BackendKind:
    """Decide which backend a file's variants should be written to.

    ``remote_result`` is ``None`` before the remote store has been tried.
    """
    if not remote_enabled:
        return BackendKind.LOCAL
    if remote_result is None or remote_result.success:
        return BackendKind.REMOTE
    return BackendKind.LOCAL


def assign_primary(results: list[UploadResult], primary_index: int | None = None) -> list[UploadResult]:
    """Mark exactly one result as primary: *primary_index* if valid, else 0."""
    if not results:
        return results
    index = primary_index if primary_index is not None and 0 <= primary_index < len(results) else 0
    return [dataclasses.replace(result, is_primary=(i == index)) for i, result in enumerate(results)]


@dataclass
class _Written:
    backend: StorageBackend
    key: str


@dataclass
class _BatchLedger:
    """Every object written during one ``store`` call, for rollback."""

    entries: list[_Written] = field(default_factory=list)

    def record(self, backend: StorageBackend, key: str) -> None:
        self.entries.append(_Written(backend, key))

    def discard(self, written: list[_Written]) -> None:
        for entry in written:
            if entry in self.entries:
                self.entries.remove(entry)


class StorageGateway:
    """Single entry point for storing uploaded images."""

    def __init__(
        self,
        remote: StorageBackend,
        local: StorageBackend,
        generator: VariantGenerator | None = None,
        config: UploadConfig | None = None,
    ) -> None:
        self._remote = remote
        self._local = local
        self._generator = generator or VariantGenerator()
        self._config = config or UploadConfig()

    async def store(
        self,
        files: Sequence[UploadInput],
        folder: str,
        options: UploadOptions | None = None,
    ) -> list[UploadResult]:
        """Store a batch of uploads and return one descriptor per input, in order.

        Raises:
            InvalidInput: a file failed validation; nothing was written.
            InvalidImageData: a file could not be decoded; nothing was written.
            BackendUnavailable: a file could be written to neither backend;
                everything written for the batch has been removed again.
        """
        options = options or UploadOptions()
        self._validate(files)

        with observability.storage_span("store", folder=folder, count=len(files)):
            rendered = await self._generate_all(files, options)

            ledger = _BatchLedger()
            semaphore = asyncio.Semaphore(self._config.max_concurrency)
            tasks = [
                self._store_file(index, variants, folder, semaphore, ledger)
                for index, variants in enumerate(rendered)
            ]
            try:
                outcomes = await asyncio.gather(*tasks, return_exceptions=True)
            except asyncio.CancelledError:
                await self._rollback(ledger)
                raise

            failures = [o for o in outcomes if isinstance(o, BaseException)]
            if failures:
                await self._rollback(ledger)
                for failure in failures:
                    if not isinstance(failure, Exception):
                        raise failure
                first = failures[0]
                if isinstance(first, BackendUnavailable):
                    raise first
                raise BackendUnavailable(f"Upload failed: {first}") from first

            results = assign_primary(list(outcomes), options.primary_index)
            observability.info(
                "Stored {count} image(s) in {folder}",
                count=len(results),
                folder=folder,
            )
            return results

    def _validate(self, files: Sequence[UploadInput]) -> None:
        if not files:
            raise InvalidInput("No files provided for upload")
        if len(files) > self._config.max_files:
            raise UploadTooLarge(f"Too many files. Maximum is {self._config.max_files} files")
        for index, upload in enumerate(files):
            if not upload.content_type or upload.content_type not in self._config.allowed_types:
                raise InvalidInput(f"File {index + 1}: invalid file type {upload.content_type!r}")
            if not upload.data:
                raise InvalidInput(f"File {index + 1}: empty file")
            if len(upload.data) > self._config.max_file_size:
                raise UploadTooLarge(
                    f"File {index + 1}: size {len(upload.data)} exceeds limit {self._config.max_file_size}"
                )

    async def _generate_all(self, files: Sequence[UploadInput], options: UploadOptions) -> list[VariantSet]:
        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def generate(index: int, upload: UploadInput) -> VariantSet:
            async with semaphore:
                try:
                    return await asyncio.to_thread(
                        self._generator.generate,
                        upload.data,
                        upload.content_type,
                        preserve_original=options.preserve_original,
                        quality=options.quality,
                    )
                except InvalidImageData as exc:
                    raise InvalidImageData(f"File {index + 1}: {exc.message}", index=index) from exc

        outcomes = await asyncio.gather(
            *(generate(i, upload) for i, upload in enumerate(files)),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return outcomes

    async def _store_file(
        self,
        index: int,
        variants: VariantSet,
        folder: str,
        semaphore: asyncio.Semaphore,
        ledger: _BatchLedger,
    ) -> UploadResult:
        original = variants[Variant.ORIGINAL]
        key = build_key(folder, f"{uuid.uuid4().hex}{extension_for(original.content_type)}")

        async with semaphore:
            remote_enabled = self._remote.enabled
            backend_kind = choose_backend(remote_enabled, None)
            assets: dict[Variant, ImageAsset] | None = None

            if backend_kind is BackendKind.REMOTE:
                assets = await self._write_variants(self._remote, key, variants, ledger)
                result = StorageBackendResult(BackendKind.REMOTE, assets is not None)
                backend_kind = choose_backend(remote_enabled, result)
                if backend_kind is BackendKind.LOCAL:
                    observability.warning(
                        "Remote storage failed for file {index}, falling back to local storage",
                        index=index + 1,
                    )

            if backend_kind is BackendKind.LOCAL:
                assets = await self._write_variants(self._local, key, variants, ledger)

            if assets is None:
                raise BackendUnavailable(f"File {index + 1}: no storage backend accepted the upload")

        return self._describe(assets)

    async def _write_variants(
        self,
        backend: StorageBackend,
        key: StorageKey,
        variants: VariantSet,
        ledger: _BatchLedger,
    ) -> dict[Variant, ImageAsset] | None:
        """Write every variant to *backend*, or none of them.

        Returns ``None`` after undoing this file's writes on failure.
        """
        written: list[_Written] = []
        assets: dict[Variant, ImageAsset] = {}
        try:
            for variant, image in variants.items():
                target = variant_key(key, variant)
                stored = await backend.put(str(target), image.data, image.content_type)
                written.append(_Written(backend, stored.key))
                ledger.record(backend, stored.key)
                assets[variant] = ImageAsset(
                    key=target,
                    url=stored.url,
                    content_type=stored.content_type,
                    size_bytes=stored.size,
                    variant=variant,
                )
        except BackendUnavailable as exc:
            logger.warning("Writing %s to %s backend failed: %s", key, backend.kind.value, exc.message)
            await self._delete_quietly(written)
            ledger.discard(written)
            return None
        return assets

    @staticmethod
    def _describe(assets: dict[Variant, ImageAsset]) -> UploadResult:
        original = assets[Variant.ORIGINAL]
        thumbnail = assets.get(Variant.THUMBNAIL)
        return UploadResult(
            url=original.url,
            thumbnail_url=thumbnail.url if thumbnail else None,
            key=str(original.key),
            thumbnail_key=str(thumbnail.key) if thumbnail else None,
            size_bytes=original.size_bytes,
            content_type=original.content_type,
            variants=assets,
        )

    async def _rollback(self, ledger: _BatchLedger) -> None:
        if not ledger.entries:
            return
        observability.warning("Rolling back {count} stored object(s)", count=len(ledger.entries))
        await self._delete_quietly(list(ledger.entries))
        ledger.entries.clear()

    @staticmethod
    async def _delete_quietly(written: list[_Written]) -> None:
        for entry in written:
            try:
                await entry.backend.delete(entry.key)
            except (BackendUnavailable, StorageNotFound) as exc:
                logger.warning("Rollback could not delete %s: %s", entry.key, exc.message)
