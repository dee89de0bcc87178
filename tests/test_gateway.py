"""Tests for the upload gateway."""

import asyncio

import pytest

from lotmedia.config import ImagingConfig, UploadConfig
from lotmedia.lib.exceptions import BackendUnavailable, InvalidImageData, InvalidInput, UploadTooLarge
from lotmedia.lib.imaging import VariantGenerator
from lotmedia.lib.storage.base import (
    BackendKind,
    StorageBackendResult,
    UploadInput,
    UploadOptions,
    UploadResult,
    Variant,
)
from lotmedia.lib.storage.gateway import StorageGateway, assign_primary, choose_backend
from lotmedia.lib.storage.local import LocalFilesystemStore
from lotmedia.lib.storage.s3 import RemoteObjectStore


class FlakyLocalStore(LocalFilesystemStore):
    """Local store whose writes start failing after ``fail_after`` puts."""

    def __init__(self, roots, fail_after: int):
        super().__init__(roots)
        self.fail_after = fail_after
        self.puts = 0

    async def put(self, key, data, content_type):
        self.puts += 1
        if self.puts > self.fail_after:
            raise BackendUnavailable("disk full", backend="local")
        return await super().put(key, data, content_type)


class FlakyRemoteStore(RemoteObjectStore):
    """Remote store whose writes start failing after ``fail_after`` puts."""

    def __init__(self, config, session, fail_after: int):
        super().__init__(config, session=session)
        self.fail_after = fail_after
        self.puts = 0

    async def put(self, key, data, content_type):
        self.puts += 1
        if self.puts > self.fail_after:
            raise BackendUnavailable("bucket quota exceeded", backend="remote")
        return await super().put(key, data, content_type)


class GatedLocalStore(LocalFilesystemStore):
    """Local store that blocks forever once ``gate_after`` puts have happened."""

    def __init__(self, roots, gate_after: int):
        super().__init__(roots)
        self.gate_after = gate_after
        self.puts = 0
        self.gate_reached = asyncio.Event()

    async def put(self, key, data, content_type):
        self.puts += 1
        if self.puts > self.gate_after:
            self.gate_reached.set()
            await asyncio.Event().wait()
        return await super().put(key, data, content_type)


@pytest.fixture
def upload(make_image):
    def _upload(**kwargs) -> UploadInput:
        fmt = kwargs.pop("fmt", "JPEG")
        content_type = {"JPEG": "image/jpeg", "PNG": "image/png"}[fmt]
        return UploadInput(data=make_image(fmt=fmt, **kwargs), content_type=content_type)

    return _upload


def _result(i: int) -> UploadResult:
    return UploadResult(
        url=f"/uploads/{i}.webp",
        thumbnail_url=None,
        key=f"{i}.webp",
        thumbnail_key=None,
        size_bytes=1,
        content_type="image/webp",
    )


class TestChooseBackend:
    """Tests for the pure backend decision."""

    def test_remote_disabled(self):
        assert choose_backend(False, None) is BackendKind.LOCAL

    def test_remote_untried(self):
        assert choose_backend(True, None) is BackendKind.REMOTE

    def test_remote_succeeded(self):
        assert choose_backend(True, StorageBackendResult(BackendKind.REMOTE, True)) is BackendKind.REMOTE

    def test_remote_failed(self):
        assert choose_backend(True, StorageBackendResult(BackendKind.REMOTE, False)) is BackendKind.LOCAL


class TestAssignPrimary:
    """Tests for assign_primary()."""

    def test_defaults_to_first(self):
        results = assign_primary([_result(i) for i in range(3)])
        assert [r.is_primary for r in results] == [True, False, False]

    def test_explicit_index(self):
        results = assign_primary([_result(i) for i in range(3)], 2)
        assert [r.is_primary for r in results] == [False, False, True]

    @pytest.mark.parametrize("index", [-1, 3, 99])
    def test_out_of_range_falls_back_to_first(self, index):
        results = assign_primary([_result(i) for i in range(3)], index)
        assert [r.is_primary for r in results] == [True, False, False]

    def test_empty(self):
        assert assign_primary([], 0) == []


class TestValidation:
    """Uploads rejected before any I/O."""

    @pytest.fixture
    def gateway(self, remote_store, local_store):
        return StorageGateway(remote_store, local_store, config=UploadConfig(max_files=2, max_file_size=50_000))

    @pytest.mark.asyncio
    async def test_empty_batch(self, gateway):
        with pytest.raises(InvalidInput):
            await gateway.store([], "listings")

    @pytest.mark.asyncio
    async def test_too_many_files(self, gateway, upload, fake_s3):
        with pytest.raises(UploadTooLarge):
            await gateway.store([upload() for _ in range(3)], "listings")
        assert fake_s3.objects == {}

    @pytest.mark.asyncio
    async def test_disallowed_type(self, gateway, upload):
        bad = UploadInput(data=upload().data, content_type="application/pdf")
        with pytest.raises(InvalidInput):
            await gateway.store([upload(), bad], "listings")

    @pytest.mark.asyncio
    async def test_oversized_file(self, gateway, fake_s3, local_roots, stored_files):
        big = UploadInput(data=b"\xff\xd8\xff" + b"0" * 60_000, content_type="image/jpeg")
        with pytest.raises(UploadTooLarge):
            await gateway.store([big], "listings")
        assert fake_s3.objects == {}
        assert stored_files(*local_roots) == []

    @pytest.mark.asyncio
    async def test_undecodable_file_aborts_batch(self, gateway, upload, fake_s3, local_roots, stored_files):
        corrupt = UploadInput(data=b"\xff\xd8\xff not really a jpeg", content_type="image/jpeg")

        with pytest.raises(InvalidImageData) as exc_info:
            await gateway.store([upload(), corrupt], "listings")

        assert exc_info.value.index == 1
        assert fake_s3.objects == {}
        assert stored_files(*local_roots) == []


class TestStore:
    """Tests for StorageGateway.store()."""

    @pytest.mark.asyncio
    async def test_stores_remotely(self, remote_store, local_store, upload, fake_s3, local_roots, stored_files):
        gateway = StorageGateway(remote_store, local_store)

        [result] = await gateway.store([upload()], "listings")

        assert result.is_primary
        assert result.key.startswith("images/listings/")
        assert result.key.endswith(".webp")
        assert result.thumbnail_key == result.key.replace("images/listings/", "images/listings/thumbnails/")
        assert result.url == f"https://test-bucket.s3.us-east-1.amazonaws.com/{result.key}"
        assert result.content_type == "image/webp"
        assert set(result.variants) == {Variant.ORIGINAL, Variant.THUMBNAIL, Variant.MEDIUM, Variant.LARGE}
        assert len(fake_s3.objects) == 4
        assert result.size_bytes == len(fake_s3.objects[result.key][0])
        assert stored_files(*local_roots) == []

    @pytest.mark.asyncio
    async def test_keys_are_unique(self, remote_store, local_store, upload):
        gateway = StorageGateway(remote_store, local_store)
        results = await gateway.store([upload(), upload()], "listings")
        assert results[0].key != results[1].key

    @pytest.mark.asyncio
    async def test_order_is_preserved(self, remote_store, local_store, make_image):
        gateway = StorageGateway(remote_store, local_store)
        files = [
            UploadInput(data=make_image(size=(100 + 200 * i, 100 + 100 * i)), content_type="image/jpeg")
            for i in range(5)
        ]

        results = await gateway.store(files, "listings", UploadOptions(preserve_original=True))

        assert [r.size_bytes for r in results] == [len(f.data) for f in files]

    @pytest.mark.asyncio
    async def test_primary_index(self, remote_store, local_store, upload):
        gateway = StorageGateway(remote_store, local_store)
        results = await gateway.store([upload() for _ in range(3)], "listings", UploadOptions(primary_index=1))
        assert [r.is_primary for r in results] == [False, True, False]

    @pytest.mark.asyncio
    async def test_preserve_original(self, remote_store, local_store, upload, fake_s3):
        gateway = StorageGateway(remote_store, local_store)
        original = upload(fmt="PNG")

        [result] = await gateway.store([original], "news", UploadOptions(preserve_original=True))

        assert result.key.startswith("images/news/")
        assert result.key.endswith(".png")
        assert result.thumbnail_url is None
        assert result.thumbnail_key is None
        assert fake_s3.objects[result.key] == (original.data, "image/png")

    @pytest.mark.asyncio
    async def test_local_only_when_remote_disabled(self, disabled_remote, local_store, upload, local_roots):
        gateway = StorageGateway(disabled_remote, local_store)

        [result] = await gateway.store([upload()], "listings")

        assert result.url == f"/uploads/{result.key}"
        assert result.thumbnail_url == f"/uploads/{result.thumbnail_key}"
        for root in local_roots:
            assert (root / result.key).is_file()
            assert (root / result.thumbnail_key).is_file()


class TestFallback:
    """Per-file fallback and batch rollback."""

    @pytest.mark.asyncio
    async def test_remote_failure_falls_back_to_local(
        self, remote_store, local_store, upload, fake_s3, s3_error, local_roots
    ):
        fake_s3.fail_on("put_object", s3_error("AccessDenied"))
        gateway = StorageGateway(remote_store, local_store)

        [result] = await gateway.store([upload()], "listings")

        assert result.url.startswith("/uploads/images/listings/")
        assert (local_roots[0] / result.key).is_file()
        assert fake_s3.objects == {}

    @pytest.mark.asyncio
    async def test_partial_remote_write_is_undone(
        self, remote_store, local_store, upload, fake_s3, s3_error, local_roots
    ):
        fake_s3.fail_on("put_object", s3_error("InternalError"), match="/thumbnails/")
        gateway = StorageGateway(remote_store, local_store)

        [result] = await gateway.store([upload()], "listings")

        assert fake_s3.objects == {}
        assert all(asset.url.startswith("/uploads/") for asset in result.variants.values())
        assert (local_roots[1] / result.thumbnail_key).is_file()

    @pytest.mark.asyncio
    async def test_both_backends_failing_raises(self, remote_store, upload, fake_s3, s3_error, tmp_path):
        blocker = tmp_path / "blocked"
        blocker.write_bytes(b"")
        fake_s3.fail_on("put_object", s3_error("AccessDenied"))
        gateway = StorageGateway(remote_store, LocalFilesystemStore([blocker / "uploads"]))

        with pytest.raises(BackendUnavailable):
            await gateway.store([upload()], "listings")
        assert fake_s3.objects == {}

    @pytest.mark.asyncio
    async def test_failed_file_rolls_back_whole_batch(self, disabled_remote, upload, local_roots, stored_files):
        local = FlakyLocalStore(local_roots, fail_after=2)
        gateway = StorageGateway(
            disabled_remote,
            local,
            generator=VariantGenerator(ImagingConfig(extra_variants=False)),
            config=UploadConfig(max_concurrency=1),
        )

        with pytest.raises(BackendUnavailable):
            await gateway.store([upload(), upload()], "listings")

        assert stored_files(*local_roots) == []

    @pytest.mark.asyncio
    async def test_cancellation_rolls_back(self, disabled_remote, upload, local_roots, stored_files):
        local = GatedLocalStore(local_roots, gate_after=2)
        gateway = StorageGateway(
            disabled_remote,
            local,
            generator=VariantGenerator(ImagingConfig(extra_variants=False)),
            config=UploadConfig(max_concurrency=1),
        )

        task = asyncio.create_task(gateway.store([upload(), upload()], "listings"))
        await asyncio.wait_for(local.gate_reached.wait(), timeout=10)
        assert stored_files(*local_roots)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert stored_files(*local_roots) == []

    @pytest.mark.asyncio
    async def test_unclassified_remote_error_falls_back_to_local(
        self, remote_store, local_store, upload, fake_s3, local_roots
    ):
        fake_s3.fail_on("put_object", RuntimeError("connection pool exploded"))
        gateway = StorageGateway(remote_store, local_store)

        [result] = await gateway.store([upload()], "listings")

        assert result.url.startswith("/uploads/images/listings/")
        assert (local_roots[0] / result.key).is_file()
        assert fake_s3.objects == {}

    @pytest.mark.asyncio
    async def test_failed_file_rolls_back_remote_writes(self, s3_config, fake_s3, upload, tmp_path):
        """Objects already committed to the bucket are removed when a later file fails."""
        blocker = tmp_path / "blocked"
        blocker.write_bytes(b"")
        remote = FlakyRemoteStore(s3_config, fake_s3, fail_after=2)
        gateway = StorageGateway(
            remote,
            LocalFilesystemStore([blocker / "uploads"]),
            generator=VariantGenerator(ImagingConfig(extra_variants=False)),
            config=UploadConfig(max_concurrency=1),
        )

        with pytest.raises(BackendUnavailable):
            await gateway.store([upload(), upload()], "listings")

        assert remote.puts >= 3
        assert fake_s3.objects == {}
