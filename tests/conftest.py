"""Shared pytest fixtures."""

import asyncio
import io
from pathlib import Path

import pytest
import yaml
from botocore.exceptions import ClientError
from PIL import Image

from lotmedia.config import (
    ImagingConfig,
    LocalStorageConfig,
    MediaConfig,
    ReadConfig,
    S3Config,
    UploadConfig,
)
from lotmedia.lib.storage.local import LocalFilesystemStore
from lotmedia.lib.storage.s3 import RemoteObjectStore


def client_error(code: str, operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeBody:
    def __init__(self, data: bytes):
        self._data = data

    async def read(self) -> bytes:
        return self._data


class FakeS3Client:
    """In-memory stand-in for an aioboto3 S3 client."""

    def __init__(self, session: "FakeS3Session"):
        self._session = session

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def put_object(self, Bucket, Key, Body, ContentType, **kwargs):
        await self._session.check("put_object", Key)
        self._session.objects[Key] = (Body, ContentType)
        self._session.put_kwargs.append(kwargs)

    async def get_object(self, Bucket, Key):
        await self._session.check("get_object", Key)
        if Key not in self._session.objects:
            raise client_error("NoSuchKey", "GetObject")
        data, content_type = self._session.objects[Key]
        return {"Body": FakeBody(data), "ContentType": content_type}

    async def delete_object(self, Bucket, Key):
        await self._session.check("delete_object", Key)
        self._session.objects.pop(Key, None)

    async def delete_objects(self, Bucket, Delete):
        await self._session.check("delete_objects", "")
        self._session.batch_sizes.append(len(Delete["Objects"]))
        deleted, errors = [], []
        for obj in Delete["Objects"]:
            key = obj["Key"]
            if key in self._session.undeletable:
                errors.append({"Key": key, "Code": "AccessDenied", "Message": "denied"})
                continue
            self._session.objects.pop(key, None)
            deleted.append({"Key": key})
        return {"Deleted": deleted, "Errors": errors}

    async def head_object(self, Bucket, Key):
        await self._session.check("head_object", Key)
        if Key not in self._session.objects:
            raise client_error("404", "HeadObject")
        return {}

    async def head_bucket(self, Bucket):
        await self._session.check("head_bucket", Bucket)
        return {}

    async def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        await self._session.check("generate_presigned_url", Params["Key"])
        self._session.presigned.append((ClientMethod, Params, ExpiresIn))
        return f"https://{Params['Bucket']}.example.test/{Params['Key']}?X-Amz-Expires={ExpiresIn}"


class FakeS3Session:
    """Session double exposing ``client("s3", ...)`` like ``aioboto3.Session``.

    ``fail_on`` makes an operation raise, optionally only for keys containing
    a substring.
    """

    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.undeletable: set[str] = set()
        self.batch_sizes: list[int] = []
        self.put_kwargs: list[dict] = []
        self.client_kwargs: dict = {}
        self.presigned: list[tuple[str, dict, int]] = []
        self._failures: list[tuple[str, BaseException, str | None]] = []
        self._delays: dict[str, float] = {}

    def client(self, service_name, **kwargs):
        self.client_kwargs = kwargs
        return FakeS3Client(self)

    def fail_on(self, operation: str, exc: BaseException, match: str | None = None) -> None:
        self._failures.append((operation, exc, match))

    def delay(self, operation: str, seconds: float) -> None:
        self._delays[operation] = seconds

    async def check(self, operation: str, key: str) -> None:
        if operation in self._delays:
            await asyncio.sleep(self._delays[operation])
        for op, exc, match in self._failures:
            if op == operation and (match is None or match in key):
                raise exc


@pytest.fixture
def fake_s3():
    return FakeS3Session()


@pytest.fixture
def make_image():
    """Factory producing encoded image bytes generated with Pillow."""

    def _make(size=(640, 480), fmt="JPEG", color=(200, 30, 30), mode="RGB") -> bytes:
        img = Image.new(mode, size, color)
        buf = io.BytesIO()
        img.save(buf, format=fmt)
        return buf.getvalue()

    return _make


@pytest.fixture
def local_roots(tmp_path) -> list[Path]:
    return [tmp_path / "public" / "uploads", tmp_path / "uploads"]


@pytest.fixture
def s3_config() -> S3Config:
    return S3Config(bucket="test-bucket", access_key_id="key", secret_access_key="secret")


@pytest.fixture
def media_config(local_roots, s3_config) -> MediaConfig:
    return MediaConfig(
        s3=s3_config,
        local=LocalStorageConfig(roots=[str(r) for r in local_roots]),
        imaging=ImagingConfig(),
        upload=UploadConfig(),
        read=ReadConfig(),
    )


@pytest.fixture
def local_store(local_roots) -> LocalFilesystemStore:
    return LocalFilesystemStore(local_roots)


@pytest.fixture
def remote_store(s3_config, fake_s3) -> RemoteObjectStore:
    return RemoteObjectStore(s3_config, session=fake_s3)


@pytest.fixture
def disabled_remote() -> RemoteObjectStore:
    return RemoteObjectStore(S3Config())


@pytest.fixture
def stored_files():
    """List every regular file under the given roots."""

    def _list(*roots: Path) -> list[Path]:
        return sorted(p for root in roots if root.exists() for p in root.rglob("*") if p.is_file())

    return _list


@pytest.fixture
def temp_app_yaml(tmp_path):
    """Create a temporary app.yaml file for testing."""
    config_path = tmp_path / "app.yaml"

    def _create_config(config: dict):
        with open(config_path, "w") as f:
            yaml.safe_dump(config, f)
        return config_path

    return _create_config


@pytest.fixture
def s3_error():
    """Factory for botocore ``ClientError`` instances with a given code."""
    return client_error
