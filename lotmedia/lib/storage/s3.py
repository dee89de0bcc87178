"""S3-compatible remote object store backend."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from lotmedia.lib.exceptions import (
    REMOTE_ERROR_MESSAGES,
    BackendUnavailable,
    RemoteErrorKind,
    StorageNotFound,
)
from lotmedia.lib.storage.base import BackendKind, StoredObject
from lotmedia.lib.storage.keys import build_key, normalize_key

if TYPE_CHECKING:
    from lotmedia.config import S3Config

logger = logging.getLogger(__name__)

T = TypeVar("T")

# delete_objects accepts at most this many keys per request
DELETE_BATCH_SIZE = 1000

_MISSING_CODES = {"NoSuchKey", "NotFound", "404"}
_BUCKET_CODES = {"NoSuchBucket"}
_DENIED_CODES = {"AccessDenied", "AllAccessDisabled", "AccountProblem", "403"}
_CREDENTIAL_CODES = {
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "InvalidToken",
    "TokenRefreshRequired",
}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def is_missing_error(exc: BaseException) -> bool:
    return isinstance(exc, ClientError) and _error_code(exc) in _MISSING_CODES


def classify_error(exc: BaseException) -> RemoteErrorKind:
    """Map a botocore/transport exception onto a :class:`RemoteErrorKind`."""
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return RemoteErrorKind.CREDENTIALS
    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return RemoteErrorKind.NETWORK
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return RemoteErrorKind.NETWORK
    if isinstance(exc, ClientError):
        code = _error_code(exc)
        if code in _BUCKET_CODES:
            return RemoteErrorKind.BUCKET_NOT_FOUND
        if code in _DENIED_CODES:
            return RemoteErrorKind.ACCESS_DENIED
        if code in _CREDENTIAL_CODES:
            return RemoteErrorKind.CREDENTIALS
    return RemoteErrorKind.UNKNOWN


@dataclass(frozen=True)
class RemoteDiagnostics:
    enabled: bool
    reachable: bool
    bucket: str | None
    kind: RemoteErrorKind | None = None
    message: str = ""


@dataclass(frozen=True)
class PresignedUpload:
    """Signed ``PUT`` target a client can upload to directly."""

    url: str
    key: str
    bucket: str | None
    public_url: str
    expires_in: int


class RemoteObjectStore:
    """Store files in an S3-compatible bucket.

    Every failure is converted to :class:`BackendUnavailable` carrying a
    :class:`RemoteErrorKind`, except a missing key on ``get`` which raises
    :class:`StorageNotFound`.
    """

    kind = BackendKind.REMOTE

    def __init__(self, config: S3Config, session: Any = None) -> None:
        self._config = config
        if session is None and config.enabled:
            session = aioboto3.Session()
        self._session = session

    @property
    def enabled(self) -> bool:
        return self._config.enabled and self._session is not None

    @property
    def bucket(self) -> str | None:
        return self._config.bucket

    @property
    def base_url(self) -> str:
        if self._config.public_url:
            return self._config.public_url.rstrip("/")
        if self._config.endpoint_url:
            return f"{self._config.endpoint_url.rstrip('/')}/{self._config.bucket}"
        return f"https://{self._config.bucket}.s3.{self._config.region}.amazonaws.com"

    @property
    def url_bases(self) -> list[str]:
        """URL prefixes that map back to keys, most specific first."""
        prefix = self._config.prefix.rstrip("/")
        if prefix:
            return [f"{self.base_url}/{prefix}", self.base_url]
        return [self.base_url]

    def _client_kwargs(self) -> dict:
        kwargs: dict = {
            "region_name": self._config.region,
            "config": BotoConfig(
                connect_timeout=self._config.timeout,
                read_timeout=self._config.timeout,
                retries={"max_attempts": 2},
                max_pool_connections=self._config.max_pool_connections,
            ),
        }
        if self._config.endpoint_url:
            kwargs["endpoint_url"] = self._config.endpoint_url
        if self._config.access_key_id:
            kwargs["aws_access_key_id"] = self._config.access_key_id
        if self._config.secret_access_key:
            kwargs["aws_secret_access_key"] = self._config.secret_access_key
        return kwargs

    def _client(self):
        return self._session.client("s3", **self._client_kwargs())

    def _full_key(self, key: str) -> str:
        if self._config.prefix:
            return f"{self._config.prefix.rstrip('/')}/{key}"
        return key

    def _relative_key(self, full_key: str) -> str:
        prefix = self._config.prefix.rstrip("/")
        if prefix and full_key.startswith(prefix + "/"):
            return full_key[len(prefix) + 1:]
        return full_key

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise BackendUnavailable(backend=BackendKind.REMOTE.value, kind=RemoteErrorKind.DISABLED)

    async def _run(self, operation: str, key: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run *call* under the configured timeout, classifying any failure."""
        self._require_enabled()
        try:
            return await asyncio.wait_for(call(), timeout=self._config.timeout)
        except ClientError as exc:
            if is_missing_error(exc):
                raise StorageNotFound(key) from exc
            raise self._unavailable(operation, key, exc) from exc
        except Exception as exc:
            raise self._unavailable(operation, key, exc) from exc

    def _unavailable(self, operation: str, key: str, exc: BaseException) -> BackendUnavailable:
        kind = classify_error(exc)
        logger.warning(
            "S3 %s of %s in bucket %s failed (%s): %s",
            operation,
            key,
            self._config.bucket,
            kind.value,
            exc,
        )
        return BackendUnavailable(backend=BackendKind.REMOTE.value, kind=kind)

    async def put(self, key: str, data: bytes, content_type: str) -> StoredObject:
        key = normalize_key(key)
        put_kwargs: dict = {
            "Bucket": self._config.bucket,
            "Key": self._full_key(key),
            "Body": data,
            "ContentType": content_type,
        }
        if self._config.acl:
            put_kwargs["ACL"] = self._config.acl

        async def call() -> None:
            async with self._client() as s3:
                await s3.put_object(**put_kwargs)

        await self._run("put", key, call)
        return StoredObject(
            key=key,
            url=self.url_for(key),
            content_type=content_type,
            size=len(data),
            backend=BackendKind.REMOTE,
        )

    async def get(self, key: str) -> bytes:
        key = normalize_key(key)
        full_key = self._full_key(key)

        async def call() -> bytes:
            async with self._client() as s3:
                response = await s3.get_object(Bucket=self._config.bucket, Key=full_key)
                return await response["Body"].read()

        return await self._run("get", key, call)

    async def get_with_type(self, key: str) -> tuple[bytes, str | None]:
        """Like :meth:`get` but also return the stored ContentType."""
        key = normalize_key(key)
        full_key = self._full_key(key)

        async def call() -> tuple[bytes, str | None]:
            async with self._client() as s3:
                response = await s3.get_object(Bucket=self._config.bucket, Key=full_key)
                return await response["Body"].read(), response.get("ContentType")

        return await self._run("get", key, call)

    async def delete(self, key: str) -> None:
        key = normalize_key(key)
        full_key = self._full_key(key)

        async def call() -> None:
            async with self._client() as s3:
                await s3.delete_object(Bucket=self._config.bucket, Key=full_key)

        try:
            await self._run("delete", key, call)
        except StorageNotFound:
            return

    async def delete_many(self, keys: Sequence[str]) -> list[str]:
        """Delete *keys* with batched requests. Returns the keys that failed."""
        normalized = list(dict.fromkeys(normalize_key(k) for k in keys if k))
        failed: list[str] = []
        for start in range(0, len(normalized), DELETE_BATCH_SIZE):
            chunk = normalized[start:start + DELETE_BATCH_SIZE]
            objects = [{"Key": self._full_key(k)} for k in chunk]

            async def call(objects=objects) -> dict:
                async with self._client() as s3:
                    return await s3.delete_objects(
                        Bucket=self._config.bucket,
                        Delete={"Objects": objects, "Quiet": False},
                    )

            result = await self._run("delete_many", f"{len(chunk)} keys", call)
            for error in result.get("Errors", []) or []:
                if error.get("Code") in _MISSING_CODES:
                    continue
                failed.append(self._relative_key(error.get("Key", "")))
        if failed:
            logger.warning("S3 batch delete left %d of %d keys", len(failed), len(normalized))
        return failed

    async def exists(self, key: str) -> bool:
        key = normalize_key(key)
        full_key = self._full_key(key)

        async def call() -> bool:
            async with self._client() as s3:
                await s3.head_object(Bucket=self._config.bucket, Key=full_key)
                return True

        try:
            return await self._run("head", key, call)
        except StorageNotFound:
            return False

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{self._full_key(normalize_key(key))}"

    async def presigned_upload_url(
        self,
        folder: str,
        filename: str,
        content_type: str,
        *,
        expires_in: int | None = None,
    ) -> PresignedUpload:
        """Sign a ``put_object`` request so a client can upload without proxying bytes.

        The key is built from *folder* and *filename* the same way gateway
        uploads are, and the signature pins the content type.
        """
        key = str(build_key(folder, filename))
        expires_in = expires_in or self._config.presign_ttl
        params = {
            "Bucket": self._config.bucket,
            "Key": self._full_key(key),
            "ContentType": content_type,
        }

        async def call() -> str:
            async with self._client() as s3:
                return await s3.generate_presigned_url("put_object", Params=params, ExpiresIn=expires_in)

        url = await self._run("presign", key, call)
        return PresignedUpload(
            url=url,
            key=key,
            bucket=self._config.bucket,
            public_url=self.url_for(key),
            expires_in=expires_in,
        )

    async def check_connection(self) -> RemoteDiagnostics:
        """Check the bucket is reachable with ``head_bucket``."""
        if not self.enabled:
            return RemoteDiagnostics(
                enabled=False,
                reachable=False,
                bucket=self._config.bucket,
                kind=RemoteErrorKind.DISABLED,
                message=REMOTE_ERROR_MESSAGES[RemoteErrorKind.DISABLED],
            )

        async def call() -> None:
            async with self._client() as s3:
                await s3.head_bucket(Bucket=self._config.bucket)

        try:
            await self._run("head_bucket", self._config.bucket or "", call)
        except StorageNotFound:
            kind = RemoteErrorKind.BUCKET_NOT_FOUND
        except BackendUnavailable as exc:
            kind = exc.kind or RemoteErrorKind.UNKNOWN
        else:
            return RemoteDiagnostics(
                enabled=True,
                reachable=True,
                bucket=self._config.bucket,
                message="S3 connection successful",
            )
        return RemoteDiagnostics(
            enabled=True,
            reachable=False,
            bucket=self._config.bucket,
            kind=kind,
            message=REMOTE_ERROR_MESSAGES[kind],
        )

    async def close(self) -> None:
        """No persistent resources to clean up."""
