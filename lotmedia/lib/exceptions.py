"""Media error taxonomy and its mapping onto HTTP responses."""

from __future__ import annotations

from enum import Enum

from litestar import Request, Response
from litestar.status_codes import (
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
    HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_503_SERVICE_UNAVAILABLE,
)


class RemoteErrorKind(str, Enum):
    """Classification of remote object store failures."""

    DISABLED = "disabled"
    CREDENTIALS = "credentials"
    NETWORK = "network"
    BUCKET_NOT_FOUND = "bucket_not_found"
    ACCESS_DENIED = "access_denied"
    UNKNOWN = "unknown"


REMOTE_ERROR_MESSAGES: dict[RemoteErrorKind, str] = {
    RemoteErrorKind.DISABLED: "Remote object storage is not configured.",
    RemoteErrorKind.CREDENTIALS: (
        "Remote storage credentials are missing or invalid. "
        "Check AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY."
    ),
    RemoteErrorKind.NETWORK: (
        "Could not reach remote storage. Check network connectivity and the configured region."
    ),
    RemoteErrorKind.BUCKET_NOT_FOUND: "The configured storage bucket does not exist.",
    RemoteErrorKind.ACCESS_DENIED: "Access to the configured storage bucket was denied.",
    RemoteErrorKind.UNKNOWN: "Remote storage request failed.",
}


class MediaError(Exception):
    """Base class for all media layer errors."""

    status_code = HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or self.__class__.__name__


class InvalidInput(MediaError):
    """Upload rejected before any I/O."""

    status_code = HTTP_400_BAD_REQUEST


class UploadTooLarge(InvalidInput):
    """Upload exceeds the configured size or count limit."""

    status_code = HTTP_413_REQUEST_ENTITY_TOO_LARGE


class InvalidImageData(MediaError):
    """Uploaded bytes could not be decoded as an image."""

    status_code = HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "", *, index: int | None = None) -> None:
        super().__init__(message)
        self.index = index


class BackendUnavailable(MediaError):
    """No storage backend could complete the operation."""

    status_code = HTTP_503_SERVICE_UNAVAILABLE

    def __init__(
        self,
        message: str = "",
        *,
        backend: str | None = None,
        kind: RemoteErrorKind | None = None,
    ) -> None:
        if not message and kind is not None:
            message = REMOTE_ERROR_MESSAGES[kind]
        super().__init__(message)
        self.backend = backend
        self.kind = kind


class StorageNotFound(MediaError):
    """Requested key does not exist in the backend."""

    status_code = HTTP_404_NOT_FOUND

    def __init__(self, key: str) -> None:
        super().__init__(f"No object stored under {key!r}")
        self.key = key


class PartialCleanupFailure(MediaError):
    """A sibling variant could not be removed after its primary was."""

    def __init__(self, primary: str, failed: list[str]) -> None:
        super().__init__(f"Cleanup of {primary!r} left {len(failed)} sibling(s): {', '.join(failed)}")
        self.primary = primary
        self.failed = failed


def media_error_response(exc: MediaError) -> Response:
    """Render a media error as a JSON response."""
    content: dict = {
        "status_code": exc.status_code,
        "detail": exc.message,
        "error": exc.__class__.__name__,
    }
    if isinstance(exc, BackendUnavailable) and exc.kind is not None:
        content["reason"] = exc.kind.value
    return Response(
        content=content,
        status_code=exc.status_code,
        media_type="application/json",
    )


def media_exception_handler(request: Request, exc: MediaError) -> Response:
    """Litestar exception handler for :class:`MediaError`."""
    from lotmedia.lib import observability

    if exc.status_code >= HTTP_500_INTERNAL_SERVER_ERROR:
        observability.warning(
            "Media request failed: {method} {path}",
            method=request.method,
            path=request.url.path,
            error=exc.message,
        )
    return media_error_response(exc)
