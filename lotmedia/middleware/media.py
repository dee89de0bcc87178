"""ASGI middleware serving stored media through the read resolver."""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import parse_qs, unquote

from litestar.types import ASGIApp, Receive, Scope, Send

from lotmedia.lib.imaging import Variant
from lotmedia.lib.storage.base import StorageKey
from lotmedia.lib.storage.keys import is_variant_key, normalize_key, variant_key

if TYPE_CHECKING:
    from lotmedia.lib.storage.resolver import ReadResolver

MEDIA_PATH_PREFIX = "/media/"


class MediaFilesMiddleware:
    """Serve ``GET``/``HEAD`` requests for ``/media/{key}``.

    Every request under the prefix is answered with 200: the resolved asset
    when one exists, otherwise the placeholder with a short cache lifetime.

    Supports ``?variant=thumbnail|medium|large`` to serve a sibling variant
    of an original key.
    """

    def __init__(self, app: ASGIApp, resolver: ReadResolver, path_prefix: str = MEDIA_PATH_PREFIX) -> None:
        self.app = app
        self._resolver = resolver
        self._prefix = path_prefix if path_prefix.endswith("/") else path_prefix + "/"

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] != "http"
            or scope.get("method", "GET") not in ("GET", "HEAD")
            or not scope["path"].startswith(self._prefix)
        ):
            await self.app(scope, receive, send)
            return

        key = normalize_key(unquote(scope["path"][len(self._prefix):]))

        qs = scope.get("query_string", b"")
        params = parse_qs(qs.decode("latin-1") if isinstance(qs, bytes) else qs)
        variant_name = params.get("variant", [None])[0]
        if variant_name and key and not is_variant_key(key):
            try:
                variant = Variant(variant_name)
            except ValueError:
                variant = Variant.ORIGINAL
            key = str(variant_key(StorageKey.parse(key), variant))

        asset = await self._resolver.resolve(key)

        await send({
            "type": "http.response.start",
            "status": 200,
            "headers": [
                (b"content-type", asset.content_type.encode()),
                (b"content-length", str(len(asset.data)).encode()),
                (b"cache-control", asset.cache_control.encode()),
                (b"x-media-source", asset.source.encode()),
            ],
        })
        body = b"" if scope.get("method") == "HEAD" else asset.data
        await send({"type": "http.response.body", "body": body})
