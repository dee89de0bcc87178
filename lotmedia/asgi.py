"""ASGI application factory for the media service.

The Litestar app carries the health route and the media error handler; the
``/media/`` read path is served by :class:`MediaFilesMiddleware` wrapped
around it, so reads never touch routing.
"""

from __future__ import annotations

import logging
from typing import Any

from litestar import Litestar, Request, Response, get
from litestar.status_codes import HTTP_200_OK, HTTP_503_SERVICE_UNAVAILABLE
from litestar.types import ASGIApp

from lotmedia.config import Settings, get_settings
from lotmedia.lib import observability
from lotmedia.lib.exceptions import MediaError, media_exception_handler
from lotmedia.lib.storage.manager import MediaStorage, create_media_storage
from lotmedia.middleware.media import MEDIA_PATH_PREFIX, MediaFilesMiddleware

logger = logging.getLogger(__name__)

EXCEPTION_HANDLERS: dict[type[Exception], Any] = {
    MediaError: media_exception_handler,
}


@get("/media-health")
async def media_health(request: Request) -> Response:
    """Report whether remote and local storage can take writes."""
    storage: MediaStorage = request.app.state.media_storage
    report = await storage.diagnostics()
    return Response(
        content=report.as_dict(),
        status_code=HTTP_200_OK if report.healthy else HTTP_503_SERVICE_UNAVAILABLE,
        media_type="application/json",
    )


def create_media_app(settings: Settings, storage: MediaStorage) -> Litestar:
    """Build the Litestar app around an existing :class:`MediaStorage`."""

    async def on_startup(_app: Litestar) -> None:
        for root in await storage.local.verify_roots():
            if not root.writable:
                observability.warning("Local media root {path} is not writable: {error}", path=root.path, error=root.error)
        if not storage.remote.enabled:
            logger.info("Remote object storage disabled, uploads will use local storage")

    async def on_shutdown(_app: Litestar) -> None:
        await storage.close()

    app = Litestar(
        on_startup=[on_startup],
        on_shutdown=[on_shutdown],
        route_handlers=[media_health],
        exception_handlers=EXCEPTION_HANDLERS,
        debug=settings.debug,
    )
    app.state.media_storage = storage
    return app


def create_app(settings: Settings | None = None, *, s3_session: Any = None) -> ASGIApp:
    """Create the media ASGI application from settings."""
    settings = settings or get_settings()
    observability.configure(settings)

    storage = create_media_storage(settings.media, s3_session=s3_session)
    app = create_media_app(settings, storage)

    return MediaFilesMiddleware(
        observability.instrument_app(app),
        resolver=storage.resolver,
        path_prefix=MEDIA_PATH_PREFIX,
    )
