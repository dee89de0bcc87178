"""Observability facade wrapping Pydantic Logfire.

Every event is written to the standard ``logging`` hierarchy under
``lotmedia`` and, when logfire is installed and enabled, forwarded to logfire
as a structured event. Messages use logfire's ``{name}`` template syntax; the
stdlib record receives the rendered text.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from lotmedia.config import Settings

logger = logging.getLogger("lotmedia")

_logfire = None
_configured = False


def is_available() -> bool:
    return _logfire is not None and _configured


def configure(settings: Settings) -> None:
    """Initialize logfire from LogfireConfig settings.

    No-ops if logfire is not installed or not enabled.
    """
    global _logfire, _configured

    if settings.debug:
        logger.setLevel(logging.DEBUG)

    if not settings.logfire.enabled:
        return

    try:
        import logfire as lf
    except ImportError:
        logger.warning("logfire is enabled in configuration but not installed")
        return

    kwargs: dict[str, Any] = {
        "service_name": settings.logfire.service_name,
        "send_to_logfire": "if-token-present",
    }
    if settings.logfire.environment:
        kwargs["environment"] = settings.logfire.environment
    if settings.logfire.sample_rate != 1.0:
        kwargs["trace_sample_rate"] = settings.logfire.sample_rate
    if settings.logfire.console:
        kwargs["console"] = lf.ConsoleOptions()

    lf.configure(**kwargs)
    _logfire = lf
    _configured = True


def instrument_app(app):
    """Wrap an ASGI app with logfire instrumentation. Returns the app unchanged if unavailable."""
    if not is_available():
        return app
    return _logfire.instrument_asgi(app)


def _render(msg: str, kwargs: dict[str, Any]) -> str:
    try:
        return msg.format(**kwargs)
    except (KeyError, IndexError, ValueError):
        return msg


@contextmanager
def span(name: str, **attrs: Any):
    """Context manager that yields a logfire span, or None if unavailable."""
    if is_available():
        with _logfire.span(name, **attrs) as s:
            yield s
    else:
        yield None


@contextmanager
def storage_span(operation: str, **attrs: Any):
    """Span for a storage operation, named ``media.<operation>``."""
    logger.debug("media.%s %s", operation, attrs)
    with span(f"media.{operation}", operation=operation, **attrs) as s:
        yield s


def debug(msg: str, **kwargs: Any) -> None:
    logger.debug(_render(msg, kwargs))
    if is_available():
        _logfire.debug(msg, **kwargs)


def info(msg: str, **kwargs: Any) -> None:
    logger.info(_render(msg, kwargs))
    if is_available():
        _logfire.info(msg, **kwargs)


def warning(msg: str, **kwargs: Any) -> None:
    logger.warning(_render(msg, kwargs))
    if is_available():
        _logfire.warn(msg, **kwargs)


def error(msg: str, **kwargs: Any) -> None:
    logger.error(_render(msg, kwargs))
    if is_available():
        _logfire.error(msg, **kwargs)


def exception(msg: str, **kwargs: Any) -> bool:
    """Log the active exception with traceback. Returns True if logfire received it."""
    logger.error(_render(msg, kwargs), exc_info=True)
    if is_available():
        _logfire.exception(msg, **kwargs)
        return True
    return False
