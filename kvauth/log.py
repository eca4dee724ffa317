"""Logging utilities for kvauth.

Modules log through children of the ``kvauth`` logger
(``kvauth.kv``, ``kvauth.auth``, ``kvauth.credentials``). Recoverable
failures are logged as warnings instead of being raised.
"""

from __future__ import annotations

import logging
import sys

from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


if TYPE_CHECKING:
    from .config import LogSettings


class _LoggerHolder:
    """Holder for the package logger instance."""

    instance: logging.Logger | None = None


def get_logger() -> logging.Logger:
    """Get the kvauth logger instance.

    Returns
    -------
    logging.Logger
        The ``kvauth`` logger configured with a stream handler.
    """
    if _LoggerHolder.instance is None:
        logger = logging.getLogger("kvauth")
        logger.setLevel(logging.WARNING)

        # Only add handler if none exists
        if not logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setLevel(logging.DEBUG)
            handler.setFormatter(logging.Formatter("%(name)s - %(levelname)s - %(message)s"))
            logger.addHandler(handler)

        _LoggerHolder.instance = logger

    return _LoggerHolder.instance


def set_level(level: int | str) -> None:
    """Set the logging level.

    Parameters
    ----------
    level : int or str
        The logging level (e.g., logging.DEBUG, "DEBUG").
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    get_logger().setLevel(level)


def configure(settings: LogSettings) -> logging.Logger:
    """Apply level and format from settings to the kvauth logger.

    Parameters
    ----------
    settings : LogSettings
        Logging section of the application settings.

    Returns
    -------
    logging.Logger
        The configured logger.
    """
    logger = get_logger()
    set_level(settings.level)
    formatter = logging.Formatter(settings.format)
    for handler in logger.handlers:
        handler.setFormatter(formatter)
    return logger


# Keys that should be redacted in log output for security
_SENSITIVE_KEYS = frozenset(
    {
        "secret",
        "password",
        "token",
        "code",
        "verifier",
        "state",
        "credential",
        "client_info",
        "key",
    }
)

_REDACTED = "[REDACTED]"


def _is_sensitive(name: Any) -> bool:
    lowered = name.lower() if isinstance(name, str) else str(name).lower()
    return any(sensitive in lowered for sensitive in _SENSITIVE_KEYS)


def redact_sensitive_data(
    data: dict[str, Any] | list[Any] | str | None, max_depth: int = 5
) -> dict[str, Any] | list[Any] | str | None:
    """Redact sensitive values from data for safe logging.

    Recursively traverses dicts/lists and replaces values for keys
    that match sensitive patterns with "[REDACTED]".

    Parameters
    ----------
    data : dict or list or str or None
        The data to redact.
    max_depth : int, optional
        Maximum recursion depth to prevent infinite loops (default: 5).

    Returns
    -------
    dict or list or str or None
        A copy of the data with sensitive values redacted.
    """
    if max_depth <= 0:
        return "[MAX_DEPTH]"

    if data is None:
        return None

    if isinstance(data, dict):
        return {
            k: _REDACTED if _is_sensitive(k) else redact_sensitive_data(v, max_depth - 1)
            for k, v in data.items()
        }

    if isinstance(data, list):
        return [redact_sensitive_data(item, max_depth - 1) for item in data]

    return data


def redact_url(url: str) -> str:
    """Redact sensitive query parameters from a URL.

    Parameters
    ----------
    url : str
        An absolute or relative URL.

    Returns
    -------
    str
        The URL with values of sensitive parameters replaced.
    """
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [(k, _REDACTED if _is_sensitive(k) else v) for k, v in parse_qsl(parts.query)]
    return urlunsplit(parts._replace(query=urlencode(query)))
