from __future__ import annotations

from copy import copy, deepcopy
from typing import Any
from urllib.parse import unquote

from uvicorn.config import LOGGING_CONFIG
from uvicorn.logging import AccessFormatter as UvicornAccessFormatter

_DEBUG_LOG = False


def set_debug_logging(enabled: bool) -> None:
    global _DEBUG_LOG
    _DEBUG_LOG = enabled


def debug_enabled() -> bool:
    return _DEBUG_LOG


def debug_log(message: str) -> None:
    if _DEBUG_LOG:
        print(f"[txtnav debug] {message}")


def decode_request_path(path: str) -> str:
    """Percent-decode a request path for display; bad UTF-8 becomes U+FFFD."""
    return unquote(path, encoding="utf-8", errors="replace")


class Utf8AccessFormatter(UvicornAccessFormatter):
    """Access log formatter that shows book ids and titles as readable text.

    uvicorn passes ``(client, method, path, http_version, status)`` as the
    record args; records of any other shape are formatted untouched.
    """

    def formatMessage(self, record):  # type: ignore[override]
        args = record.args
        if not (isinstance(args, tuple) and len(args) == 5 and isinstance(args[2], str)):
            return super().formatMessage(record)
        readable = copy(record)
        readable.args = args[:2] + (decode_request_path(args[2]),) + args[3:]
        return super().formatMessage(readable)


def build_uvicorn_log_config(debug: bool = False) -> dict[str, Any]:
    """Return uvicorn's logging config with the UTF-8 access formatter wired in."""
    config = deepcopy(LOGGING_CONFIG)
    formatter = config.get("formatters", {}).get("access")
    if isinstance(formatter, dict):
        formatter["()"] = "txtnav.logging_utils.Utf8AccessFormatter"
    if debug:
        for logger in config.get("loggers", {}).values():
            if isinstance(logger, dict) and "level" in logger:
                logger["level"] = "DEBUG"
    return config
