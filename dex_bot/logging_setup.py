from __future__ import annotations

import logging

from dex_bot.errors import ConfigurationError

_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: str) -> None:
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ConfigurationError(f"unknown LOG_LEVEL {level!r}")
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    # Provider transport chatter is only useful when debugging the HTTP layer.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
