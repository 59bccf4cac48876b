from __future__ import annotations

import logging
import os
import pathlib
import sys

from embd.config import LoggingSettings

# Environment variable holding a log level name, e.g. EMBD_LOG=debug.
LOG_ENV_VAR = "EMBD_LOG"


def configure_logging(
    settings: LoggingSettings,
    *,
    component: str,
    level_override: str | None = None,
) -> pathlib.Path | None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_path = settings.file_path

    if log_path is not None:
        log_path = log_path.expanduser()

        if not log_path.is_absolute():
            log_path = pathlib.Path.cwd() / log_path

        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    level = _parse_level(
        level_override or os.environ.get(LOG_ENV_VAR) or settings.level,
    )

    logging.basicConfig(
        level=level,
        format=(
            "%(asctime)s %(levelname)s "
            "%(name)s %(message)s"
        ),
        handlers=handlers,
        force=True,
    )
    logger = logging.getLogger(__name__)
    logger.debug(
        "Configured %s logging at level %s",
        component,
        logging.getLevelName(level),
    )

    return log_path


def _parse_level(value: str) -> int:
    """Get the numeric log level from a string."""
    match value.strip().upper():
        case "CRITICAL":
            return logging.CRITICAL
        case "ERROR":
            return logging.ERROR
        case "WARNING" | "WARN":
            return logging.WARNING
        case "DEBUG" | "TRACE":
            return logging.DEBUG
        case _:
            return logging.INFO
