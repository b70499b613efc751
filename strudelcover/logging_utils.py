from __future__ import annotations

import logging
import os
import traceback
from datetime import datetime
from pathlib import Path

_LOGGER = logging.getLogger("strudelcover.logging")
LOG_DIR_ENV = "STRUDELCOVER_LOG_DIR"
DEBUG_ENV = "STRUDELCOVER_DEBUG"
_LOG_FILE = "strudelcover.log"
_ROOT_LOGGER = "strudelcover"


def debug_enabled() -> bool:
    return bool(os.environ.get(DEBUG_ENV))


def configure_logging() -> None:
    root = logging.getLogger(_ROOT_LOGGER)
    if not any(isinstance(handler, logging.NullHandler) for handler in root.handlers):
        root.addHandler(logging.NullHandler())


def get_log_dir() -> Path:
    configured = os.environ.get(LOG_DIR_ENV)
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".strudelcover" / "logs"


def get_log_path(filename: str = _LOG_FILE) -> Path:
    return get_log_dir() / filename


def setup_file_logger(
    name: str,
    filename: str,
    *,
    level: int = logging.INFO,
) -> Path:
    logger = logging.getLogger(name)
    path = get_log_path(filename)
    path.parent.mkdir(parents=True, exist_ok=True)
    if any(isinstance(handler, logging.FileHandler) for handler in logger.handlers):
        return path
    logger.setLevel(level)
    handler = logging.FileHandler(path)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logger.addHandler(handler)
    return path


def log_exception(context: str, exc: BaseException) -> Path | None:
    try:
        log_dir = get_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        path = get_log_path()
        timestamp = datetime.now().isoformat()
        with path.open("a", encoding="utf-8") as handle:
            handle.write(f"[{timestamp}] {context} failed: {type(exc).__name__}: {exc}\n")
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=handle)
            handle.write("\n")
        return path
    except Exception as log_exc:
        _LOGGER.warning("Failed to write log file: %s", log_exc, exc_info=True)
        return None
