"""Logging setup shared by the command line and embedding applications."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

from core import app_paths

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LEVEL_ENV_VAR = "UNITSYNC_LOG_LEVEL"

_configured_path: Optional[Path] = None


def resolve_level(level: Union[int, str, None]) -> int:
    """Turn ``"debug"``/``"INFO"``/``10`` style values into a logging level.

    ``None`` falls back to ``UNITSYNC_LOG_LEVEL`` and then ``INFO``; unknown
    names also yield ``INFO``.
    """

    if level is None:
        level = os.environ.get(LEVEL_ENV_VAR) or logging.INFO
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    return value if isinstance(value, int) else logging.INFO


def _has_file_handler(root: logging.Logger, target: Path) -> bool:
    return any(
        isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == target
        for handler in root.handlers
    )


def configure_logging(
    level: Union[int, str, None] = None,
    *,
    path: Optional[Path] = None,
    console: bool = False,
) -> Path:
    """Attach a ``unitsync.log`` file handler (and optionally stderr) to the root logger.

    Calling it again only lowers the root level or adds the console handler;
    the same file is never attached twice.  Returns the log file path.
    """

    global _configured_path

    target = Path(path).resolve() if path is not None else _configured_path or app_paths.log_path("unitsync.log")
    target.parent.mkdir(parents=True, exist_ok=True)
    resolved = resolve_level(level)

    root = logging.getLogger()
    root.setLevel(resolved if not root.handlers else min(root.level or resolved, resolved))
    formatter = logging.Formatter(LOG_FORMAT)

    if not _has_file_handler(root, target):
        file_handler = logging.FileHandler(target, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if console and not any(type(handler) is logging.StreamHandler for handler in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

    _configured_path = target
    root.debug("Logging to %s at level %s", target, logging.getLevelName(resolved))
    return target


__all__ = ["LEVEL_ENV_VAR", "LOG_FORMAT", "configure_logging", "resolve_level"]
