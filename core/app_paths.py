"""Locations of the UnitSync data directory and the files kept inside it.

The base directory is resolved in this order: ``UNITSYNC_HOME``, then the
Windows ``LOCALAPPDATA``/``APPDATA`` folders (``UnitSync`` below them), then
``~/.unitsync``.  Directories are created on first use.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Mapping, Optional

logger = logging.getLogger(__name__)

HOME_ENV_VAR = "UNITSYNC_HOME"
_WINDOWS_ENV_VARS: Iterable[str] = ("LOCALAPPDATA", "APPDATA")
_SUBDIRECTORIES = ("credentials", "logs")


def resolve_home(environ: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if environ is None else environ
    override = env.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser().resolve()
    for name in _WINDOWS_ENV_VARS:
        value = env.get(name)
        if value:
            return Path(value).expanduser().resolve() / "UnitSync"
    return Path.home().resolve() / ".unitsync"


APP_DIR: Path = resolve_home()


def data_path(*parts: str) -> Path:
    """Return ``APP_DIR/<parts>`` with its parent directory created."""

    target = APP_DIR.joinpath(*parts)
    if not target.parent.exists():
        logger.debug("Creating data directory %s", target.parent)
        target.parent.mkdir(parents=True, exist_ok=True)
    return target


def credentials_path(*parts: str) -> Path:
    return data_path(_SUBDIRECTORIES[0], *parts)


def log_path(*parts: str) -> Path:
    return data_path(_SUBDIRECTORIES[1], *parts)


__all__ = ["APP_DIR", "HOME_ENV_VAR", "credentials_path", "data_path", "log_path", "resolve_home"]
