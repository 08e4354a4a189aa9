"""Configuration helpers for the spreadsheet sync engine.

Settings are read from ``sync_settings.json`` in the application data
directory and then overridden by environment variables, so deployments can
inject the service account key without writing it to disk.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from core import app_paths


logger = logging.getLogger(__name__)


SYNC_SETTINGS_PATH = str(app_paths.data_path("sync_settings.json"))
DEFAULT_DB_PATH = os.getenv("UNITSYNC_DB_PATH", str(app_paths.data_path("unitsync.db")))
DEFAULT_CREDENTIALS_PATH = os.getenv(
    "UNITSYNC_CREDENTIALS_PATH",
    str(app_paths.credentials_path("service_account.json")),
)
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
DEFAULT_MIN_COLUMNS = 13

_TRUE_VALUES = {"1", "true", "yes", "on"}
_KEY_ENV_VARS = ("UNITSYNC_SERVICE_ACCOUNT_KEY", "GOOGLE_SERVICE_ACCOUNT_KEY")


@dataclass
class SyncSettings:
    enabled: bool = False
    service_account_key: str = ""
    credential_path: str = DEFAULT_CREDENTIALS_PATH
    token_uri: str = DEFAULT_TOKEN_URI
    scope: str = DEFAULT_SCOPE
    db_path: str = DEFAULT_DB_PATH
    cache_tokens: bool = False
    min_columns: int = DEFAULT_MIN_COLUMNS

    @property
    def has_credentials(self) -> bool:
        if self.service_account_key.strip():
            return True
        return bool(self.credential_path) and os.path.exists(self.credential_path)

    @property
    def integration_enabled(self) -> bool:
        return self.enabled and self.has_credentials

    def to_json(self) -> Dict[str, object]:
        # The inline key is never persisted; it only comes from the environment.
        return {
            "enabled": self.enabled,
            "credential_path": self.credential_path,
            "token_uri": self.token_uri,
            "scope": self.scope,
            "db_path": self.db_path,
            "cache_tokens": self.cache_tokens,
            "min_columns": self.min_columns,
        }


def _coerce_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES
    return default


def _coerce_columns(value: object) -> int:
    try:
        return max(1, min(702, int(value)))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_MIN_COLUMNS


def _read_settings_file(path: str) -> Dict[str, object]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable settings file %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _apply_environment(settings: SyncSettings, environ: Mapping[str, str]) -> None:
    for name in _KEY_ENV_VARS:
        value = environ.get(name)
        if value:
            settings.service_account_key = value
            break
    if "ENABLE_SHEETS_SYNC" in environ:
        settings.enabled = environ["ENABLE_SHEETS_SYNC"].strip().lower() == "true"
    if environ.get("UNITSYNC_CREDENTIALS_PATH"):
        settings.credential_path = environ["UNITSYNC_CREDENTIALS_PATH"]
    if environ.get("UNITSYNC_TOKEN_URI"):
        settings.token_uri = environ["UNITSYNC_TOKEN_URI"]
    if environ.get("UNITSYNC_DB_PATH"):
        settings.db_path = environ["UNITSYNC_DB_PATH"]
    if "UNITSYNC_CACHE_TOKENS" in environ:
        settings.cache_tokens = _coerce_bool(environ["UNITSYNC_CACHE_TOKENS"], settings.cache_tokens)


def load_sync_settings(
    path: str = SYNC_SETTINGS_PATH,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> SyncSettings:
    data = _read_settings_file(path)
    settings = SyncSettings(
        enabled=_coerce_bool(data.get("enabled"), False),
        credential_path=str(data.get("credential_path") or DEFAULT_CREDENTIALS_PATH),
        token_uri=str(data.get("token_uri") or DEFAULT_TOKEN_URI),
        scope=str(data.get("scope") or DEFAULT_SCOPE),
        db_path=str(data.get("db_path") or DEFAULT_DB_PATH),
        cache_tokens=_coerce_bool(data.get("cache_tokens"), False),
        min_columns=_coerce_columns(data.get("min_columns", DEFAULT_MIN_COLUMNS)),
    )
    _apply_environment(settings, os.environ if environ is None else environ)
    return settings


def save_sync_settings(settings: SyncSettings, path: str = SYNC_SETTINGS_PATH) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(path, "w", encoding="utf-8") as handle:
        json.dump(settings.to_json(), handle, indent=2)


__all__ = [
    "DEFAULT_CREDENTIALS_PATH",
    "DEFAULT_DB_PATH",
    "DEFAULT_MIN_COLUMNS",
    "DEFAULT_SCOPE",
    "DEFAULT_TOKEN_URI",
    "SYNC_SETTINGS_PATH",
    "SyncSettings",
    "load_sync_settings",
    "save_sync_settings",
]
