from __future__ import annotations

import json

import settings
from settings import SyncSettings, load_sync_settings, save_sync_settings


def test_defaults_when_file_missing(tmp_path):
    loaded = load_sync_settings(str(tmp_path / "absent.json"), environ={})

    assert loaded.enabled is False
    assert loaded.min_columns == settings.DEFAULT_MIN_COLUMNS
    assert loaded.token_uri == settings.DEFAULT_TOKEN_URI
    assert not loaded.integration_enabled


def test_environment_overrides_file(tmp_path):
    path = tmp_path / "sync_settings.json"
    path.write_text(json.dumps({"enabled": False, "min_columns": "20", "cache_tokens": "yes"}), encoding="utf-8")

    loaded = load_sync_settings(
        str(path),
        environ={
            "ENABLE_SHEETS_SYNC": "TRUE",
            "GOOGLE_SERVICE_ACCOUNT_KEY": '{"client_email": "x"}',
            "UNITSYNC_CACHE_TOKENS": "0",
        },
    )

    assert loaded.enabled is True
    assert loaded.min_columns == 20
    assert loaded.cache_tokens is False
    assert loaded.service_account_key == '{"client_email": "x"}'
    assert loaded.integration_enabled


def test_only_the_literal_true_enables_sync(tmp_path):
    path = tmp_path / "sync_settings.json"
    path.write_text(json.dumps({"enabled": True}), encoding="utf-8")

    assert load_sync_settings(str(path), environ={}).enabled is True
    assert load_sync_settings(str(path), environ={"ENABLE_SHEETS_SYNC": "1"}).enabled is False


def test_unreadable_file_is_ignored(tmp_path):
    path = tmp_path / "sync_settings.json"
    path.write_text("{not json", encoding="utf-8")

    assert load_sync_settings(str(path), environ={}) == SyncSettings(
        credential_path=settings.DEFAULT_CREDENTIALS_PATH,
        db_path=settings.DEFAULT_DB_PATH,
    )


def test_saved_file_never_contains_the_key(tmp_path):
    path = tmp_path / "nested" / "sync_settings.json"
    save_sync_settings(SyncSettings(enabled=True, service_account_key="secret", min_columns=5), str(path))

    stored = json.loads(path.read_text(encoding="utf-8"))
    assert "service_account_key" not in stored
    assert stored["min_columns"] == 5
    assert load_sync_settings(str(path), environ={}).service_account_key == ""


def test_credential_file_counts_as_credentials(tmp_path):
    key_file = tmp_path / "service_account.json"
    key_file.write_text("{}", encoding="utf-8")

    assert SyncSettings(enabled=True, credential_path=str(key_file)).integration_enabled
    assert not SyncSettings(enabled=True, credential_path=str(tmp_path / "none.json")).integration_enabled
