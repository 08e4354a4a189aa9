from __future__ import annotations

import time
from dataclasses import replace

import pytest

from core import sheets_session
from core.token_minter import TokenCache, TokenResult


@pytest.fixture
def counting_cache(monkeypatch):
    minted = []

    def _minter(account, **kwargs):
        minted.append(account.client_email)
        return TokenResult(ok=True, token=f"t{len(minted)}", expires_at=time.time() + 3600)

    monkeypatch.setattr(sheets_session, "_TOKEN_CACHE", TokenCache(minter=_minter))
    return minted


def test_cached_token_is_reused_until_the_cache_is_cleared(counting_cache, sync_settings):
    settings = replace(sync_settings, cache_tokens=True)

    assert sheets_session.access_token(settings).token == "t1"
    assert sheets_session.access_token(settings).token == "t1"

    sheets_session.clear_token_cache()

    assert sheets_session.access_token(settings).token == "t2"
    assert counting_cache == ["sync@example.iam.gserviceaccount.com"] * 2


def test_uncached_settings_mint_every_time(counting_cache, sync_settings):
    assert sheets_session.access_token(sync_settings).token == "test-token"
    assert counting_cache == []


def test_open_client_requires_a_minted_token(sync_settings):
    settings = replace(sync_settings, service_account_key="", credential_path="")

    with pytest.raises(sheets_session.SessionError):
        sheets_session.open_client(settings, "sheet-id")
