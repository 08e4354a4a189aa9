"""Open an authenticated :class:`SheetsRangeClient` from the sync settings."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from core.google_credentials import CredentialError, load_service_account
from core.sheets_client import InvalidSpreadsheetUrl, SheetsRangeClient
from core.token_minter import TokenCache, TokenResult, mint_access_token
from settings import SyncSettings

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, str], SheetsRangeClient]

_TOKEN_CACHE = TokenCache()


class SessionError(Exception):
    """Raised when no authenticated client can be opened."""


def access_token(settings: SyncSettings, *, minter: Optional[Callable[..., TokenResult]] = None) -> TokenResult:
    """Mint (or reuse, when ``cache_tokens`` is on) a bearer token."""

    try:
        account = load_service_account(key=settings.service_account_key, path=settings.credential_path)
    except CredentialError as exc:
        logger.warning("Service account unavailable: %s", exc)
        return TokenResult.failure(str(exc))
    if settings.cache_tokens:
        return _TOKEN_CACHE.get(account, scope=settings.scope, token_uri=settings.token_uri)
    return (minter or mint_access_token)(account, scope=settings.scope, token_uri=settings.token_uri)


def open_client(
    settings: SyncSettings,
    spreadsheet: str,
    *,
    client_factory: Optional[ClientFactory] = None,
) -> SheetsRangeClient:
    if not settings.integration_enabled:
        raise SessionError("Sheets sync is disabled or has no credentials")
    token = access_token(settings)
    if not token.ok:
        raise SessionError(f"Access token could not be minted: {token.reason}")
    factory = client_factory or (lambda bearer, target: SheetsRangeClient(bearer, target))
    try:
        return factory(token.token, spreadsheet)
    except InvalidSpreadsheetUrl as exc:
        raise SessionError(str(exc)) from exc


def clear_token_cache() -> None:
    _TOKEN_CACHE.clear()


__all__ = ["ClientFactory", "SessionError", "access_token", "clear_token_cache", "open_client"]
