"""Exchange a service account key for a short-lived Sheets bearer token.

The claims are built here so they stay visible and testable; encoding and
signing go through :mod:`google.auth.jwt` and the HTTP exchange through
google-auth's requests transport.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

from google.auth import crypt, jwt
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request

from core.google_credentials import CredentialError, ServiceAccount, parse_service_account

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_SCOPE",
    "DEFAULT_TOKEN_URI",
    "GRANT_TYPE",
    "TokenCache",
    "TokenResult",
    "build_assertion",
    "mint_access_token",
]

DEFAULT_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"
TOKEN_LIFETIME_SECONDS = 3600


@dataclass(frozen=True)
class TokenResult:
    ok: bool
    token: str = ""
    reason: str = ""
    expires_at: float = 0.0

    @classmethod
    def failure(cls, reason: str) -> "TokenResult":
        return cls(ok=False, reason=reason)


def build_assertion(
    account: ServiceAccount,
    *,
    scope: str = DEFAULT_SCOPE,
    audience: str = DEFAULT_TOKEN_URI,
    issued_at: Optional[int] = None,
) -> str:
    """Return a signed RS256 JWT assertion for ``account``.

    Raises :class:`CredentialError` when the private key cannot be loaded or
    the signature cannot be produced.
    """

    now = int(time.time()) if issued_at is None else int(issued_at)
    claims = {
        "iss": account.client_email,
        "scope": scope,
        "aud": audience,
        "iat": now,
        "exp": now + TOKEN_LIFETIME_SECONDS,
    }

    try:
        signer = crypt.RSASigner.from_string(account.private_key, account.private_key_id or None)
    except (ValueError, TypeError, IndexError) as exc:
        raise CredentialError(f"Private key could not be loaded: {exc}") from exc

    try:
        assertion = jwt.encode(signer, claims, header={"alg": "RS256"})
    except (ValueError, TypeError) as exc:
        raise CredentialError(f"Assertion could not be signed: {exc}") from exc
    return assertion.decode("ascii") if isinstance(assertion, bytes) else str(assertion)


def _decode_body(data: object) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data or "")


def _exchange(transport: Callable[..., object], token_uri: str, assertion: str) -> Tuple[int, str]:
    body = urlencode({"grant_type": GRANT_TYPE, "assertion": assertion})
    response = transport(
        url=token_uri,
        method="POST",
        body=body,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    status = int(getattr(response, "status", 0) or 0)
    return status, _decode_body(getattr(response, "data", b""))


def mint_access_token(
    credential: object,
    *,
    scope: str = DEFAULT_SCOPE,
    token_uri: str = DEFAULT_TOKEN_URI,
    transport: Optional[Callable[..., object]] = None,
) -> TokenResult:
    """Mint a bearer token, returning a :class:`TokenResult` instead of raising.

    ``credential`` may be a :class:`ServiceAccount`, raw JSON, base64 JSON or
    a mapping with ``client_email`` and ``private_key``.
    """

    try:
        account = credential if isinstance(credential, ServiceAccount) else parse_service_account(credential)  # type: ignore[arg-type]
        assertion = build_assertion(account, scope=scope, audience=token_uri)
    except CredentialError as exc:
        logger.warning("Service account credential rejected: %s", exc)
        return TokenResult.failure(str(exc))

    request = transport or Request()
    try:
        status, text = _exchange(request, token_uri, assertion)
    except google_auth_exceptions.TransportError as exc:
        logger.warning("Token endpoint unreachable: %s", exc)
        return TokenResult.failure(f"Token endpoint unreachable: {exc}")

    if status < 200 or status >= 300:
        logger.warning("Token endpoint returned HTTP %s", status)
        return TokenResult.failure(f"Token endpoint returned HTTP {status}: {text}")

    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = {}
    token = payload.get("access_token") if isinstance(payload, dict) else None
    if not isinstance(token, str) or not token:
        return TokenResult.failure(f"Token endpoint response has no access_token: {text}")

    try:
        lifetime = int(payload.get("expires_in", TOKEN_LIFETIME_SECONDS))
    except (TypeError, ValueError):
        lifetime = TOKEN_LIFETIME_SECONDS
    logger.debug("Minted access token for %s", account.client_email)
    return TokenResult(ok=True, token=token, expires_at=time.time() + lifetime)


class TokenCache:
    """Reuse minted tokens per credential until shortly before they expire."""

    def __init__(
        self,
        *,
        skew_seconds: int = 60,
        clock: Callable[[], float] = time.time,
        minter: Callable[..., TokenResult] = mint_access_token,
    ) -> None:
        self._skew = skew_seconds
        self._clock = clock
        self._minter = minter
        self._tokens: Dict[Tuple[str, str], TokenResult] = {}
        self._lock = threading.Lock()

    def get(self, account: ServiceAccount, **kwargs) -> TokenResult:
        key = (account.fingerprint, str(kwargs.get("scope", DEFAULT_SCOPE)))
        with self._lock:
            cached = self._tokens.get(key)
            if cached is not None and cached.expires_at - self._skew > self._clock():
                return cached

        result = self._minter(account, **kwargs)
        if result.ok:
            with self._lock:
                self._tokens[key] = result
        return result

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()
