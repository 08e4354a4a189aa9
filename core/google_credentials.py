"""Helpers for validating and normalising Google service account credentials.

The key may be supplied as raw JSON, as base64 encoded JSON (the form used in
environment variables) or as a path to a JSON file on disk.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Mapping, Union

__all__ = [
    "CredentialError",
    "REQUIRED_FIELDS",
    "ServiceAccount",
    "load_service_account",
    "load_service_account_file",
    "parse_service_account",
]


class CredentialError(Exception):
    """Raised when a service account key is missing required data or malformed."""


REQUIRED_FIELDS: Iterable[str] = (
    "client_email",
    "private_key",
)


@dataclass(frozen=True)
class ServiceAccount:
    """Issuer identity and signing key extracted from a service account key."""

    client_email: str
    private_key: str
    private_key_id: str = ""
    token_uri: str = ""

    @property
    def fingerprint(self) -> str:
        digest = hashlib.sha256()
        digest.update(self.client_email.encode("utf-8"))
        digest.update(b"\0")
        digest.update(self.private_key.encode("utf-8"))
        return digest.hexdigest()


def _normalise_private_key(key: str) -> str:
    key = key.replace("\r\n", "\n").replace("\r", "\n")
    key = key.replace("\\n", "\n")
    if not key.endswith("\n"):
        key += "\n"
    return key


def _decode_text(raw: str) -> Mapping[str, object]:
    payload_text = raw.lstrip("\ufeff").strip()
    if not payload_text:
        raise CredentialError("Service account key is empty.")

    if not payload_text.startswith("{"):
        try:
            decoded = base64.b64decode(payload_text, validate=False)
            payload_text = decoded.decode("utf-8").lstrip("\ufeff").strip()
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise CredentialError(f"Service account key is neither JSON nor base64 JSON: {exc}") from exc

    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError as exc:
        raise CredentialError(f"Service account JSON parse error: {exc.msg}") from exc
    if not isinstance(payload, Mapping):
        raise CredentialError("Service account key must be a JSON object.")
    return payload


def _validate_payload(payload: Mapping[str, object]) -> Dict[str, object]:
    data: Dict[str, object] = dict(payload)
    missing: list[str] = []

    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if not isinstance(value, str) or not value.strip():
            missing.append(field)

    if missing:
        ordered = ", ".join(sorted(dict.fromkeys(missing)))
        raise CredentialError(f"Service account key is missing fields: {ordered}")

    private_key = _normalise_private_key(str(data["private_key"]))
    if "-----BEGIN" not in private_key or "PRIVATE KEY-----" not in private_key:
        raise CredentialError("Service account private key is not a PEM encoded key.")
    data["private_key"] = private_key
    return data


def parse_service_account(raw: Union[str, bytes, Mapping[str, object]]) -> ServiceAccount:
    """Return a :class:`ServiceAccount` from JSON, base64 JSON or a mapping."""

    if isinstance(raw, Mapping):
        payload = raw
    else:
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise CredentialError(f"Service account key is not UTF-8: {exc}") from exc
        payload = _decode_text(raw)

    data = _validate_payload(payload)
    return ServiceAccount(
        client_email=str(data["client_email"]).strip(),
        private_key=str(data["private_key"]),
        private_key_id=str(data.get("private_key_id") or ""),
        token_uri=str(data.get("token_uri") or ""),
    )


def load_service_account_file(path: Path) -> ServiceAccount:
    try:
        with Path(path).open("r", encoding="utf-8-sig") as handle:
            raw = handle.read()
    except OSError as exc:
        raise CredentialError(f"Service account file could not be read: {exc}") from exc
    return parse_service_account(raw)


def load_service_account(*, key: str = "", path: str = "") -> ServiceAccount:
    """Load the configured key, preferring the inline value over ``path``."""

    if key and key.strip():
        return parse_service_account(key)
    if path and path.strip():
        return load_service_account_file(Path(path).expanduser())
    raise CredentialError("No service account key is configured.")
