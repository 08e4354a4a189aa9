"""Google Sheets value API client authenticated with a minted bearer token.

This module centralises every direct interaction with the Sheets API used by
the sync engine.  It exposes a deliberately small surface:

* ``read_range`` returns the addressed rows as lists of strings.
* ``write_range`` overwrites the addressed range (``USER_ENTERED``).  It is
  not a patch; callers supply the full intended values for the range.
* ``append_row`` adds a row below the existing table.
* ``list_sheets`` returns the worksheet titles and ids of a spreadsheet.

Every non-2xx response surfaces as :class:`RemoteError` carrying the HTTP
status and response body so that callers can report meaningful diagnostics.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence
from urllib.parse import parse_qs, urlparse

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

VALUE_INPUT_OPTION = "USER_ENTERED"
SHEET_FIELDS = "sheets.properties(sheetId,title)"

_SPREADSHEET_ID_RE = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")
_BARE_ID_RE = re.compile(r"^[a-zA-Z0-9-_]{10,}$")


class SheetsClientError(RuntimeError):
    """Base error raised for Sheets API failures."""


class RemoteError(SheetsClientError):
    """Raised when the Sheets API answers with a non-2xx status."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Sheets API error ({status}): {body}")
        self.status = status
        self.body = body


class InvalidSpreadsheetUrl(SheetsClientError):
    """Raised when a spreadsheet id cannot be extracted from user input."""


@dataclass(frozen=True)
class SheetInfo:
    title: str
    sheet_id: int


def parse_spreadsheet_id(value: str) -> str:
    """Normalise a spreadsheet identifier from raw input or URL."""

    text = (value or "").strip()
    match = _SPREADSHEET_ID_RE.search(text)
    if match:
        return match.group(1)
    if _BARE_ID_RE.fullmatch(text):
        return text
    raise InvalidSpreadsheetUrl(f"Spreadsheet URL invalid: {value!r}")


def extract_gid(value: str) -> Optional[str]:
    """Return the ``gid`` (worksheet id) from a spreadsheet URL if present."""

    parsed = urlparse((value or "").strip())
    for source in (parsed.query, parsed.fragment):
        gid = parse_qs(source).get("gid")
        if gid and gid[0]:
            return gid[0]
    return None


def _status(exc: HttpError) -> int:
    resp = getattr(exc, "resp", None)
    try:
        return int(getattr(resp, "status", 0) or getattr(exc, "status_code", 0) or 0)
    except (TypeError, ValueError):
        return 0


def _body(exc: HttpError) -> str:
    content = getattr(exc, "content", b"")
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    return str(content or exc)


def _to_remote_error(exc: HttpError) -> RemoteError:
    return RemoteError(_status(exc), _body(exc))


def build_service(token: str):
    credentials = Credentials(token=token)
    return build("sheets", "v4", credentials=credentials, cache_discovery=False)


class SheetsRangeClient:
    """Read and write A1 ranges of one spreadsheet."""

    def __init__(self, token: str, spreadsheet_id: str, *, service=None) -> None:
        self._spreadsheet_id = parse_spreadsheet_id(spreadsheet_id)
        self._service = service or build_service(token)

    @property
    def spreadsheet_id(self) -> str:
        return self._spreadsheet_id

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def read_range(self, range_spec: str) -> List[List[str]]:
        try:
            response = (
                self._service.spreadsheets()
                .values()
                .get(spreadsheetId=self._spreadsheet_id, range=range_spec, majorDimension="ROWS")
                .execute()
            )
        except HttpError as exc:
            raise _to_remote_error(exc) from exc

        values: Sequence[Sequence[object]] = response.get("values", []) or []
        return [["" if cell is None else str(cell) for cell in row] for row in values]

    def write_range(self, range_spec: str, rows: Sequence[Sequence[object]]) -> None:
        body = {"values": [list(row) for row in rows]}
        logger.debug("Writing %d row(s) to %s", len(body["values"]), range_spec)
        try:
            (
                self._service.spreadsheets()
                .values()
                .update(
                    spreadsheetId=self._spreadsheet_id,
                    range=range_spec,
                    valueInputOption=VALUE_INPUT_OPTION,
                    body=body,
                )
                .execute()
            )
        except HttpError as exc:
            raise _to_remote_error(exc) from exc

    def append_row(self, range_spec: str, row: Sequence[object]) -> Optional[str]:
        """Append ``row`` below the table at ``range_spec``; return the updated range."""

        body = {"values": [list(row)]}
        try:
            response = (
                self._service.spreadsheets()
                .values()
                .append(
                    spreadsheetId=self._spreadsheet_id,
                    range=range_spec,
                    valueInputOption=VALUE_INPUT_OPTION,
                    insertDataOption="INSERT_ROWS",
                    body=body,
                )
                .execute()
            )
        except HttpError as exc:
            raise _to_remote_error(exc) from exc

        updates: Mapping[str, object] = (response or {}).get("updates", {}) or {}
        updated = updates.get("updatedRange")
        return str(updated) if updated else None

    def list_sheets(self) -> List[SheetInfo]:
        try:
            response = (
                self._service.spreadsheets()
                .get(spreadsheetId=self._spreadsheet_id, fields=SHEET_FIELDS)
                .execute()
            )
        except HttpError as exc:
            raise _to_remote_error(exc) from exc

        sheets: List[SheetInfo] = []
        for entry in response.get("sheets", []) or []:
            properties = entry.get("properties", {}) or {}
            title = str(properties.get("title") or "")
            if not title:
                continue
            sheets.append(SheetInfo(title=title, sheet_id=int(properties.get("sheetId") or 0)))
        return sheets

    def sheet_title_for_gid(self, gid: str) -> Optional[str]:
        for sheet in self.list_sheets():
            if str(sheet.sheet_id) == str(gid):
                return sheet.title
        return None


__all__ = [
    "InvalidSpreadsheetUrl",
    "RemoteError",
    "SHEET_FIELDS",
    "SheetInfo",
    "SheetsClientError",
    "SheetsRangeClient",
    "VALUE_INPUT_OPTION",
    "build_service",
    "extract_gid",
    "parse_spreadsheet_id",
]
