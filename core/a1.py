"""A1 notation helpers shared by the sheet scanner, reconciler and pusher.

Column indexes are zero based throughout this module (``0 -> A``).  Ranges are
always produced in the ``Sheet!A1:B2`` form accepted by the Sheets values API;
sheet titles are only quoted when they contain characters outside
``[A-Za-z0-9_]``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import MutableSequence, Optional, Tuple

__all__ = [
    "InvalidAddress",
    "CellOrigin",
    "index_to_letters",
    "letters_to_index",
    "quote_sheet_name",
    "build_range",
    "split_range",
    "parse_cell",
    "parse_range_origin",
    "normalize_cell",
    "column_range",
]


class InvalidAddress(ValueError):
    """Raised when a cell or range reference cannot be interpreted."""


@dataclass(frozen=True)
class CellOrigin:
    column: int
    row: int


_SIMPLE_TITLE_RE = re.compile(r"^[A-Za-z0-9_]+$")
_LETTERS_RE = re.compile(r"^[A-Za-z]+$")
_CELL_RE = re.compile(r"^\$?([A-Za-z]+)\$?(\d*)$")


def index_to_letters(index: int) -> str:
    """Return the column letters for the zero based ``index``."""

    if not isinstance(index, int) or index < 0:
        raise InvalidAddress(f"Column index must be a non-negative integer, got {index!r}")
    letters: MutableSequence[str] = []
    value = index + 1
    while value:
        value, remainder = divmod(value - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def letters_to_index(letters: str) -> int:
    """Return the zero based column index for ``letters`` (case-insensitive)."""

    text = (letters or "").strip()
    if not _LETTERS_RE.fullmatch(text):
        raise InvalidAddress(f"Invalid column letters: {letters!r}")
    value = 0
    for char in text.upper():
        value = value * 26 + (ord(char) - 64)
    return value - 1


def quote_sheet_name(sheet_name: str) -> str:
    normalised = (sheet_name or "").strip()
    if not normalised:
        raise InvalidAddress("Sheet name must not be empty")
    if _SIMPLE_TITLE_RE.fullmatch(normalised):
        return normalised
    escaped = normalised.replace("'", "''")
    return f"'{escaped}'"


def build_range(sheet_name: str, start_cell: str, end_cell: Optional[str] = None) -> str:
    """Return ``Sheet!start[:end]`` with the sheet name quoted when required."""

    start = (start_cell or "").strip()
    if not start:
        raise InvalidAddress("Start cell must not be empty")
    target = start
    if end_cell:
        target = f"{start}:{end_cell.strip()}"
    return f"{quote_sheet_name(sheet_name)}!{target}"


def split_range(range_spec: str) -> Tuple[Optional[str], str]:
    """Split ``range_spec`` into ``(sheet_name, cell_range)``.

    Quoted sheet names are unquoted and doubled apostrophes collapsed.  The
    sheet name is ``None`` when the range has no ``!`` prefix.
    """

    text = (range_spec or "").strip()
    if not text:
        raise InvalidAddress("Range must not be empty")

    if text.startswith("'"):
        index = 1
        chars: MutableSequence[str] = []
        while index < len(text):
            char = text[index]
            if char == "'":
                if index + 1 < len(text) and text[index + 1] == "'":
                    chars.append("'")
                    index += 2
                    continue
                break
            chars.append(char)
            index += 1
        else:
            raise InvalidAddress(f"Unterminated sheet name in range {range_spec!r}")
        remainder = text[index + 1 :]
        if not remainder.startswith("!"):
            raise InvalidAddress(f"Missing '!' after sheet name in {range_spec!r}")
        return "".join(chars), remainder[1:]

    if "!" in text:
        sheet, cells = text.rsplit("!", 1)
        return sheet, cells
    return None, text


def parse_cell(cell: str) -> CellOrigin:
    """Parse a single cell reference such as ``B3`` or ``$C$10``.

    A reference without a row number (a whole column such as ``A``) maps to
    row 1.
    """

    match = _CELL_RE.match((cell or "").strip())
    if not match:
        raise InvalidAddress(f"Invalid cell reference: {cell!r}")
    column = letters_to_index(match.group(1))
    row_text = match.group(2)
    row = int(row_text) if row_text else 1
    if row < 1:
        raise InvalidAddress(f"Row number must be >= 1 in {cell!r}")
    return CellOrigin(column=column, row=row)


def parse_range_origin(range_spec: str) -> CellOrigin:
    """Return the first cell of ``range_spec`` after any ``sheet!`` prefix."""

    _sheet, cells = split_range(range_spec)
    first = cells.split(":", 1)[0]
    return parse_cell(first)


def normalize_cell(cell: str) -> str:
    """Strip ``$`` anchors and upper-case a cell reference for comparison."""

    return (cell or "").replace("$", "").strip().upper()


def column_range(sheet_name: str, column_index: int, *, start_row: int = 1) -> str:
    """Return a range covering a single column from ``start_row`` downwards."""

    letters = index_to_letters(column_index)
    return build_range(sheet_name, f"{letters}{start_row}", letters)
