"""Build a unit type field list from a sheet's header row."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from core.a1 import build_range, index_to_letters, parse_range_origin, split_range
from core.field_schema import FieldDefinition, classify_scanned_field, derive_key, ensure_system_fields
from core.unit_mapping import column_index_for

logger = logging.getLogger(__name__)

PREVIEW_ROWS = 5


@dataclass
class ScanResult:
    fields: List[FieldDefinition]
    preview: List[Dict[str, str]] = field(default_factory=list)


def fields_from_header(header: Sequence[str], origin_column: int, origin_row: int) -> List[FieldDefinition]:
    """Classify ``header`` cells into field definitions anchored at the origin."""

    fields: List[FieldDefinition] = []
    id_taken = False
    for offset, raw in enumerate(header):
        label = str(raw or "").strip()
        if not label:
            continue
        definition = FieldDefinition(
            label=label,
            key=derive_key(label),
            cell=f"{index_to_letters(origin_column + offset)}{origin_row}",
        )
        role = classify_scanned_field(definition, id_taken=id_taken)
        id_taken = id_taken or role == "id"
        fields.append(definition)
    return ensure_system_fields(fields)


def _preview_rows(
    rows: Sequence[Sequence[str]],
    fields: Sequence[FieldDefinition],
    origin_column: int,
    first_row_number: int,
) -> List[Dict[str, str]]:
    preview: List[Dict[str, str]] = []
    for position, row in enumerate(rows[:PREVIEW_ROWS]):
        record: Dict[str, str] = {"_row": str(first_row_number + position)}
        for definition in fields:
            index = column_index_for(definition)
            if index is None:
                continue
            offset = index - origin_column
            record[definition.key] = str(row[offset]).strip() if 0 <= offset < len(row) else ""
        preview.append(record)
    return preview


def scan_sheet(client, sheet_name: str, cell_range: str) -> ScanResult:
    """Read ``cell_range`` of ``sheet_name`` and classify its header row.

    The first row of the range is the header.  Up to five data rows below it
    are returned as a preview; when the requested range holds fewer rows an
    extended range is read for the preview.
    """

    range_sheet, cells = split_range(cell_range)
    sheet = range_sheet or sheet_name
    origin = parse_range_origin(cells)
    rows = client.read_range(build_range(sheet, cells))
    header = rows[0] if rows else []
    fields = fields_from_header(header, origin.column, origin.row)
    logger.info("Scanned %d field(s) from %s!%s", len(fields), sheet, cells)

    data_rows: List[List[str]] = [list(row) for row in rows[1:]]
    if len(data_rows) < PREVIEW_ROWS and header:
        last_column = index_to_letters(origin.column + max(len(header) - 1, 0))
        extended = build_range(
            sheet,
            f"{index_to_letters(origin.column)}{origin.row + 1}",
            f"{last_column}{origin.row + PREVIEW_ROWS}",
        )
        data_rows = [list(row) for row in client.read_range(extended)]

    preview = _preview_rows(data_rows, fields, origin.column, origin.row + 1)
    return ScanResult(fields=fields, preview=preview)


__all__ = ["PREVIEW_ROWS", "ScanResult", "fields_from_header", "scan_sheet"]
