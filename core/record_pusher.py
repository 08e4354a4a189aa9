"""Write local unit edits back to their spreadsheet row.

Only the cells of changed, bound fields are written, one ``write_range`` per
cell.  A record whose identifier is not found in the sheet is appended as a
new row.  Pushes triggered by edits run on daemon threads; failures are
logged and queued in the outbox for a manual replay.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import db
from core.a1 import InvalidAddress, build_range, column_range, index_to_letters, parse_cell, split_range
from core.field_schema import FieldDefinition, Schema
from core.formatter import TOKEN_RE
from core.offline_queue import OutboxQueue
from core.sheets_client import SheetsClientError
from core.sheets_session import ClientFactory, SessionError, open_client
from core.unit_mapping import (
    CORE_ATTRIBUTES,
    LEGACY_ATTRIBUTE_COLUMNS,
    PUBLIC_NAMES,
    UnitRecord,
    attribute_for_key,
    column_index_for,
    legacy_row_values,
    sheet_value_for_field,
)
from settings import SyncSettings, load_sync_settings

logger = logging.getLogger(__name__)

_ATTRIBUTES_BY_PUBLIC_NAME = {public: attribute for attribute, public in PUBLIC_NAMES.items()}
PUSHABLE_ATTRIBUTES = tuple(name for name in CORE_ATTRIBUTES if name != "asset_code")


@dataclass
class PushResult:
    ok: bool
    reason: str = ""
    cells_written: int = 0
    appended: bool = False
    row_number: Optional[int] = None

    @classmethod
    def failure(cls, reason: str) -> "PushResult":
        return cls(ok=False, reason=reason)


def normalize_changed_fields(changed_fields: Iterable[str]) -> Set[str]:
    """Map public names (``lastCondition``) and ``parameters.<key>`` to plain names."""

    names: Set[str] = set()
    for name in changed_fields:
        text = str(name or "").strip()
        if not text:
            continue
        if text.startswith("parameters."):
            text = text[len("parameters.") :]
        names.add(_ATTRIBUTES_BY_PUBLIC_NAME.get(text, text))
    return names


def _sheet_of(record: UnitRecord) -> str:
    if record.sheet_name:
        return record.sheet_name
    ref = record.source_row_ref or ""
    if "!" in ref:
        return ref.split("!", 1)[0]
    return ""


def _field_changed(definition: FieldDefinition, changed: Set[str]) -> bool:
    if definition.key in changed or definition.key_lower in changed:
        return True
    attribute = attribute_for_key(definition.key)
    return attribute is not None and attribute != "asset_code" and attribute in changed


def _computed_depends_on(definition: FieldDefinition, written: Sequence[FieldDefinition]) -> bool:
    tokens = {token.strip().replace("$", "").upper() for token in TOKEN_RE.findall(definition.format or "")}
    for item in written:
        if item.key.upper() in tokens or (item.cell and item.cell in tokens):
            return True
    return False


def _targets(schema: Schema, changed: Set[str]) -> List[FieldDefinition]:
    direct = [
        definition
        for definition in schema.bound_fields()
        if not definition.is_id and definition.input_type != "computed" and _field_changed(definition, changed)
    ]
    computed = [
        definition
        for definition in schema.bound_fields()
        if definition.input_type == "computed" and definition.format and _computed_depends_on(definition, direct)
    ]
    return direct + computed


def _find_row(client, sheet: str, id_column: int, header_row: int, identifier: str) -> Optional[int]:
    values = client.read_range(column_range(sheet, id_column))
    for index, row in enumerate(values):
        row_number = index + 1
        if row_number <= header_row or not row:
            continue
        if str(row[0]).strip() == identifier:
            return row_number
    return None


def _appended_row_number(updated_range: Optional[str]) -> Optional[int]:
    if not updated_range:
        return None
    try:
        _sheet, cells = split_range(updated_range)
        return parse_cell(cells.split(":", 1)[0]).row
    except InvalidAddress:
        return None


def _schema_layout(schema: Schema) -> Optional[Tuple[int, int]]:
    id_field = schema.id_field()
    if id_field is None or not id_field.cell:
        return None
    origin = parse_cell(id_field.cell)
    return origin.column, origin.row


def _full_row(record: UnitRecord, schema: Schema) -> List[str]:
    bound = schema.bound_fields()
    width = max((column_index_for(item) or 0) for item in bound) + 1
    row = [""] * width
    for definition in bound:
        index = column_index_for(definition)
        if index is not None:
            row[index] = sheet_value_for_field(record, definition, schema.fields)
    return row


def _push_with_schema(client, record: UnitRecord, schema: Schema, sheet: str, changed: Set[str]) -> PushResult:
    layout = _schema_layout(schema)
    if layout is None:
        return PushResult.failure("Identifier field has no cell binding")
    id_column, header_row = layout
    identifier = record.row_key
    row_number = _find_row(client, sheet, id_column, header_row, identifier)

    if row_number is None:
        updated = client.append_row(build_range(sheet, f"A{header_row}"), _full_row(record, schema))
        record.source_row_ref = f"{sheet}!{identifier}"
        logger.info("Appended %s to %s", identifier, updated or sheet)
        return PushResult(ok=True, appended=True, row_number=_appended_row_number(updated))

    written = 0
    for definition in _targets(schema, changed):
        letters = index_to_letters(column_index_for(definition) or 0)
        target = build_range(sheet, f"{letters}{row_number}")
        value = sheet_value_for_field(record, definition, schema.fields)
        logger.debug("Writing %s = %r", target, value)
        client.write_range(target, [[value]])
        written += 1
    return PushResult(ok=True, cells_written=written, row_number=row_number)


def _push_legacy(client, record: UnitRecord, sheet: str, changed: Set[str]) -> PushResult:
    identifier = record.row_key
    row_number = _find_row(client, sheet, 0, 1, identifier)
    values = legacy_row_values(record)
    if row_number is None:
        updated = client.append_row(build_range(sheet, "A1"), values)
        record.source_row_ref = f"{sheet}!{identifier}"
        logger.info("Appended %s to %s", identifier, updated or sheet)
        return PushResult(ok=True, appended=True, row_number=_appended_row_number(updated))

    written = 0
    for attribute, column in LEGACY_ATTRIBUTE_COLUMNS.items():
        if attribute == "asset_code" or attribute not in changed:
            continue
        target = build_range(sheet, f"{index_to_letters(column)}{row_number}")
        client.write_range(target, [[values[column]]])
        written += 1
    return PushResult(ok=True, cells_written=written, row_number=row_number)


def push_record(client, record: UnitRecord, schema: Optional[Schema], changed_fields: Iterable[str]) -> PushResult:
    """Write the changed fields of ``record`` to its sheet row.

    ``changed_fields`` holds attribute names, public names or parameter keys.
    Without a schema the fixed thirteen column layout is used.
    """

    sheet = _sheet_of(record)
    if not sheet:
        return PushResult.failure("Record is not linked to a sheet")
    changed = normalize_changed_fields(changed_fields)
    try:
        if schema is not None and schema.bound_fields():
            result = _push_with_schema(client, record, schema, sheet, changed)
        else:
            result = _push_legacy(client, record, sheet, changed)
    except (SheetsClientError, InvalidAddress) as exc:
        logger.warning("Push of %s to %s failed: %s", record.id, sheet, exc)
        return PushResult.failure(str(exc))
    logger.info(
        "Pushed %s to %s row %s (%d cell(s)%s)",
        record.id,
        sheet,
        result.row_number,
        result.cells_written,
        ", appended" if result.appended else "",
    )
    return result


def push_unit(
    unit_id: str,
    changed_fields: Iterable[str],
    settings: Optional[SyncSettings] = None,
    *,
    client_factory: Optional[ClientFactory] = None,
) -> PushResult:
    """Load a unit with its site and unit type, then push it."""

    record = db.fetch_unit(unit_id)
    if record is None:
        return PushResult.failure(f"Unit {unit_id} does not exist")
    site = db.fetch_site(record.site_id)
    if site is None or not site.spreadsheet_url:
        return PushResult.failure("Site has no spreadsheet")

    settings = settings or load_sync_settings()
    try:
        client = open_client(settings, site.spreadsheet_url, client_factory=client_factory)
    except SessionError as exc:
        return PushResult.failure(str(exc))

    binding = db.fetch_binding(site.id, _sheet_of(record))
    schema = db.fetch_schema(binding.schema_id) if binding and binding.schema_id is not None else None
    result = push_record(client, record, schema, changed_fields)
    if result.appended:
        db.update_unit(record.id, record)
    status = f"Pushed {record.asset_code}" if result.ok else f"Push of {record.asset_code} failed: {result.reason}"
    db.update_site_status(site.id, status, synced=result.ok)
    return result


# ---------------------------------------------------------------------------
# Background dispatch
# ---------------------------------------------------------------------------


class PushDispatcher:
    """Run pushes on daemon threads and queue failures in the outbox."""

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        *,
        outbox: Optional[OutboxQueue] = None,
        client_factory: Optional[ClientFactory] = None,
        pusher: Callable[..., PushResult] = push_unit,
    ) -> None:
        self._settings = settings
        self._outbox = outbox or OutboxQueue()
        self._client_factory = client_factory
        self._pusher = pusher

    @property
    def outbox(self) -> OutboxQueue:
        return self._outbox

    def dispatch(self, unit_id: str, changed_fields: Iterable[str]) -> threading.Thread:
        fields = sorted(set(changed_fields))
        thread = threading.Thread(target=self.run, args=(unit_id, fields), daemon=True)
        thread.start()
        return thread

    def run(self, unit_id: str, changed_fields: Sequence[str]) -> PushResult:
        try:
            result = self._pusher(
                unit_id,
                changed_fields,
                self._settings,
                client_factory=self._client_factory,
            )
        except Exception as exc:
            logger.exception("Push of unit %s failed", unit_id)
            result = PushResult.failure(str(exc))
        if not result.ok:
            logger.warning("Queueing push of unit %s: %s", unit_id, result.reason)
            self._outbox.merge(self._outbox_entry(unit_id, changed_fields, result.reason))
        return result

    @staticmethod
    def _outbox_entry(unit_id: str, changed_fields: Sequence[str], reason: str) -> Mapping[str, object]:
        return {
            "unit_id": unit_id,
            "fields": list(changed_fields),
            "reason": reason,
            "queued_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
        }

    def drain_outbox(self) -> int:
        """Replay queued pushes once; returns the number delivered."""

        def _deliver(entry: Mapping[str, object]) -> bool:
            fields = entry.get("fields") or []
            result = self._pusher(
                str(entry.get("unit_id") or ""),
                [str(name) for name in fields] if isinstance(fields, list) else [],
                self._settings,
                client_factory=self._client_factory,
            )
            if not result.ok:
                logger.warning("Replay of unit %s failed: %s", entry.get("unit_id"), result.reason)
            return result.ok

        sent = self._outbox.drain(_deliver)
        logger.info("Outbox replay delivered %d push(es)", sent)
        return sent


__all__ = [
    "PUSHABLE_ATTRIBUTES",
    "PushDispatcher",
    "PushResult",
    "normalize_changed_fields",
    "push_record",
    "push_unit",
]
