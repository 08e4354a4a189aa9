"""SQLite-backed record and unit type store for the sheet sync engine."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from core import app_paths
from core.field_schema import FieldDefinition, Schema, SchemaError, fields_from_json, fields_to_json, normalize_fields
from core.history import ChangePair, HistoryEntry, PhotoAttachment
from core.unit_mapping import UnitRecord

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Database path handling
# ---------------------------------------------------------------------------
_DEFAULT_DB_PATH = Path(
    os.environ.get("UNITSYNC_DB_PATH", str(app_paths.data_path("unitsync.db")))
).resolve()
_DB_PATH = _DEFAULT_DB_PATH
DB_PATH = _DB_PATH

_SCHEMA_LOCK = threading.Lock()
_SCHEMA_READY = False

# ---------------------------------------------------------------------------
# Table definitions
# ---------------------------------------------------------------------------
SITE_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "name": "TEXT NOT NULL",
    "spreadsheet_url": "TEXT",
    "sheet_name": "TEXT",
    "sync_enabled": "INTEGER NOT NULL DEFAULT 1",
    "last_synced_at": "TEXT",
    "last_sync_status": "TEXT",
    "created_at": "TEXT",
    "updated_at": "TEXT",
}

UNIT_TYPE_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "name": "TEXT NOT NULL UNIQUE",
    "fields": "TEXT NOT NULL DEFAULT '[]'",
    "created_at": "TEXT",
    "updated_at": "TEXT",
}

SITE_SHEET_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "site_id": "TEXT NOT NULL",
    "sheet_name": "TEXT NOT NULL",
    "unit_type_id": "INTEGER",
    "created_at": "TEXT",
}

UNIT_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "TEXT PRIMARY KEY",
    "site_id": "TEXT NOT NULL",
    "asset_code": "TEXT NOT NULL",
    "location": "TEXT",
    "brand": "TEXT",
    "last_condition": "TEXT",
    "last_service_at": "TEXT",
    "technician": "TEXT",
    "next_schedule_at": "TEXT",
    "freon_pressure": "TEXT",
    "outlet_temp": "TEXT",
    "compressor_amp": "TEXT",
    "filter_condition": "TEXT",
    "photo_url": "TEXT",
    "signature_url": "TEXT",
    "parameters": "TEXT",
    "sheet_name": "TEXT",
    "source_row_ref": "TEXT",
    "owner_id": "TEXT",
    "last_synced_at": "TEXT",
    "created_at": "TEXT",
    "updated_at": "TEXT",
}

HISTORY_COLUMN_DEFINITIONS: Dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "unit_id": "TEXT NOT NULL",
    "user_id": "TEXT",
    "changes": "TEXT NOT NULL",
    "note": "TEXT",
    "photos": "TEXT",
    "created_at": "TEXT NOT NULL",
}

_TABLES: Dict[str, Dict[str, str]] = {
    "sites": SITE_COLUMN_DEFINITIONS,
    "unit_types": UNIT_TYPE_COLUMN_DEFINITIONS,
    "site_sheets": SITE_SHEET_COLUMN_DEFINITIONS,
    "units": UNIT_COLUMN_DEFINITIONS,
    "unit_history": HISTORY_COLUMN_DEFINITIONS,
}


class UnitNotFoundError(LookupError):
    """Raised when a unit id does not exist."""


@dataclass
class Site:
    id: str
    name: str
    spreadsheet_url: Optional[str] = None
    sheet_name: Optional[str] = None
    sync_enabled: bool = True
    last_synced_at: Optional[str] = None
    last_sync_status: Optional[str] = None


@dataclass
class SheetBinding:
    site_id: str
    sheet_name: str
    schema_id: Optional[int] = None
    id: Optional[int] = None


@dataclass
class DeleteSummary:
    schema_id: int
    bindings_removed: int
    units_removed: int


# ---------------------------------------------------------------------------
# Database helpers
# ---------------------------------------------------------------------------

def set_database_path(path: Path) -> None:
    """Override the SQLite file used for storage."""

    global _DB_PATH, DB_PATH, _SCHEMA_READY
    _DB_PATH = Path(path).resolve()
    DB_PATH = _DB_PATH
    _SCHEMA_READY = False


def _ensure_schema(conn: sqlite3.Connection) -> None:
    for table, definitions in _TABLES.items():
        columns = ",\n        ".join(f"{column} {definition}" for column, definition in definitions.items())
        conn.execute(f"CREATE TABLE IF NOT EXISTS {table} (\n        {columns}\n    )")
        existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
        for column, definition in definitions.items():
            if column not in existing:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_site_sheet ON site_sheets(site_id, sheet_name)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_units_source ON units(site_id, source_row_ref)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_units_sheet ON units(site_id, sheet_name)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_history_unit ON unit_history(unit_id)")


def _ensure_database() -> None:
    global _SCHEMA_READY
    if _SCHEMA_READY:
        return
    with _SCHEMA_LOCK:
        if _SCHEMA_READY:
            return
        if _DB_PATH.parent:
            _DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(_DB_PATH)
        try:
            _ensure_schema(conn)
            conn.commit()
        finally:
            conn.close()
        _SCHEMA_READY = True


def get_connection() -> sqlite3.Connection:
    _ensure_database()
    conn = sqlite3.connect(_DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    conn = get_connection()
    try:
        conn.execute("BEGIN")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def _using(conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
    if conn is not None:
        yield conn
        return
    with transaction() as own:
        yield own


def initialize_database() -> None:
    _ensure_database()


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


# ---------------------------------------------------------------------------
# Sites
# ---------------------------------------------------------------------------

def _row_to_site(row: sqlite3.Row) -> Site:
    return Site(
        id=row["id"],
        name=row["name"],
        spreadsheet_url=row["spreadsheet_url"],
        sheet_name=row["sheet_name"],
        sync_enabled=bool(row["sync_enabled"]),
        last_synced_at=row["last_synced_at"],
        last_sync_status=row["last_sync_status"],
    )


def create_site(
    name: str,
    spreadsheet_url: Optional[str] = None,
    *,
    sheet_name: Optional[str] = None,
    sync_enabled: bool = True,
    site_id: Optional[str] = None,
) -> Site:
    site = Site(
        id=site_id or str(uuid.uuid4()),
        name=name.strip(),
        spreadsheet_url=(spreadsheet_url or "").strip() or None,
        sheet_name=(sheet_name or "").strip() or None,
        sync_enabled=sync_enabled,
    )
    now = _utc_now_iso()
    with transaction() as conn:
        conn.execute(
            "INSERT INTO sites (id, name, spreadsheet_url, sheet_name, sync_enabled, created_at, updated_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?)",
            (site.id, site.name, site.spreadsheet_url, site.sheet_name, 1 if sync_enabled else 0, now, now),
        )
    return site


def fetch_site(site_id: str) -> Optional[Site]:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM sites WHERE id = ?", (site_id,)).fetchone()
        return _row_to_site(row) if row else None


def list_sites() -> List[Site]:
    with get_connection() as conn:
        rows = conn.execute("SELECT * FROM sites ORDER BY LOWER(name)").fetchall()
        return [_row_to_site(row) for row in rows]


def update_site_status(site_id: str, message: str, *, synced: bool) -> None:
    """Record the last sync summary; ``last_synced_at`` moves only on success."""

    now = _utc_now_iso()
    with transaction() as conn:
        if synced:
            conn.execute(
                "UPDATE sites SET last_sync_status = ?, last_synced_at = ?, updated_at = ? WHERE id = ?",
                (message, now, now, site_id),
            )
        else:
            conn.execute(
                "UPDATE sites SET last_sync_status = ?, updated_at = ? WHERE id = ?",
                (message, now, site_id),
            )


# ---------------------------------------------------------------------------
# Unit types (schemas)
# ---------------------------------------------------------------------------

def _row_to_schema(row: sqlite3.Row) -> Schema:
    return Schema(
        id=int(row["id"]),
        name=row["name"],
        fields=fields_from_json(row["fields"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def create_schema(name: str, fields: Sequence[FieldDefinition]) -> Schema:
    """Store a new unit type; the field list is normalised first."""

    clean_name = (name or "").strip()
    if not clean_name:
        raise SchemaError("Unit type name is required")
    normalised = normalize_fields(fields)
    now = _utc_now_iso()
    try:
        with transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO unit_types (name, fields, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (clean_name, fields_to_json(normalised), now, now),
            )
            schema_id = int(cursor.lastrowid)
    except sqlite3.IntegrityError as exc:
        raise SchemaError(f"Unit type {clean_name!r} already exists") from exc
    logger.info("Created unit type %s (%s) with %d fields", clean_name, schema_id, len(normalised))
    return Schema(id=schema_id, name=clean_name, fields=normalised, created_at=now, updated_at=now)


def update_schema(
    schema_id: int,
    *,
    name: Optional[str] = None,
    fields: Optional[Sequence[FieldDefinition]] = None,
) -> Schema:
    current = fetch_schema(schema_id)
    if current is None:
        raise SchemaError(f"Unit type {schema_id} does not exist")
    next_name = (name if name is not None else current.name).strip()
    if not next_name:
        raise SchemaError("Unit type name is required")
    next_fields = normalize_fields(fields) if fields is not None else current.fields
    now = _utc_now_iso()
    try:
        with transaction() as conn:
            conn.execute(
                "UPDATE unit_types SET name = ?, fields = ?, updated_at = ? WHERE id = ?",
                (next_name, fields_to_json(next_fields), now, schema_id),
            )
    except sqlite3.IntegrityError as exc:
        raise SchemaError(f"Unit type {next_name!r} already exists") from exc
    return Schema(id=schema_id, name=next_name, fields=next_fields, created_at=current.created_at, updated_at=now)


def fetch_schema(schema_id: int) -> Optional[Schema]:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM unit_types WHERE id = ?", (schema_id,)).fetchone()
        return _row_to_schema(row) if row else None


def fetch_schema_by_name(name: str) -> Optional[Schema]:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM unit_types WHERE name = ?", (name.strip(),)).fetchone()
        return _row_to_schema(row) if row else None


def list_schemas() -> List[Schema]:
    with get_connection() as conn:
        rows = conn.execute("SELECT * FROM unit_types ORDER BY LOWER(name)").fetchall()
        return [_row_to_schema(row) for row in rows]


def delete_schema_and_dependents(schema_id: int) -> DeleteSummary:
    """Delete a unit type together with its sheet bindings and their units.

    Every unit whose ``(site_id, sheet_name)`` matches a binding of the unit
    type is removed along with its history.  This is destructive.
    """

    with transaction() as conn:
        row = conn.execute("SELECT id FROM unit_types WHERE id = ?", (schema_id,)).fetchone()
        if row is None:
            raise SchemaError(f"Unit type {schema_id} does not exist")
        bindings = conn.execute(
            "SELECT site_id, sheet_name FROM site_sheets WHERE unit_type_id = ?",
            (schema_id,),
        ).fetchall()
        units_removed = 0
        for binding in bindings:
            conn.execute(
                "DELETE FROM unit_history WHERE unit_id IN"
                " (SELECT id FROM units WHERE site_id = ? AND sheet_name = ?)",
                (binding["site_id"], binding["sheet_name"]),
            )
            cursor = conn.execute(
                "DELETE FROM units WHERE site_id = ? AND sheet_name = ?",
                (binding["site_id"], binding["sheet_name"]),
            )
            units_removed += max(cursor.rowcount, 0)
        conn.execute("DELETE FROM site_sheets WHERE unit_type_id = ?", (schema_id,))
        conn.execute("DELETE FROM unit_types WHERE id = ?", (schema_id,))

    logger.warning(
        "Deleted unit type %s with %d binding(s) and %d unit(s)",
        schema_id,
        len(bindings),
        units_removed,
    )
    return DeleteSummary(schema_id=schema_id, bindings_removed=len(bindings), units_removed=units_removed)


# ---------------------------------------------------------------------------
# Sheet bindings
# ---------------------------------------------------------------------------

def _row_to_binding(row: sqlite3.Row) -> SheetBinding:
    schema_id = row["unit_type_id"]
    return SheetBinding(
        id=int(row["id"]),
        site_id=row["site_id"],
        sheet_name=row["sheet_name"],
        schema_id=int(schema_id) if schema_id is not None else None,
    )


def bind_sheet(site_id: str, sheet_name: str, schema_id: Optional[int] = None) -> SheetBinding:
    """Bind ``sheet_name`` of a site to a unit type (or to none)."""

    clean_name = (sheet_name or "").strip()
    if not clean_name:
        raise ValueError("Sheet name is required")
    with transaction() as conn:
        conn.execute(
            "INSERT INTO site_sheets (site_id, sheet_name, unit_type_id, created_at) VALUES (?, ?, ?, ?)"
            " ON CONFLICT(site_id, sheet_name) DO UPDATE SET unit_type_id = excluded.unit_type_id",
            (site_id, clean_name, schema_id, _utc_now_iso()),
        )
        row = conn.execute(
            "SELECT * FROM site_sheets WHERE site_id = ? AND sheet_name = ?",
            (site_id, clean_name),
        ).fetchone()
    return _row_to_binding(row)


def unbind_sheet(site_id: str, sheet_name: str) -> bool:
    with transaction() as conn:
        cursor = conn.execute(
            "DELETE FROM site_sheets WHERE site_id = ? AND sheet_name = ?",
            (site_id, sheet_name.strip()),
        )
        return cursor.rowcount > 0


def list_bindings(site_id: str) -> List[SheetBinding]:
    with get_connection() as conn:
        rows = conn.execute("SELECT * FROM site_sheets WHERE site_id = ? ORDER BY id", (site_id,)).fetchall()
        return [_row_to_binding(row) for row in rows]


def fetch_binding(site_id: str, sheet_name: str) -> Optional[SheetBinding]:
    with get_connection() as conn:
        row = conn.execute(
            "SELECT * FROM site_sheets WHERE site_id = ? AND sheet_name = ?",
            (site_id, (sheet_name or "").strip()),
        ).fetchone()
        return _row_to_binding(row) if row else None


# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------

def insert_unit(record: UnitRecord, *, conn: Optional[sqlite3.Connection] = None) -> UnitRecord:
    now = datetime.now(timezone.utc).replace(microsecond=0)
    if not record.id:
        record.id = str(uuid.uuid4())
    record.created_at = record.created_at or now
    record.updated_at = record.updated_at or now
    payload = record.to_row()
    columns = [column for column in UNIT_COLUMN_DEFINITIONS if column in payload]
    placeholders = ", ".join("?" for _ in columns)
    with _using(conn) as active:
        active.execute(
            f"INSERT INTO units ({', '.join(columns)}) VALUES ({placeholders})",
            [payload[column] for column in columns],
        )
    return record


def update_unit(unit_id: str, record: UnitRecord, *, conn: Optional[sqlite3.Connection] = None) -> None:
    """Persist every column of ``record``; the caller decides ``updated_at``."""

    payload = record.to_row()
    columns = [column for column in UNIT_COLUMN_DEFINITIONS if column in payload and column != "id"]
    assignments = ", ".join(f"{column} = ?" for column in columns)
    with _using(conn) as active:
        cursor = active.execute(
            f"UPDATE units SET {assignments} WHERE id = ?",
            [payload[column] for column in columns] + [unit_id],
        )
        if cursor.rowcount == 0:
            raise UnitNotFoundError(unit_id)


def fetch_unit(unit_id: str) -> Optional[UnitRecord]:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM units WHERE id = ?", (unit_id,)).fetchone()
        return UnitRecord.from_row(row) if row else None


def find_unit_by_source(site_id: str, source_row_ref: str) -> Optional[UnitRecord]:
    with get_connection() as conn:
        row = conn.execute(
            "SELECT * FROM units WHERE site_id = ? AND source_row_ref = ? ORDER BY created_at LIMIT 1",
            (site_id, source_row_ref),
        ).fetchone()
        return UnitRecord.from_row(row) if row else None


def list_units(site_id: str, *, sheet_name: Optional[str] = None) -> List[UnitRecord]:
    with get_connection() as conn:
        sql = "SELECT * FROM units WHERE site_id = ?"
        params: List[Any] = [site_id]
        if sheet_name is not None:
            sql += " AND sheet_name = ?"
            params.append(sheet_name)
        sql += " ORDER BY created_at, asset_code"
        rows = conn.execute(sql, params).fetchall()
        return [UnitRecord.from_row(row) for row in rows]


def count_units(site_id: Optional[str] = None) -> int:
    with get_connection() as conn:
        if site_id is None:
            return int(conn.execute("SELECT COUNT(*) FROM units").fetchone()[0] or 0)
        cursor = conn.execute("SELECT COUNT(*) FROM units WHERE site_id = ?", (site_id,))
        return int(cursor.fetchone()[0] or 0)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def append_history(
    unit_id: str,
    changes: Sequence[ChangePair],
    *,
    user_id: Optional[str] = None,
    note: Optional[str] = None,
    photos: Sequence[PhotoAttachment] = (),
    conn: Optional[sqlite3.Connection] = None,
) -> int:
    payload = json.dumps([change.to_dict() for change in changes], ensure_ascii=False)
    photo_payload = json.dumps([photo.to_dict() for photo in photos], ensure_ascii=False) if photos else None
    with _using(conn) as active:
        cursor = active.execute(
            "INSERT INTO unit_history (unit_id, user_id, changes, note, photos, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (unit_id, user_id, payload, note, photo_payload, _utc_now_iso()),
        )
        return int(cursor.lastrowid)


def _load_json_list(raw: Optional[str]) -> List[Mapping[str, object]]:
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed history payload: %s", raw[:80])
        return []
    return [item for item in payload if isinstance(item, Mapping)] if isinstance(payload, list) else []


def list_history(unit_id: str) -> List[HistoryEntry]:
    with get_connection() as conn:
        rows = conn.execute(
            "SELECT * FROM unit_history WHERE unit_id = ? ORDER BY id",
            (unit_id,),
        ).fetchall()
    return [
        HistoryEntry(
            id=int(row["id"]),
            unit_id=row["unit_id"],
            user_id=row["user_id"],
            changes=[ChangePair.from_dict(item) for item in _load_json_list(row["changes"])],
            note=row["note"],
            photos=[PhotoAttachment.from_dict(item) for item in _load_json_list(row["photos"])],
            created_at=row["created_at"],
        )
        for row in rows
    ]


def count_history(unit_id: Optional[str] = None) -> int:
    with get_connection() as conn:
        if unit_id is None:
            return int(conn.execute("SELECT COUNT(*) FROM unit_history").fetchone()[0] or 0)
        cursor = conn.execute("SELECT COUNT(*) FROM unit_history WHERE unit_id = ?", (unit_id,))
        return int(cursor.fetchone()[0] or 0)


# ---------------------------------------------------------------------------
# Module exports
# ---------------------------------------------------------------------------

__all__ = [
    "DB_PATH",
    "DeleteSummary",
    "SheetBinding",
    "Site",
    "UnitNotFoundError",
    "append_history",
    "bind_sheet",
    "count_history",
    "count_units",
    "create_schema",
    "create_site",
    "delete_schema_and_dependents",
    "fetch_binding",
    "fetch_schema",
    "fetch_schema_by_name",
    "fetch_site",
    "fetch_unit",
    "find_unit_by_source",
    "get_connection",
    "initialize_database",
    "insert_unit",
    "list_bindings",
    "list_history",
    "list_schemas",
    "list_sites",
    "list_units",
    "set_database_path",
    "transaction",
    "unbind_sheet",
    "update_schema",
    "update_site_status",
    "update_unit",
]
