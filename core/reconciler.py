"""Pull spreadsheet rows into the local unit store.

Each data row is matched to a record by its source reference
(``<sheet>!<identifier>``).  Unknown identifiers create a record with a
``seed`` history entry; known ones are diffed against the values the row
actually provides and updated with a single history entry.  Rows without an
identifier are counted as skipped and otherwise ignored.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import db
from core.a1 import InvalidAddress, build_range, index_to_letters, parse_cell
from core.field_schema import Schema
from core.history import diff_values, seed_change
from core.sheets_client import RemoteError, SheetsClientError
from core.sheets_session import ClientFactory, SessionError, open_client
from core.unit_mapping import (
    PUBLIC_NAMES,
    SCHEDULE_INTERVAL_MONTHS,
    RowDraft,
    UnitRecord,
    add_months,
    column_index_for,
    extract_row,
    identifier_column,
    utc_now,
)
from settings import DEFAULT_MIN_COLUMNS, SyncSettings, load_sync_settings

logger = logging.getLogger(__name__)

MISSING_CONFIGURATION = "MISSING_CONFIGURATION"
SYNC_IN_PROGRESS = "SYNC_IN_PROGRESS"
SYNC_DISABLED = "SYNC_DISABLED"
SITE_NOT_FOUND = "SITE_NOT_FOUND"
MISSING_SPREADSHEET = "MISSING_SPREADSHEET"
IMPORT_NOTE = "Imported from spreadsheet"


@dataclass
class SyncResult:
    ok: bool
    reason: str = ""
    rows_imported: int = 0
    rows_inserted: int = 0
    rows_updated: int = 0
    rows_skipped: int = 0
    available_sheets: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def failure(cls, reason: str, **kwargs) -> "SyncResult":
        return cls(ok=False, reason=reason, **kwargs)

    def absorb(self, other: "SyncResult") -> None:
        self.rows_imported += other.rows_imported
        self.rows_inserted += other.rows_inserted
        self.rows_updated += other.rows_updated
        self.rows_skipped += other.rows_skipped

    @property
    def summary(self) -> str:
        if not self.ok and not self.rows_imported:
            return f"Sync failed: {self.reason}"
        return (
            f"Imported {self.rows_imported} rows "
            f"(new {self.rows_inserted}, updated {self.rows_updated}, skipped {self.rows_skipped})"
        )


# ---------------------------------------------------------------------------
# Single sheet
# ---------------------------------------------------------------------------


def sheet_read_range(sheet_name: str, schema: Optional[Schema], min_columns: int = DEFAULT_MIN_COLUMNS) -> str:
    """Return ``<sheet>!A:<last column>`` covering every bound column."""

    last_index = max(min_columns, 1) - 1
    if schema is not None:
        for definition in schema.bound_fields():
            index = column_index_for(definition)
            if index is not None:
                last_index = max(last_index, index)
    return build_range(sheet_name, "A", index_to_letters(last_index))


def _header_row(schema: Optional[Schema]) -> int:
    if schema is not None:
        id_field = schema.id_field()
        if id_field is not None and id_field.cell:
            try:
                return parse_cell(id_field.cell).row
            except InvalidAddress:
                return 1
    return 1


def _new_record(site_id: str, sheet_name: str, draft: RowDraft, initiator: Optional[str], now: datetime) -> UnitRecord:
    record = UnitRecord(
        site_id=site_id,
        asset_code=draft.identifier,
        sheet_name=sheet_name,
        source_row_ref=f"{sheet_name}!{draft.identifier}",
        owner_id=initiator,
        parameters=dict(draft.parameters),
        last_synced_at=now,
        created_at=now,
        updated_at=now,
    )
    for attribute, value in draft.values.items():
        setattr(record, attribute, value)
    if record.last_service_at is None:
        record.last_service_at = now
    if record.next_schedule_at is None:
        record.next_schedule_at = add_months(record.last_service_at, SCHEDULE_INTERVAL_MONTHS)
    return record


def _apply_draft(site_id: str, sheet_name: str, draft: RowDraft, initiator: Optional[str], result: SyncResult) -> None:
    source_ref = f"{sheet_name}!{draft.identifier}"
    existing = db.find_unit_by_source(site_id, source_ref)
    now = utc_now()

    if existing is None:
        record = _new_record(site_id, sheet_name, draft, initiator, now)
        with db.transaction() as conn:
            db.insert_unit(record, conn=conn)
            db.append_history(record.id, [seed_change(source_ref)], note=IMPORT_NOTE, conn=conn)
        result.rows_inserted += 1
        logger.info("insert row %d -> %s (%s)", draft.row_number, source_ref, record.id)
        return

    previous = {attribute: getattr(existing, attribute) for attribute in draft.values}
    changes = diff_values(previous, draft.values, PUBLIC_NAMES)
    changes.extend(diff_values(existing.parameters, draft.parameters, prefix="parameters."))
    if not changes:
        logger.debug("unchanged row %d -> %s", draft.row_number, source_ref)
        return

    for attribute, value in draft.values.items():
        setattr(existing, attribute, value)
    existing.parameters = {**existing.parameters, **draft.parameters}
    existing.updated_at = now
    existing.last_synced_at = now
    with db.transaction() as conn:
        db.update_unit(existing.id, existing, conn=conn)
        db.append_history(existing.id, changes, conn=conn)
    result.rows_updated += 1
    logger.info("update row %d -> %s (%d change(s))", draft.row_number, source_ref, len(changes))


def pull_sheet(
    client,
    site: db.Site,
    sheet_name: str,
    schema: Optional[Schema] = None,
    *,
    initiator: Optional[str] = None,
    min_columns: int = DEFAULT_MIN_COLUMNS,
) -> SyncResult:
    """Reconcile every data row of ``sheet_name`` into the store."""

    started = time.monotonic()
    logger.info("Pull of %s!%s started", site.id, sheet_name)
    try:
        rows = client.read_range(sheet_read_range(sheet_name, schema, min_columns))
    except (SheetsClientError, InvalidAddress) as exc:
        logger.warning("Reading %s failed: %s", sheet_name, exc)
        return SyncResult.failure(str(exc))

    header_index = _header_row(schema) - 1
    header = rows[header_index] if len(rows) > header_index else []
    id_index = identifier_column(header, schema)
    if id_index is None:
        return SyncResult.failure(f"No identifier column in sheet {sheet_name!r}")

    result = SyncResult(ok=True)
    for offset, row in enumerate(rows[header_index + 1 :]):
        row_number = header_index + 2 + offset
        try:
            draft = extract_row(header, row, row_number, schema, id_index=id_index)
            if not draft.identifier:
                result.rows_skipped += 1
                logger.debug("skip row %d of %s: blank identifier", row_number, sheet_name)
                continue
            _apply_draft(site.id, sheet_name, draft, initiator, result)
        except Exception as exc:
            logger.exception("Pull of %s stopped at row %d", sheet_name, row_number)
            result.ok = False
            result.reason = f"Row {row_number}: {exc}"
            return result
        result.rows_imported += 1

    logger.info(
        "Pull of %s!%s finished in %.2fs: %s",
        site.id,
        sheet_name,
        time.monotonic() - started,
        result.summary,
    )
    return result


# ---------------------------------------------------------------------------
# Whole site
# ---------------------------------------------------------------------------

_SITE_LOCKS: Dict[str, threading.Lock] = {}
_SITE_LOCKS_GUARD = threading.Lock()


def _site_lock(site_id: str) -> threading.Lock:
    with _SITE_LOCKS_GUARD:
        lock = _SITE_LOCKS.get(site_id)
        if lock is None:
            lock = _SITE_LOCKS[site_id] = threading.Lock()
        return lock


def _bound_sheets(site: db.Site) -> List[db.SheetBinding]:
    bindings = db.list_bindings(site.id)
    if not bindings and site.sheet_name:
        bindings = [db.SheetBinding(site_id=site.id, sheet_name=site.sheet_name)]
    return bindings


def _missing_configuration(client, site: db.Site) -> SyncResult:
    try:
        titles = [sheet.title for sheet in client.list_sheets()]
    except RemoteError as exc:
        return SyncResult.failure(str(exc))
    logger.info("Site %s has no bound sheets; available: %s", site.id, ", ".join(titles))
    return SyncResult.failure(MISSING_CONFIGURATION, available_sheets=titles)


def _sync_locked(
    site: db.Site,
    settings: SyncSettings,
    client_factory: Optional[ClientFactory],
    initiator: Optional[str],
) -> SyncResult:
    try:
        client = open_client(settings, site.spreadsheet_url or "", client_factory=client_factory)
    except SessionError as exc:
        return SyncResult.failure(str(exc))

    bindings = _bound_sheets(site)
    if not bindings:
        return _missing_configuration(client, site)

    total = SyncResult(ok=True)
    for binding in bindings:
        schema = db.fetch_schema(binding.schema_id) if binding.schema_id is not None else None
        outcome = pull_sheet(
            client,
            site,
            binding.sheet_name,
            schema,
            initiator=initiator,
            min_columns=settings.min_columns,
        )
        total.absorb(outcome)
        if not outcome.ok:
            total.errors[binding.sheet_name] = outcome.reason

    if len(total.errors) == len(bindings):
        total.ok = False
        total.reason = "; ".join(f"{name}: {reason}" for name, reason in total.errors.items())
    return total


def sync_site(
    site_id: str,
    settings: Optional[SyncSettings] = None,
    *,
    client_factory: Optional[ClientFactory] = None,
    initiator: Optional[str] = None,
) -> SyncResult:
    """Pull every bound sheet of a site and record the outcome on the site.

    Returns ``MISSING_CONFIGURATION`` with the spreadsheet's sheet titles when
    nothing is bound, and ``SYNC_IN_PROGRESS`` when another pull of the same
    site is running.
    """

    settings = settings or load_sync_settings()
    site = db.fetch_site(site_id)
    if site is None:
        return SyncResult.failure(SITE_NOT_FOUND)
    if not settings.integration_enabled or not site.sync_enabled:
        return SyncResult.failure(SYNC_DISABLED)
    if not site.spreadsheet_url:
        return SyncResult.failure(MISSING_SPREADSHEET)

    lock = _site_lock(site_id)
    if not lock.acquire(blocking=False):
        logger.info("Pull of site %s skipped: already running", site_id)
        return SyncResult.failure(SYNC_IN_PROGRESS)
    try:
        result = _sync_locked(site, settings, client_factory, initiator)
    finally:
        lock.release()

    db.update_site_status(site_id, result.summary, synced=result.ok)
    return result


__all__ = [
    "IMPORT_NOTE",
    "MISSING_CONFIGURATION",
    "MISSING_SPREADSHEET",
    "SITE_NOT_FOUND",
    "SYNC_DISABLED",
    "SYNC_IN_PROGRESS",
    "SyncResult",
    "pull_sheet",
    "sheet_read_range",
    "sync_site",
]
