from __future__ import annotations

from datetime import datetime, timezone

from conftest import FakeSheetClient

import db
from core import reconciler, schema_scanner
from core.history import ChangePair
from core.unit_mapping import add_months

SPREADSHEET_URL = "https://docs.google.com/spreadsheets/d/1AbCdEfGhIjKlMnOpQrStUv/edit"


def _bound_site(client: FakeSheetClient, sheet: str = "Sheet1", header_range: str = "A1:C1"):
    site = db.create_site("Gedung A", SPREADSHEET_URL)
    fields = schema_scanner.scan_sheet(client, sheet, header_range).fields
    schema = db.create_schema("Split AC", fields)
    db.bind_sheet(site.id, sheet, schema.id)
    return site, schema


def test_pull_inserts_record_with_seed_history(store):
    client = FakeSheetClient({"Sheet1": [["ID_AC", "Lokasi", "Kondisi Terakhir"], ["AC-001", "Lobby", "Baik"]]})
    site, schema = _bound_site(client)

    result = reconciler.pull_sheet(client, site, "Sheet1", schema)

    assert result.ok
    assert (result.rows_inserted, result.rows_updated, result.rows_skipped) == (1, 0, 0)
    record = db.find_unit_by_source(site.id, "Sheet1!AC-001")
    assert record is not None
    assert record.asset_code == "AC-001"
    assert record.location == "Lobby"
    assert record.brand == "-"
    assert record.technician == "Sheets Sync"
    assert record.next_schedule_at == add_months(record.last_service_at, 3)
    history = db.list_history(record.id)
    assert len(history) == 1
    assert history[0].changes == [ChangePair("seed", None, "Imported from Sheet1!AC-001")]
    assert history[0].note == "Imported from spreadsheet"
    assert history[0].user_id is None


def test_second_pull_of_unchanged_sheet_writes_nothing(store):
    client = FakeSheetClient(
        {
            "Sheet1": [
                ["ID_AC", "Lokasi", "Kondisi Terakhir"],
                ["AC-001", "Lobby", "Baik"],
                ["AC-002", "Ruang Server", "Bermasalah"],
            ]
        }
    )
    site, schema = _bound_site(client)
    reconciler.pull_sheet(client, site, "Sheet1", schema)
    before = {record.id: record.updated_at for record in db.list_units(site.id)}

    second = reconciler.pull_sheet(client, site, "Sheet1", schema)

    assert (second.rows_inserted, second.rows_updated) == (0, 0)
    assert second.rows_imported == 2
    assert db.count_history() == 2
    assert {record.id: record.updated_at for record in db.list_units(site.id)} == before


def test_pull_updates_changed_values_with_one_history_entry(store):
    client = FakeSheetClient({"Sheet1": [["ID_AC", "Lokasi", "Kondisi Terakhir"], ["AC-001", "Lobby", "Baik"]]})
    site, schema = _bound_site(client)
    reconciler.pull_sheet(client, site, "Sheet1", schema)
    client.sheets["Sheet1"][1] = ["AC-001", "Lobby Utama", "Bermasalah"]

    result = reconciler.pull_sheet(client, site, "Sheet1", schema)

    assert result.rows_updated == 1
    record = db.find_unit_by_source(site.id, "Sheet1!AC-001")
    assert record.last_condition == "Bermasalah"
    history = db.list_history(record.id)
    assert len(history) == 2
    assert history[1].changes == [
        ChangePair("location", "Lobby", "Lobby Utama"),
        ChangePair("lastCondition", "Baik", "Bermasalah"),
    ]


def test_blank_identifier_never_creates_or_updates(store):
    client = FakeSheetClient(
        {"Sheet1": [["ID_AC", "Lokasi", "Kondisi Terakhir"], ["", "Gudang", "Baik"], ["#ERROR!", "Atap", "Baik"]]}
    )
    site, schema = _bound_site(client)

    result = reconciler.pull_sheet(client, site, "Sheet1", schema)

    assert result.ok
    assert result.rows_skipped == 2
    assert db.count_units(site.id) == 0
    assert db.count_history() == 0


def test_blank_cells_do_not_clear_stored_values(store):
    client = FakeSheetClient({"Sheet1": [["ID_AC", "Lokasi", "Kondisi Terakhir"], ["AC-001", "Lobby", "Baik"]]})
    site, schema = _bound_site(client)
    reconciler.pull_sheet(client, site, "Sheet1", schema)
    client.sheets["Sheet1"][1] = ["AC-001", "", "Baik"]

    result = reconciler.pull_sheet(client, site, "Sheet1", schema)

    assert result.rows_updated == 0
    assert db.find_unit_by_source(site.id, "Sheet1!AC-001").location == "Lobby"


def test_pull_without_schema_uses_header_rules(store):
    client = FakeSheetClient(
        {"Data": [["No", "Gedung", "Lantai", "Merk", "Service Terakhir"], ["7", "Tower B", "3", "Daikin", "01/02/2024"]]}
    )
    site = db.create_site("Gedung B", SPREADSHEET_URL)

    result = reconciler.pull_sheet(client, site, "Data", None)

    assert result.rows_inserted == 1
    record = db.find_unit_by_source(site.id, "Data!7")
    assert record.location == "Tower B, Lt.3"
    assert record.brand == "Daikin"
    assert record.last_service_at.date().isoformat() == "2024-02-01"
    assert record.next_schedule_at.date().isoformat() == "2024-05-01"


def test_read_range_covers_minimum_columns_and_bound_cells():
    assert reconciler.sheet_read_range("Sheet1", None) == "Sheet1!A:M"
    assert reconciler.sheet_read_range("Data AC", None, min_columns=3) == "'Data AC'!A:C"


def test_sync_site_without_bindings_reports_available_sheets(store, sync_settings, fake_client_factory):
    client = FakeSheetClient({"Gedung A": [["ID_AC"]], "Gedung B": [["ID_AC"]]})
    site = db.create_site("Gedung A", SPREADSHEET_URL)

    result = reconciler.sync_site(site.id, sync_settings, client_factory=fake_client_factory(client))

    assert not result.ok
    assert result.reason == reconciler.MISSING_CONFIGURATION
    assert result.available_sheets == ["Gedung A", "Gedung B"]


def test_sync_site_pulls_bound_sheets_and_records_status(store, sync_settings, fake_client_factory):
    client = FakeSheetClient({"Sheet1": [["ID_AC", "Lokasi", "Kondisi Terakhir"], ["AC-001", "Lobby", "Baik"], ["", "", ""]]})
    site, _schema = _bound_site(client)

    result = reconciler.sync_site(site.id, sync_settings, client_factory=fake_client_factory(client))

    assert result.ok
    refreshed = db.fetch_site(site.id)
    assert refreshed.last_sync_status == "Imported 1 rows (new 1, updated 0, skipped 0)"
    assert refreshed.last_synced_at is not None


def test_sync_site_fails_only_when_every_sheet_fails(store, sync_settings, fake_client_factory):
    client = FakeSheetClient({"Sheet1": [["ID_AC", "Lokasi", "Kondisi Terakhir"], ["AC-001", "Lobby", "Baik"]]})
    site, _schema = _bound_site(client)
    db.bind_sheet(site.id, "Kosong")

    result = reconciler.sync_site(site.id, sync_settings, client_factory=fake_client_factory(client))

    assert result.ok
    assert "Kosong" in result.errors


def test_sync_site_is_exclusive_per_site(store, sync_settings, fake_client_factory):
    client = FakeSheetClient({"Sheet1": [["ID_AC"]]})
    site, _schema = _bound_site(client, header_range="A1:A1")
    lock = reconciler._site_lock(site.id)

    with lock:
        result = reconciler.sync_site(site.id, sync_settings, client_factory=fake_client_factory(client))

    assert result.reason == reconciler.SYNC_IN_PROGRESS


def test_sync_site_respects_disabled_integration(store, sync_settings):
    site = db.create_site("Gedung A", SPREADSHEET_URL)
    sync_settings.enabled = False

    assert reconciler.sync_site(site.id, sync_settings).reason == reconciler.SYNC_DISABLED
    assert reconciler.sync_site("missing", sync_settings).reason == reconciler.SITE_NOT_FOUND


def test_numeric_date_outside_serial_range_does_not_abort_pull(store):
    client = FakeSheetClient(
        {"Sheet1": [["ID_AC", "Lokasi", "Service Terakhir"], ["AC-001", "Lobby", "20240115"], ["AC-002", "Atap", "45366"]]}
    )
    site = db.create_site("Gedung A", SPREADSHEET_URL)

    result = reconciler.pull_sheet(client, site, "Sheet1", None)

    assert result.ok
    assert result.rows_inserted == 2
    first = db.find_unit_by_source(site.id, "Sheet1!AC-001")
    assert first.last_service_at is not None
    assert first.last_service_at.date() == datetime.now(timezone.utc).date()
    assert db.find_unit_by_source(site.id, "Sheet1!AC-002").last_service_at.date().isoformat() == "2024-03-15"


def test_unexpected_row_error_becomes_failed_result(store, sync_settings, fake_client_factory, monkeypatch):
    client = FakeSheetClient({"Sheet1": [["ID_AC", "Lokasi", "Kondisi Terakhir"], ["AC-001", "Lobby", "Baik"]]})
    site, _schema = _bound_site(client)

    def broken(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(reconciler, "_apply_draft", broken)

    result = reconciler.sync_site(site.id, sync_settings, client_factory=fake_client_factory(client))

    assert not result.ok
    assert result.errors == {"Sheet1": "Row 2: disk full"}
    assert db.fetch_site(site.id).last_sync_status == "Sync failed: Sheet1: Row 2: disk full"
