from __future__ import annotations

import pytest

import db
from core.field_schema import FieldDefinition, SchemaError
from core.history import ChangePair, PhotoAttachment
from core.unit_mapping import UnitRecord


def _schema(name: str = "Split AC"):
    return db.create_schema(
        name,
        [FieldDefinition(label="ID_AC", cell="A1"), FieldDefinition(label="Lokasi", cell="B1")],
    )


def test_create_schema_normalises_and_rejects_duplicates(store):
    schema = _schema()

    assert schema.id is not None
    assert schema.id_field().key == "id_ac"
    assert db.fetch_schema_by_name("Split AC").fields == schema.fields

    with pytest.raises(SchemaError):
        _schema()


def test_update_schema_rejects_second_identifier(store):
    schema = _schema()
    fields = list(schema.fields) + [FieldDefinition(label="Kode", cell="C1", is_id=True)]

    with pytest.raises(SchemaError):
        db.update_schema(schema.id, fields=fields)

    assert db.fetch_schema(schema.id).fields == schema.fields


def test_bind_sheet_replaces_existing_binding(store):
    site = db.create_site("Gedung A", "https://docs.google.com/spreadsheets/d/abcdefghijkl/edit")
    schema = _schema()

    db.bind_sheet(site.id, "Sheet1")
    db.bind_sheet(site.id, "Sheet1", schema.id)

    bindings = db.list_bindings(site.id)
    assert len(bindings) == 1
    assert bindings[0].schema_id == schema.id
    assert db.unbind_sheet(site.id, "Sheet1")
    assert db.list_bindings(site.id) == []


def test_history_round_trip(store):
    site = db.create_site("Gedung A")
    record = db.insert_unit(UnitRecord(site_id=site.id, asset_code="AC-1", sheet_name="Sheet1"))

    db.append_history(
        record.id,
        [ChangePair("lastCondition", "Baik", "Bermasalah")],
        user_id="u-1",
        note="Freon bocor",
        photos=[PhotoAttachment("https://example.com/p.jpg", "sebelum")],
    )

    entries = db.list_history(record.id)
    assert len(entries) == 1
    assert entries[0].changes == [ChangePair("lastCondition", "Baik", "Bermasalah")]
    assert entries[0].photos == [PhotoAttachment("https://example.com/p.jpg", "sebelum")]
    assert entries[0].user_id == "u-1"


def test_delete_schema_removes_bindings_and_their_records(store):
    site = db.create_site("Gedung A")
    schema = _schema()
    db.bind_sheet(site.id, "Sheet1", schema.id)
    db.bind_sheet(site.id, "Sheet2")
    bound = db.insert_unit(UnitRecord(site_id=site.id, asset_code="AC-1", sheet_name="Sheet1"))
    other = db.insert_unit(UnitRecord(site_id=site.id, asset_code="AC-2", sheet_name="Sheet2"))
    db.append_history(bound.id, [ChangePair("seed", None, "Imported")])

    summary = db.delete_schema_and_dependents(schema.id)

    assert summary.bindings_removed == 1
    assert summary.units_removed == 1
    assert db.fetch_schema(schema.id) is None
    assert db.fetch_unit(bound.id) is None
    assert db.count_history(bound.id) == 0
    assert db.fetch_unit(other.id) is not None
    assert [binding.sheet_name for binding in db.list_bindings(site.id)] == ["Sheet2"]


def test_update_site_status_moves_sync_time_only_on_success(store):
    site = db.create_site("Gedung A")

    db.update_site_status(site.id, "Sync failed: boom", synced=False)
    assert db.fetch_site(site.id).last_synced_at is None

    db.update_site_status(site.id, "Imported 1 rows", synced=True)
    refreshed = db.fetch_site(site.id)
    assert refreshed.last_sync_status == "Imported 1 rows"
    assert refreshed.last_synced_at is not None
