from __future__ import annotations

import json

import pytest

from core import field_schema
from core.field_schema import FieldDefinition, SchemaError


def _field(label: str, cell: str = "", **kwargs) -> FieldDefinition:
    return FieldDefinition(label=label, cell=cell, **kwargs)


def test_derive_key_replaces_each_non_alphanumeric():
    assert field_schema.derive_key("Kondisi Terakhir") == "kondisi_terakhir"
    assert field_schema.derive_key(" Suhu (C) ") == "suhu__c_"


def test_unknown_input_type_is_rejected():
    with pytest.raises(SchemaError):
        FieldDefinition(label="Catatan", input_type="slider")


def test_mark_id_rejects_second_identifier_without_mutating():
    fields = [
        _field("ID_AC", "A1", key="id_ac", is_id=True),
        _field("Kode", "B1", key="kode"),
    ]
    snapshot = [item.to_dict() for item in fields]

    with pytest.raises(SchemaError):
        field_schema.mark_id(fields, "kode")

    assert [item.to_dict() for item in fields] == snapshot
    assert fields[0].is_id


def test_mark_id_returns_copy_with_identifier_flags():
    fields = [_field("Kode", "B1"), _field("Lokasi", "C1")]

    marked = field_schema.mark_id(fields, "kode")

    assert not fields[0].is_id
    assert marked[0].is_id and marked[0].hidden and marked[0].readonly and marked[0].system
    assert marked[0].input_type == "readonly"


def test_normalize_fields_rejects_second_identifier_when_strict():
    fields = [_field("A", "A1", is_id=True), _field("B", "B1", is_id=True)]

    with pytest.raises(SchemaError):
        field_schema.normalize_fields(fields)

    relaxed = field_schema.normalize_fields(fields, strict=False)
    assert [item.key for item in relaxed if item.is_id] == ["a"]


def test_normalize_fields_adds_system_fields_and_drops_blank_rows():
    fields = [_field("Lokasi", "B1"), FieldDefinition()]

    normalised = field_schema.normalize_fields(fields)

    keys = [item.key for item in normalised]
    assert keys[0] == "id_ac"
    assert "foto_url" in keys
    assert "tanda_tangan" in keys
    assert "" not in keys
    assert field_schema.missing_system_fields(normalised) == []


def test_promotion_never_changes_label_or_key():
    edited = _field("Foto Dokumentasi Unit", "F1", key="foto_custom", input_type="text", hidden=False)

    promoted = field_schema.promote_system_flags(edited)

    assert promoted.label == "Foto Dokumentasi Unit"
    assert promoted.key == "foto_custom"
    assert promoted.system is True
    assert promoted.input_type == "image"
    assert edited.input_type == "text"


def test_promotion_keeps_manual_flags_for_plain_roles():
    edited = _field("Lokasi", "B1", hidden=False, readonly=False)

    promoted = field_schema.promote_system_flags(edited)

    assert promoted.system is True
    assert promoted.hidden is False
    assert promoted.readonly is False


def test_merge_scanned_fields_fills_only_empty_attributes():
    existing = [_field("Lokasi Unit", "", key="lokasi"), _field("Catatan", "H1")]
    scanned = [_field("Lokasi", "B1"), _field("Merk", "C1")]

    merged = field_schema.merge_scanned_fields(existing, scanned)

    assert [item.key for item in merged] == ["lokasi", "catatan", "merk"]
    assert merged[0].label == "Lokasi Unit"
    assert merged[0].cell == "B1"
    assert existing[0].cell == ""


def test_fields_round_trip_through_camel_case_json():
    fields = field_schema.normalize_fields([_field("Kondisi Terakhir", "C1")])

    payload = json.loads(field_schema.fields_to_json(fields))
    assert "inputType" in payload[0] and "isId" in payload[0]

    restored = field_schema.fields_from_json(json.dumps(payload))
    assert [item.to_dict() for item in restored] == [item.to_dict() for item in fields]


def test_import_config_merge_demotes_second_identifier():
    existing = [_field("ID_AC", "A1", key="id_ac", is_id=True)]
    raw = json.dumps(
        {
            "name": "Split AC",
            "fields": [
                {"label": "Kode", "key": "kode", "cell": "B1", "isId": True},
                {"label": "Catatan", "cell": "C1", "optionsText": "a\nb"},
            ],
        }
    )

    name, fields = field_schema.import_config(raw, existing=existing, mode="merge")

    assert name == "Split AC"
    assert [item.key for item in fields if item.is_id] == ["id_ac"]
    catatan = next(item for item in fields if item.key == "catatan")
    assert catatan.options == ["a", "b"]


def test_import_config_rejects_invalid_documents():
    with pytest.raises(SchemaError):
        field_schema.import_config("{broken")
    with pytest.raises(SchemaError):
        field_schema.import_config(json.dumps({"name": "x"}))
    with pytest.raises(SchemaError):
        field_schema.import_config("[]", mode="append")


def test_schema_lookups():
    schema = field_schema.Schema(name="Split", fields=field_schema.normalize_fields([_field("Lokasi", "B1")]))

    assert schema.id_field().key == "id_ac"
    assert schema.field_by_key("LOKASI").cell == "B1"
    assert schema.field_for_cell("$b$1").key == "lokasi"
    assert [item.key for item in schema.bound_fields()] == ["lokasi"]
