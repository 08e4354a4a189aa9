from __future__ import annotations

from conftest import FakeSheetClient

from core import schema_scanner
from core.field_schema import FieldDefinition
from core.formatter import format_computed


def _by_key(fields):
    return {item.key: item for item in fields}


def test_scan_classifies_identifier_location_and_condition():
    client = FakeSheetClient({"Sheet1": [["ID_AC", "Lokasi", "Kondisi Terakhir"]]})

    result = schema_scanner.scan_sheet(client, "Sheet1", "A1:C1")
    fields = _by_key(result.fields)

    id_field = fields["id_ac"]
    assert id_field.is_id and id_field.hidden and id_field.readonly
    assert id_field.cell == "A1"
    assert fields["lokasi"].hidden and fields["lokasi"].readonly
    assert fields["lokasi"].cell == "B1"
    assert fields["kondisi_terakhir"].input_type == "select"
    assert fields["kondisi_terakhir"].options == ["Baik", "Bermasalah"]
    assert fields["kondisi_terakhir"].cell == "C1"
    assert "foto_url" in fields and fields["foto_url"].cell == ""
    assert "tanda_tangan" in fields


def test_scan_offsets_cells_from_range_origin_and_skips_blank_headers():
    client = FakeSheetClient({"Data AC": [[], [], ["", "", "Kode", "", "Teknisi", "Service Terakhir"]]})

    result = schema_scanner.scan_sheet(client, "Data AC", "C3:F3")
    fields = _by_key(result.fields)

    assert fields["kode"].is_id and fields["kode"].cell == "C3"
    assert fields["teknisi"].cell == "E3"
    assert fields["teknisi"].autofill_type == "user"
    assert fields["service_terakhir"].cell == "F3"
    assert fields["service_terakhir"].autofill_type == "timestamp"
    assert client.reads[0] == "'Data AC'!C3:F3"


def test_only_first_identifier_alias_claims_the_role():
    client = FakeSheetClient({"Sheet1": [["No", "Kode", "Tanda Tangan", "Foto"]]})

    fields = schema_scanner.scan_sheet(client, "Sheet1", "A1:D1").fields
    by_key = _by_key(fields)

    assert [item.key for item in fields if item.is_id] == ["no"]
    assert by_key["no"].label == "ID_AC"
    assert not by_key["kode"].is_id and by_key["kode"].input_type == "text"
    assert by_key["tanda_tangan"].input_type == "signature"
    assert by_key["tanda_tangan"].hidden is False
    assert by_key["foto"].input_type == "image" and by_key["foto"].hidden


def test_scanning_twice_is_deterministic():
    client = FakeSheetClient({"Sheet1": [["ID AC", "Merk", "Jadwal Berikutnya", "Catatan"]]})

    first = schema_scanner.scan_sheet(client, "Sheet1", "A1:D1").fields
    second = schema_scanner.scan_sheet(client, "Sheet1", "A1:D1").fields

    assert [item.to_dict() for item in first] == [item.to_dict() for item in second]


def test_preview_reads_extended_range_when_needed():
    client = FakeSheetClient(
        {
            "Sheet1": [
                ["ID_AC", "Lokasi"],
                ["AC-001", "Lobby"],
                ["AC-002", "Ruang Rapat"],
            ]
        }
    )

    result = schema_scanner.scan_sheet(client, "Sheet1", "A1:B1")

    assert client.reads[1] == "Sheet1!A2:B6"
    assert result.preview == [
        {"_row": "2", "id_ac": "AC-001", "lokasi": "Lobby"},
        {"_row": "3", "id_ac": "AC-002", "lokasi": "Ruang Rapat"},
    ]


def test_format_computed_resolves_cells_and_params():
    fields = [
        FieldDefinition(label="Merk", cell="B1"),
        FieldDefinition(label="Tipe", cell="D1"),
    ]

    assert format_computed("{B1} - {D1}", {"merk": "X", "tipe": "Y"}, fields) == "X - Y"
    assert format_computed("{merk}/{$d$1}/{Z9}", {"merk": "X", "tipe": "Y"}, fields) == "X/Y/"
    assert format_computed("", {"merk": "X"}, fields) == ""


def test_format_computed_keeps_an_empty_param_over_a_cell_match():
    fields = [FieldDefinition(label="Merk", cell="B1")]

    assert format_computed("[{B1}]", {"B1": "", "merk": "LG"}, fields) == "[]"
    assert format_computed("[{b1}]", {"merk": "LG"}, fields) == "[LG]"
