"""Mapping between spreadsheet rows and :class:`UnitRecord` attributes."""

from __future__ import annotations

import calendar
import json
import re
from dataclasses import dataclass, field, fields as dataclass_fields
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from core.a1 import InvalidAddress, parse_cell
from core.field_schema import ID_ALIASES, FieldDefinition, Schema
from core.formatter import format_computed

__all__ = [
    "BRAND_ALIASES",
    "CORE_ATTRIBUTES",
    "DATE_ATTRIBUTES",
    "DEFAULT_CONDITION",
    "DEFAULT_TECHNICIAN",
    "HEADER_RULES",
    "LOCATION_ALIASES",
    "PUBLIC_NAMES",
    "RowDraft",
    "UnitRecord",
    "add_months",
    "attribute_for_key",
    "column_index_for",
    "extract_row",
    "field_values",
    "format_sheet_date",
    "identifier_column",
    "legacy_row_values",
    "LEGACY_ATTRIBUTE_COLUMNS",
    "normalize_header",
    "parse_sheet_date",
    "sheet_value_for_field",
    "utc_now",
]

DEFAULT_PLACEHOLDER = "-"
DEFAULT_CONDITION = "Baik"
DEFAULT_TECHNICIAN = "Sheets Sync"
SCHEDULE_INTERVAL_MONTHS = 3
ERROR_MARKER = "#ERROR!"

LOCATION_ALIASES: Tuple[str, ...] = ("location", "lokasi", "posisi", "ruang", "lantai", "gedung", "area")
BRAND_ALIASES: Tuple[str, ...] = ("brand", "merk", "merek", "model", "type", "tipe")

CORE_ATTRIBUTES: Tuple[str, ...] = (
    "asset_code",
    "location",
    "brand",
    "last_condition",
    "last_service_at",
    "technician",
    "next_schedule_at",
    "freon_pressure",
    "outlet_temp",
    "compressor_amp",
    "filter_condition",
    "photo_url",
    "signature_url",
)
DATE_ATTRIBUTES = frozenset({"last_service_at", "next_schedule_at"})

PUBLIC_NAMES: Dict[str, str] = {
    "asset_code": "assetCode",
    "location": "location",
    "brand": "brand",
    "last_condition": "lastCondition",
    "last_service_at": "lastServiceAt",
    "technician": "technician",
    "next_schedule_at": "nextScheduleAt",
    "freon_pressure": "freonPressure",
    "outlet_temp": "outletTemp",
    "compressor_amp": "compressorAmp",
    "filter_condition": "filterCondition",
    "photo_url": "photoUrl",
    "signature_url": "signatureUrl",
}

_KEY_ATTRIBUTES: Dict[str, str] = {
    **{alias: "location" for alias in LOCATION_ALIASES},
    **{alias: "brand" for alias in BRAND_ALIASES},
    "kondisi_terakhir": "last_condition",
    "last_condition": "last_condition",
    "kondisi": "last_condition",
    "service_terakhir": "last_service_at",
    "last_service": "last_service_at",
    "jadwal_berikut": "next_schedule_at",
    "jadwal_berikutnya": "next_schedule_at",
    "service_berikutnya": "next_schedule_at",
    "next_schedule": "next_schedule_at",
    "teknisi": "technician",
    "technician": "technician",
    "tekanan_freon": "freon_pressure",
    "freon_pressure": "freon_pressure",
    "suhu_keluar": "outlet_temp",
    "outlet_temp": "outlet_temp",
    "ampere_kompresor": "compressor_amp",
    "compressor_amp": "compressor_amp",
    "kondisi_filter": "filter_condition",
    "filter_condition": "filter_condition",
    "foto_url": "photo_url",
    "photo_url": "photo_url",
    "foto": "photo_url",
    "photo": "photo_url",
    "tanda_tangan_url": "signature_url",
    "signature_url": "signature_url",
    "tanda_tangan": "signature_url",
    "signature": "signature_url",
}

# Keys whose values are appended to what earlier columns already provided.
_COMBINED_ATTRIBUTES = frozenset({"location", "brand"})

_HEADER_RE = re.compile(r"[^a-z0-9]+")


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def normalize_header(value: str) -> str:
    return _HEADER_RE.sub("_", (value or "").strip().lower())


def attribute_for_key(key: str) -> Optional[str]:
    """Return the core attribute a field key maps to, or ``None`` for parameters."""

    normalised = (key or "").strip().lower()
    if normalised in ID_ALIASES:
        return "asset_code"
    return _KEY_ATTRIBUTES.get(normalised)


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

_EXCEL_EPOCH = datetime(1899, 12, 30, tzinfo=timezone.utc)
_NUMBER_RE = re.compile(r"^\d+(\.\d+)?$")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_sheet_date(value: object) -> Optional[datetime]:
    """Parse the date formats found in maintenance sheets.

    Accepts Excel serial numbers (greater than 59), ISO strings and
    ``DD/MM/YYYY`` (``-`` also accepted, two digit years map to 20xx).
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    text = str(value).strip()
    if not text:
        return None

    if _NUMBER_RE.fullmatch(text):
        serial = float(text)
        if serial > 59:
            try:
                return _EXCEL_EPOCH + timedelta(days=serial)
            except (OverflowError, ValueError):
                return None

    try:
        return _as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass

    parts = re.split(r"[/-]", text)
    if len(parts) == 3 and all(part.strip().isdigit() for part in parts):
        day, month, year = (int(part) for part in parts)
        if len(parts[0].strip()) == 4:
            year, month, day = day, month, year
        if year < 100:
            year += 2000
        try:
            return datetime(year, month, day, tzinfo=timezone.utc)
        except ValueError:
            return None
    return None


def format_sheet_date(value: object) -> str:
    parsed = parse_sheet_date(value)
    if parsed is None:
        return ""
    return parsed.strftime("%d/%m/%Y")


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return _as_utc(value).replace(microsecond=0).isoformat()


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------


@dataclass
class UnitRecord:
    site_id: str
    asset_code: str
    id: Optional[str] = None
    location: str = DEFAULT_PLACEHOLDER
    brand: str = DEFAULT_PLACEHOLDER
    last_condition: str = DEFAULT_CONDITION
    last_service_at: Optional[datetime] = None
    technician: str = DEFAULT_TECHNICIAN
    next_schedule_at: Optional[datetime] = None
    freon_pressure: Optional[str] = None
    outlet_temp: Optional[str] = None
    compressor_amp: Optional[str] = None
    filter_condition: Optional[str] = None
    photo_url: Optional[str] = None
    signature_url: Optional[str] = None
    parameters: Dict[str, str] = field(default_factory=dict)
    sheet_name: Optional[str] = None
    source_row_ref: Optional[str] = None
    owner_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def row_key(self) -> str:
        """Identifier value used to find the record's row in its sheet."""

        ref = (self.source_row_ref or "").strip()
        if ref and "!" in ref:
            return ref.split("!", 1)[1].strip()
        return ref or (self.asset_code or "").strip() or (self.id or "")

    def to_row(self) -> Dict[str, object]:
        row: Dict[str, object] = {}
        for item in dataclass_fields(self):
            value = getattr(self, item.name)
            if isinstance(value, datetime):
                value = _iso(value)
            elif item.name == "parameters":
                value = json.dumps(value or {}, ensure_ascii=False) if value else None
            row[item.name] = value
        return row

    @classmethod
    def from_row(cls, row: Mapping[str, object]) -> "UnitRecord":
        data = dict(row)
        raw_parameters = data.get("parameters")
        parameters: Dict[str, str] = {}
        if isinstance(raw_parameters, str) and raw_parameters:
            try:
                loaded = json.loads(raw_parameters)
            except json.JSONDecodeError:
                loaded = {}
            if isinstance(loaded, dict):
                parameters = {str(key): "" if value is None else str(value) for key, value in loaded.items()}
        elif isinstance(raw_parameters, Mapping):
            parameters = {str(key): str(value) for key, value in raw_parameters.items()}
        data["parameters"] = parameters
        for name in ("last_service_at", "next_schedule_at", "last_synced_at", "created_at", "updated_at"):
            data[name] = parse_sheet_date(data.get(name))
        known = {item.name for item in dataclass_fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


# ---------------------------------------------------------------------------
# Row extraction
# ---------------------------------------------------------------------------


@dataclass
class RowDraft:
    """Values one sheet row provides, keyed by record attribute."""

    row_number: int
    identifier: str = ""
    values: Dict[str, object] = field(default_factory=dict)
    parameters: Dict[str, str] = field(default_factory=dict)

    def set_value(self, attribute: str, raw: str) -> None:
        if attribute in DATE_ATTRIBUTES:
            parsed = parse_sheet_date(raw)
            if parsed is not None:
                self.values[attribute] = parsed
            return
        if attribute in _COMBINED_ATTRIBUTES and self.values.get(attribute):
            self.values[attribute] = f"{self.values[attribute]}, {raw}"
            return
        self.values[attribute] = raw


def column_index_for(definition: FieldDefinition) -> Optional[int]:
    if not definition.cell:
        return None
    try:
        return parse_cell(definition.cell).column
    except InvalidAddress:
        return None


def identifier_column(header: Sequence[str], schema: Optional[Schema] = None) -> Optional[int]:
    """Return the zero based identifier column for a sheet.

    The schema's identifier field wins; otherwise the header is searched for
    ``id_ac`` and then for any identifier alias.
    """

    if schema is not None:
        id_field = schema.id_field()
        if id_field is not None:
            index = column_index_for(id_field)
            if index is not None:
                return index
    normalised = [normalize_header(column) for column in header]
    if "id_ac" in normalised:
        return normalised.index("id_ac")
    for index, column in enumerate(normalised):
        if column in ID_ALIASES:
            return index
    if schema is not None:
        for definition in schema.fields:
            if definition.key_lower in ID_ALIASES:
                index = column_index_for(definition)
                if index is not None:
                    return index
    return None


def _clean_identifier(value: str) -> str:
    text = (value or "").strip()
    if text.upper() == ERROR_MARKER:
        return ""
    return text


def _cell(row: Sequence[str], index: Optional[int]) -> str:
    if index is None or index < 0 or index >= len(row):
        return ""
    return str(row[index] or "").strip()


def _apply_gedung(draft: RowDraft, value: str) -> None:
    existing = draft.values.get("location")
    draft.values["location"] = f"{value}, {existing}" if existing else value


def _apply_lantai(draft: RowDraft, value: str) -> None:
    existing = draft.values.get("location")
    draft.values["location"] = f"{existing}, Lt.{value}" if existing else f"Lt.{value}"


def _apply_periode(draft: RowDraft, value: str) -> None:
    if "last_service_at" not in draft.values:
        draft.set_value("last_service_at", value)


# Header based mapping used when a sheet has no unit type bound.
HEADER_RULES: Dict[str, Callable[[RowDraft, str], None]] = {
    "gedung": _apply_gedung,
    "lantai": _apply_lantai,
    "ruangan": lambda draft, value: draft.set_value("location", value),
    "periode": _apply_periode,
}


def _extract_with_schema(draft: RowDraft, row: Sequence[str], schema: Schema, id_index: Optional[int]) -> None:
    for definition in schema.fields:
        index = column_index_for(definition)
        if index is None or index == id_index:
            continue
        value = _cell(row, index)
        if not value:
            continue
        attribute = attribute_for_key(definition.key)
        if attribute is None or attribute == "asset_code":
            draft.parameters[definition.key] = value
        else:
            draft.set_value(attribute, value)


def _extract_with_header(draft: RowDraft, header: Sequence[str], row: Sequence[str], id_index: Optional[int]) -> None:
    for index, column in enumerate(header):
        if index == id_index:
            continue
        value = _cell(row, index)
        if not value:
            continue
        name = normalize_header(column)
        handler = HEADER_RULES.get(name)
        if handler is not None:
            handler(draft, value)
            continue
        attribute = attribute_for_key(name)
        if attribute is not None and attribute != "asset_code":
            draft.set_value(attribute, value)


def extract_row(
    header: Sequence[str],
    row: Sequence[str],
    row_number: int,
    schema: Optional[Schema] = None,
    *,
    id_index: Optional[int] = None,
) -> RowDraft:
    """Collect the non-blank values of ``row``.

    With a schema, bound fields map to core attributes by key and every other
    bound field lands in ``parameters``.  Without one the header names are
    interpreted by :data:`HEADER_RULES` and the key aliases.
    """

    if id_index is None:
        id_index = identifier_column(header, schema)
    draft = RowDraft(row_number=row_number, identifier=_clean_identifier(_cell(row, id_index)))
    if schema is not None and schema.bound_fields():
        _extract_with_schema(draft, row, schema, id_index)
    else:
        _extract_with_header(draft, header, row, id_index)
    return draft


# ---------------------------------------------------------------------------
# Values written back to the sheet
# ---------------------------------------------------------------------------


def field_values(record: UnitRecord, definitions: Sequence[FieldDefinition]) -> Dict[str, str]:
    """Return ``{field key: sheet text}`` for every non-computed field."""

    values: Dict[str, str] = dict(record.parameters)
    for definition in definitions:
        if definition.input_type == "computed":
            continue
        values[definition.key] = sheet_value_for_field(record, definition)
    return values


def sheet_value_for_field(
    record: UnitRecord,
    definition: FieldDefinition,
    definitions: Sequence[FieldDefinition] = (),
) -> str:
    """Return the text written to ``definition``'s cell for ``record``.

    Computed fields are rendered from ``definitions`` when a format is set.
    """

    if definition.input_type == "computed" and definition.format:
        return format_computed(definition.format, field_values(record, definitions), definitions)
    if definition.is_id:
        return record.asset_code or record.row_key
    attribute = attribute_for_key(definition.key)
    if attribute == "photo_url":
        params = record.parameters
        for key in ("foto_url", "photo_url", "foto", "photo"):
            if params.get(key):
                return params[key]
        return record.photo_url or ""
    if attribute is not None:
        value = getattr(record, attribute)
        if value is None:
            return ""
        if attribute in DATE_ATTRIBUTES:
            return format_sheet_date(value)
        return str(value)
    params = record.parameters
    return params.get(definition.key, params.get(definition.key_lower, ""))


def legacy_row_values(record: UnitRecord) -> List[str]:
    """Fixed thirteen column layout used for sheets without a unit type."""

    return [
        record.row_key,
        record.location or "",
        record.brand or "",
        record.last_condition or "",
        format_sheet_date(record.last_service_at or record.updated_at),
        record.technician or "",
        format_sheet_date(record.next_schedule_at or record.last_service_at),
        record.freon_pressure or "",
        record.outlet_temp or "",
        record.compressor_amp or "",
        record.filter_condition or "",
        record.photo_url or "",
        record.signature_url or "",
    ]


LEGACY_ATTRIBUTE_COLUMNS: Dict[str, int] = {
    "asset_code": 0,
    "location": 1,
    "brand": 2,
    "last_condition": 3,
    "last_service_at": 4,
    "technician": 5,
    "next_schedule_at": 6,
    "freon_pressure": 7,
    "outlet_temp": 8,
    "compressor_amp": 9,
    "filter_condition": 10,
    "photo_url": 11,
    "signature_url": 12,
}
