"""Field definitions for unit types and the heuristics that classify them.

Column roles are detected with an ordered, data-driven rule table
(:data:`ROLE_RULES`); the first matching rule wins.  The identifier role is
special: it matches only exact aliases and at most one field of a schema may
carry it.

Two entry points apply the rules:

``classify_scanned_field``
    Used by the scanner on a freshly read header.  Sets every role flag and
    normalises the label of identifier, photo and signature columns.

``promote_system_flags``
    Used after manual edits.  It is a one-way promotion: role detection may
    switch ``system``/placement/visibility flags on, but it never touches the
    ``label`` or ``key`` an operator typed.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from core.a1 import normalize_cell

__all__ = [
    "AUTOFILL_TYPES",
    "FieldDefinition",
    "ID_ALIASES",
    "INPUT_TYPES",
    "PHOTO_KEYS",
    "ROLE_RULES",
    "RoleRule",
    "Schema",
    "SchemaError",
    "SIGNATURE_KEYS",
    "classify_scanned_field",
    "derive_key",
    "detect_role",
    "ensure_system_fields",
    "fields_from_json",
    "fields_to_json",
    "import_config",
    "mark_id",
    "merge_scanned_fields",
    "missing_system_fields",
    "normalize_fields",
    "promote_system_flags",
]


class SchemaError(ValueError):
    """Raised when a field list violates the unit type invariants."""


INPUT_TYPES: Tuple[str, ...] = (
    "text",
    "select",
    "date",
    "datetime",
    "image",
    "signature",
    "readonly",
    "computed",
    "user",
)
AUTOFILL_TYPES: Tuple[str, ...] = ("timestamp", "user")

ID_ALIASES: Tuple[str, ...] = (
    "id",
    "id_ac",
    "asset_code",
    "kode",
    "no",
    "no_asset",
    "unit_id",
    "nomor",
    "nomor_aset",
    "kode_aset",
    "kode_barang",
    "no_inventaris",
)
PHOTO_KEYS: Tuple[str, ...] = ("foto_url", "photo_url")
SIGNATURE_KEYS: Tuple[str, ...] = ("tanda_tangan", "ttd", "signature", "paraf")
DEFAULT_CONDITION_OPTIONS: Tuple[str, ...] = ("Baik", "Bermasalah")

ID_LABEL = "ID_AC"
PHOTO_LABEL = "FOTO URL"
SIGNATURE_LABEL = "Tanda Tangan"

_KEY_RE = re.compile(r"[^a-z0-9]")


def derive_key(label: str) -> str:
    """Return the machine key for ``label`` (``"Kondisi Terakhir"`` -> ``kondisi_terakhir``)."""

    return _KEY_RE.sub("_", (label or "").strip().lower())


@dataclass
class FieldDefinition:
    label: str = ""
    key: str = ""
    cell: str = ""
    input_type: str = "text"
    options: List[str] = field(default_factory=list)
    format: str = ""
    hidden: bool = False
    readonly: bool = False
    is_id: bool = False
    system: bool = False
    autofill: bool = False
    autofill_type: Optional[str] = None

    def __post_init__(self) -> None:
        self.label = (self.label or "").strip()
        self.key = (self.key or "").strip() or derive_key(self.label)
        self.cell = normalize_cell(self.cell)
        if self.input_type not in INPUT_TYPES:
            raise SchemaError(f"Unknown input type {self.input_type!r} for field {self.key or self.label!r}")
        if self.autofill_type is not None and self.autofill_type not in AUTOFILL_TYPES:
            self.autofill_type = None

    @property
    def key_lower(self) -> str:
        return self.key.lower()

    @property
    def label_lower(self) -> str:
        return self.label.lower()

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "label": self.label,
            "key": self.key,
            "cell": self.cell,
            "inputType": self.input_type,
            "options": list(self.options),
            "format": self.format,
            "hidden": self.hidden,
            "readonly": self.readonly,
            "isId": self.is_id,
            "system": self.system,
            "autofill": self.autofill,
        }
        if self.autofill_type:
            payload["autofillType"] = self.autofill_type
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "FieldDefinition":
        input_type = data.get("inputType") or data.get("input_type")
        if not input_type:
            input_type = "image" if data.get("isImage") else "text"
        options = data.get("options") or []
        if not options and isinstance(data.get("optionsText"), str):
            options = [line.strip() for line in str(data["optionsText"]).splitlines() if line.strip()]
        return cls(
            label=str(data.get("label") or ""),
            key=str(data.get("key") or ""),
            cell=str(data.get("cell") or ""),
            input_type=str(input_type),
            options=[str(option) for option in options] if isinstance(options, (list, tuple)) else [],
            format=str(data.get("format") or ""),
            hidden=bool(data.get("hidden")),
            readonly=bool(data.get("readonly")),
            is_id=bool(data.get("isId", data.get("is_id", False))),
            system=bool(data.get("system")),
            autofill=bool(data.get("autofill")),
            autofill_type=(data.get("autofillType") or data.get("autofill_type")) or None,  # type: ignore[arg-type]
        )


# ---------------------------------------------------------------------------
# Role rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoleRule:
    """One row of the classification table: aliases plus the flags they imply."""

    role: str
    label_terms: Tuple[str, ...]
    key_terms: Tuple[str, ...]
    apply: Callable[[FieldDefinition], None]

    def matches(self, definition: FieldDefinition) -> bool:
        label = definition.label_lower
        key = definition.key_lower
        return any(term in label for term in self.label_terms) or any(term in key for term in self.key_terms)


def _names_signature_column(definition: FieldDefinition) -> bool:
    key = definition.key_lower
    return "ttd" in key or "tanda_tangan" in key or "tanda tangan" in definition.label_lower


def _apply_signature(definition: FieldDefinition) -> None:
    definition.input_type = "signature"
    definition.system = True
    definition.hidden = not _names_signature_column(definition)


def _apply_photo(definition: FieldDefinition) -> None:
    definition.input_type = "image"
    definition.system = True
    definition.hidden = definition.key_lower not in PHOTO_KEYS


def _apply_last_condition(definition: FieldDefinition) -> None:
    definition.input_type = "select"
    definition.system = True
    if not definition.options:
        definition.options = list(DEFAULT_CONDITION_OPTIONS)


def _apply_technician(definition: FieldDefinition) -> None:
    definition.input_type = "user"
    definition.readonly = True
    definition.hidden = True
    definition.autofill = True
    definition.autofill_type = "user"
    definition.system = True


def _apply_last_service(definition: FieldDefinition) -> None:
    definition.input_type = "date"
    definition.readonly = True
    definition.hidden = True
    definition.autofill = True
    definition.autofill_type = "timestamp"
    definition.system = True


def _apply_next_schedule(definition: FieldDefinition) -> None:
    definition.input_type = "date"
    definition.system = True


def _apply_location(definition: FieldDefinition) -> None:
    definition.readonly = True
    definition.hidden = True
    definition.system = True


ROLE_RULES: Tuple[RoleRule, ...] = (
    RoleRule(
        "signature",
        ("ttd", "tanda tangan", "signature", "paraf"),
        ("ttd", "tanda_tangan", "signature", "paraf"),
        _apply_signature,
    ),
    RoleRule(
        "photo",
        ("foto", "photo", "dokumentasi", "gambar"),
        ("foto", "photo", "dokumentasi", "gambar"),
        _apply_photo,
    ),
    RoleRule(
        "last_condition",
        ("kondisi terakhir", "last condition"),
        ("kondisi_terakhir", "last_condition"),
        _apply_last_condition,
    ),
    RoleRule(
        "technician",
        ("teknisi", "technician"),
        ("teknisi", "technician"),
        _apply_technician,
    ),
    RoleRule(
        "last_service",
        ("service terakhir", "last service"),
        ("service_terakhir", "last_service"),
        _apply_last_service,
    ),
    RoleRule(
        "next_schedule",
        ("jadwal berikut", "service berikut", "next service", "next schedule"),
        ("jadwal_berikut", "service_berikut", "next_service", "next_schedule"),
        _apply_next_schedule,
    ),
    RoleRule(
        "location",
        ("lokasi", "location", "jenis unit", "unit type"),
        ("lokasi", "location", "jenis_unit", "unit_type"),
        _apply_location,
    ),
)

# Roles whose flags are re-imposed after manual edits.
_PROMOTED_ROLES = frozenset({"signature", "photo"})


def is_id_alias(definition: FieldDefinition) -> bool:
    return definition.key_lower in ID_ALIASES or definition.label_lower in ID_ALIASES


def detect_role(definition: FieldDefinition, *, allow_id: bool = True) -> Optional[str]:
    """Return the role name of ``definition`` or ``None`` for a plain field."""

    if allow_id and (definition.is_id or is_id_alias(definition)):
        return "id"
    for rule in ROLE_RULES:
        if rule.matches(definition):
            return rule.role
    return None


def _rule_for(role: str) -> Optional[RoleRule]:
    for rule in ROLE_RULES:
        if rule.role == role:
            return rule
    return None


def _apply_id(definition: FieldDefinition) -> None:
    definition.input_type = "readonly"
    definition.hidden = True
    definition.readonly = True
    definition.system = True
    definition.is_id = True


def classify_scanned_field(definition: FieldDefinition, *, id_taken: bool = False) -> Optional[str]:
    """Classify a freshly scanned header field in place and return its role.

    ``id_taken`` tells the classifier an earlier column already claimed the
    identifier role, so identifier aliases fall through to the other rules.
    """

    role = detect_role(definition, allow_id=not id_taken)
    if role is None:
        definition.input_type = "text"
        return None

    if role == "id":
        _apply_id(definition)
        definition.label = ID_LABEL
        return role

    rule = _rule_for(role)
    assert rule is not None
    rule.apply(definition)
    if role == "signature" and _names_signature_column(definition):
        definition.label = SIGNATURE_LABEL
    elif role == "photo":
        label = definition.label_lower
        if definition.key_lower in PHOTO_KEYS or "foto url" in label or "photo url" in label:
            definition.label = PHOTO_LABEL
    return role


def promote_system_flags(definition: FieldDefinition, *, allow_id: bool = True) -> FieldDefinition:
    """Return a copy of ``definition`` with role-implied flags switched on.

    Promotion is one-way.  It never switches ``system`` off and never changes
    ``label``, ``key`` or ``cell``.
    """

    promoted = replace(definition, options=list(definition.options))
    role = detect_role(promoted, allow_id=allow_id)
    if role is None:
        return promoted
    if role == "id":
        if promoted.is_id:
            _apply_id(promoted)
        else:
            promoted.system = True
        return promoted
    if role in _PROMOTED_ROLES:
        rule = _rule_for(role)
        assert rule is not None
        rule.apply(promoted)
        return promoted
    promoted.system = True
    if role == "technician":
        _apply_technician(promoted)
    elif role == "last_service":
        promoted.autofill = True
        promoted.autofill_type = "timestamp"
    elif role == "last_condition" and not promoted.options:
        promoted.options = list(DEFAULT_CONDITION_OPTIONS)
    return promoted


# ---------------------------------------------------------------------------
# Field list operations
# ---------------------------------------------------------------------------


def _synth_id_field() -> FieldDefinition:
    return FieldDefinition(
        label=ID_LABEL,
        key="id_ac",
        input_type="readonly",
        hidden=True,
        readonly=True,
        is_id=True,
        system=True,
    )


def _synth_photo_field() -> FieldDefinition:
    return FieldDefinition(label=PHOTO_LABEL, key="foto_url", input_type="image", hidden=True, system=True)


def _synth_signature_field() -> FieldDefinition:
    return FieldDefinition(label=SIGNATURE_LABEL, key="tanda_tangan", input_type="signature", hidden=True, system=True)


def _has_photo(fields: Sequence[FieldDefinition]) -> bool:
    return any(item.key_lower in PHOTO_KEYS for item in fields)


def _has_signature(fields: Sequence[FieldDefinition]) -> bool:
    return any(item.input_type == "signature" or item.key_lower in SIGNATURE_KEYS for item in fields)


def missing_system_fields(fields: Sequence[FieldDefinition]) -> List[str]:
    """Return the labels of the system fields ``fields`` does not provide."""

    missing: List[str] = []
    if not any(item.is_id or item.key_lower in ID_ALIASES for item in fields):
        missing.append(ID_LABEL)
    if not any(item.input_type == "image" and item.key_lower in PHOTO_KEYS for item in fields):
        missing.append(PHOTO_LABEL)
    if not _has_signature(fields):
        missing.append(SIGNATURE_LABEL)
    return missing


def ensure_system_fields(fields: Sequence[FieldDefinition]) -> List[FieldDefinition]:
    """Return ``fields`` plus any missing identifier, photo or signature field.

    When no field is flagged as identifier, the first identifier alias is
    promoted; otherwise a placeholder ``ID_AC`` field is put in front.
    """

    result = [replace(item, options=list(item.options)) for item in fields]
    if not any(item.is_id for item in result):
        for item in result:
            if item.key_lower in ID_ALIASES:
                _apply_id(item)
                break
        else:
            result.insert(0, _synth_id_field())
    if not _has_photo(result):
        result.append(_synth_photo_field())
    if not _has_signature(result):
        result.append(_synth_signature_field())
    return result


def normalize_fields(fields: Iterable[FieldDefinition], *, strict: bool = True) -> List[FieldDefinition]:
    """Promote role flags, drop blank rows and guarantee the system fields.

    With ``strict`` a second identifier raises :class:`SchemaError`; otherwise
    later identifiers are demoted (used when merging imported configuration).
    """

    cleaned = [item for item in fields if item.label or item.key]
    seen_id = False
    normalised: List[FieldDefinition] = []
    for item in cleaned:
        if item.is_id:
            if seen_id:
                if strict:
                    raise SchemaError(f"Field {item.key!r} cannot be a second identifier")
                item = replace(item, is_id=False, options=list(item.options))
            seen_id = seen_id or item.is_id
        normalised.append(promote_system_flags(item, allow_id=not seen_id or item.is_id))
    return ensure_system_fields(normalised)


def merge_scanned_fields(
    existing: Sequence[FieldDefinition],
    scanned: Sequence[FieldDefinition],
) -> List[FieldDefinition]:
    """Merge a re-scan into an edited field list.

    Fields are matched by lower-cased key.  Only empty ``label``/``cell``
    attributes of existing fields are filled; unknown fields are appended.
    """

    merged = [replace(item, options=list(item.options)) for item in existing]
    by_key: Dict[str, FieldDefinition] = {item.key_lower: item for item in merged if item.key}
    for candidate in scanned:
        current = by_key.get(candidate.key_lower)
        if current is None:
            addition = replace(candidate, options=list(candidate.options))
            if addition.is_id and any(item.is_id for item in merged):
                addition.is_id = False
            merged.append(addition)
            if addition.key:
                by_key[addition.key_lower] = addition
            continue
        if not current.label and candidate.label:
            current.label = candidate.label
        if not current.cell and candidate.cell:
            current.cell = candidate.cell
    return merged


def mark_id(fields: Sequence[FieldDefinition], key: str) -> List[FieldDefinition]:
    """Return a copy of ``fields`` with ``key`` flagged as the identifier.

    Raises :class:`SchemaError` when another field already holds the role; the
    input list is never modified.
    """

    target = key.lower()
    if not any(item.key_lower == target for item in fields):
        raise SchemaError(f"Unknown field {key!r}")
    for item in fields:
        if item.is_id and item.key_lower != target:
            raise SchemaError(f"Field {item.key!r} is already the identifier")
    result = [replace(item, options=list(item.options)) for item in fields]
    for item in result:
        if item.key_lower == target:
            _apply_id(item)
    return result


def fields_to_json(fields: Sequence[FieldDefinition]) -> str:
    return json.dumps([item.to_dict() for item in fields], ensure_ascii=False)


def fields_from_json(raw: Optional[str]) -> List[FieldDefinition]:
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SchemaError(f"Stored field list is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, list):
        raise SchemaError("Stored field list must be a JSON array")
    return [FieldDefinition.from_dict(item) for item in payload if isinstance(item, Mapping)]


def import_config(
    raw: str,
    *,
    existing: Sequence[FieldDefinition] = (),
    name: str = "",
    mode: str = "replace",
) -> Tuple[str, List[FieldDefinition]]:
    """Load an exported ``{"name", "fields"}`` document (or a bare field array).

    ``mode="merge"`` appends the imported fields to ``existing`` before
    normalising; a second identifier coming from the import is demoted.
    """

    if mode not in ("replace", "merge"):
        raise SchemaError(f"Unknown import mode {mode!r}")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SchemaError(f"Configuration is not valid JSON: {exc.msg}") from exc

    raw_fields = payload if isinstance(payload, list) else (payload or {}).get("fields")
    if not isinstance(raw_fields, list):
        raise SchemaError("Configuration has no field list")
    next_name = name
    if isinstance(payload, Mapping) and payload.get("name"):
        next_name = str(payload["name"])

    imported = [FieldDefinition.from_dict(item) for item in raw_fields if isinstance(item, Mapping)]
    combined = list(existing) + imported if mode == "merge" else imported
    return next_name, normalize_fields(combined, strict=False)


@dataclass
class Schema:
    """A named, reusable unit type: an ordered list of field definitions."""

    name: str
    fields: List[FieldDefinition] = field(default_factory=list)
    id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def id_field(self) -> Optional[FieldDefinition]:
        for item in self.fields:
            if item.is_id:
                return item
        return None

    def field_by_key(self, key: str) -> Optional[FieldDefinition]:
        target = (key or "").lower()
        for item in self.fields:
            if item.key_lower == target:
                return item
        return None

    def field_for_cell(self, cell: str) -> Optional[FieldDefinition]:
        target = normalize_cell(cell)
        if not target:
            return None
        for item in self.fields:
            if item.cell and item.cell == target:
                return item
        return None

    def bound_fields(self) -> List[FieldDefinition]:
        return [item for item in self.fields if item.cell]
