"""Direct creation and editing of unit records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

import db
from core.history import PhotoAttachment, diff_values, normalize_value, should_record
from core.unit_mapping import (
    DATE_ATTRIBUTES,
    PUBLIC_NAMES,
    SCHEDULE_INTERVAL_MONTHS,
    UnitRecord,
    add_months,
    parse_sheet_date,
    utc_now,
)

logger = logging.getLogger(__name__)

REQUIRED_ON_CREATE = (
    "asset_code",
    "location",
    "brand",
    "last_condition",
    "last_service_at",
    "next_schedule_at",
    "technician",
)
EDITABLE_ATTRIBUTES = frozenset(
    {
        "freon_pressure",
        "outlet_temp",
        "compressor_amp",
        "filter_condition",
        "last_condition",
        "last_service_at",
        "next_schedule_at",
        "photo_url",
        "signature_url",
        "parameters",
    }
)
_CREATE_ATTRIBUTES = frozenset(PUBLIC_NAMES) | {"parameters", "sheet_name"}
_ATTRIBUTES_BY_PUBLIC_NAME = {public: attribute for attribute, public in PUBLIC_NAMES.items()}


class UnitValidationError(ValueError):
    """Raised when a create or edit payload is rejected."""


UnitNotFoundError = db.UnitNotFoundError


@dataclass(frozen=True)
class Actor:
    """The user performing an edit."""

    id: Optional[str] = None
    name: str = ""


def _attribute_name(name: str) -> str:
    return _ATTRIBUTES_BY_PUBLIC_NAME.get(name, name)


def _coerce(attribute: str, value: object) -> object:
    if attribute in DATE_ATTRIBUTES:
        if value in (None, ""):
            return None
        parsed = parse_sheet_date(value)
        if parsed is None:
            raise UnitValidationError(f"Invalid date for {PUBLIC_NAMES[attribute]}: {value!r}")
        return parsed
    if attribute == "parameters":
        if not isinstance(value, Mapping):
            raise UnitValidationError("parameters must be a mapping")
        return {str(key): "" if item is None else str(item) for key, item in value.items()}
    return None if value is None else str(value).strip()


def _normalise_payload(payload: Mapping[str, object], allowed: Iterable[str]) -> Dict[str, object]:
    allowed_set = set(allowed)
    values: Dict[str, object] = {}
    for name, value in payload.items():
        attribute = _attribute_name(name)
        if attribute not in allowed_set:
            raise UnitValidationError(f"Field {name!r} cannot be set")
        values[attribute] = value if attribute == "sheet_name" else _coerce(attribute, value)
    return values


def _photos(photos: Optional[Sequence[Union[PhotoAttachment, Mapping[str, object]]]]) -> List[PhotoAttachment]:
    result: List[PhotoAttachment] = []
    for photo in photos or ():
        item = photo if isinstance(photo, PhotoAttachment) else PhotoAttachment.from_dict(photo)
        if item.url:
            result.append(item)
    return result


def create_unit(site_id: str, payload: Mapping[str, object], user: Optional[Actor] = None) -> UnitRecord:
    """Create a unit directly (not from a sheet row).

    Every attribute in :data:`REQUIRED_ON_CREATE` must be present and
    non-blank.
    """

    if db.fetch_site(site_id) is None:
        raise UnitValidationError(f"Site {site_id} does not exist")
    values = _normalise_payload(payload, _CREATE_ATTRIBUTES)
    missing = [PUBLIC_NAMES[name] for name in REQUIRED_ON_CREATE if not normalize_value(values.get(name))]
    if missing:
        raise UnitValidationError(f"Missing required field(s): {', '.join(missing)}")

    now = utc_now()
    sheet_name = str(values.pop("sheet_name", "") or "").strip() or None
    record = UnitRecord(site_id=site_id, asset_code=str(values["asset_code"]), created_at=now, updated_at=now)
    for attribute, value in values.items():
        setattr(record, attribute, value)
    record.sheet_name = sheet_name
    if sheet_name:
        record.source_row_ref = f"{sheet_name}!{record.asset_code}"
    record.owner_id = user.id if user else None

    initial = {attribute: value for attribute, value in values.items() if attribute != "parameters"}
    changes = diff_values({}, initial, PUBLIC_NAMES)
    changes.extend(diff_values({}, record.parameters, prefix="parameters."))
    with db.transaction() as conn:
        db.insert_unit(record, conn=conn)
        db.append_history(record.id, changes, user_id=user.id if user else None, note="Created", conn=conn)
    logger.info("Created unit %s (%s) in site %s", record.asset_code, record.id, site_id)
    return record


def _changed_attributes(before: Mapping[str, object], record: UnitRecord) -> Set[str]:
    changed: Set[str] = set()
    for attribute, previous in before.items():
        if attribute == "parameters":
            continue
        if normalize_value(previous) != normalize_value(getattr(record, attribute)):
            changed.add(attribute)
    old_params = before.get("parameters") or {}
    for key, value in record.parameters.items():
        if normalize_value(old_params.get(key)) != normalize_value(value):  # type: ignore[union-attr]
            changed.add(key)
    return changed


def update_unit(
    unit_id: str,
    updates: Mapping[str, object],
    user: Optional[Actor] = None,
    note: Optional[str] = None,
    photos: Optional[Sequence[Union[PhotoAttachment, Mapping[str, object]]]] = None,
    dispatcher=None,
) -> UnitRecord:
    """Apply an edit, record it in the history log and push it to the sheet.

    The service date, next schedule and technician are filled automatically.
    History holds the explicit changes only; the push covers the autofilled
    ones too.  A failing push never affects the returned record.
    """

    record = db.fetch_unit(unit_id)
    if record is None:
        raise UnitNotFoundError(unit_id)
    explicit = _normalise_payload(updates, EDITABLE_ATTRIBUTES)
    if not explicit:
        raise UnitValidationError("No editable fields provided")
    attachments = _photos(photos)

    tracked = [name for name in PUBLIC_NAMES if name != "asset_code"]
    before: Dict[str, object] = {name: getattr(record, name) for name in tracked}
    before["parameters"] = dict(record.parameters)

    new_parameters = explicit.pop("parameters", None)
    changes = diff_values({name: before[name] for name in explicit}, explicit, PUBLIC_NAMES)
    if new_parameters:
        changes.extend(diff_values(record.parameters, new_parameters, prefix="parameters."))  # type: ignore[arg-type]

    for attribute, value in explicit.items():
        setattr(record, attribute, value)
    if new_parameters:
        record.parameters = {**record.parameters, **new_parameters}  # type: ignore[dict-item]

    now = utc_now()
    service_at = explicit.get("last_service_at") or now
    record.last_service_at = service_at  # type: ignore[assignment]
    if not explicit.get("next_schedule_at"):
        record.next_schedule_at = add_months(service_at, SCHEDULE_INTERVAL_MONTHS)  # type: ignore[arg-type]
    if user is not None and user.name:
        record.technician = user.name
    record.updated_at = now

    with db.transaction() as conn:
        db.update_unit(unit_id, record, conn=conn)
        if should_record(changes, attachments):
            db.append_history(
                unit_id,
                changes,
                user_id=user.id if user else None,
                note=note,
                photos=attachments,
                conn=conn,
            )
    logger.info("Updated unit %s (%d explicit change(s))", unit_id, len(changes))

    pushed = _changed_attributes(before, record)
    if dispatcher is not None and pushed:
        try:
            dispatcher.dispatch(unit_id, pushed)
        except Exception:
            logger.exception("Could not dispatch push of unit %s", unit_id)
    return record


__all__ = [
    "Actor",
    "EDITABLE_ATTRIBUTES",
    "REQUIRED_ON_CREATE",
    "UnitNotFoundError",
    "UnitValidationError",
    "create_unit",
    "update_unit",
]
