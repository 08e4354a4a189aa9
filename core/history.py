"""Change pairs recorded in the unit history log."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

__all__ = [
    "ChangePair",
    "HistoryEntry",
    "PhotoAttachment",
    "SEED_FIELD",
    "diff_values",
    "display_value",
    "normalize_value",
    "seed_change",
    "should_record",
]

SEED_FIELD = "seed"
_EMPTY_MARKERS = frozenset({"", "-"})


@dataclass(frozen=True)
class ChangePair:
    field: str
    previous: Optional[str]
    current: Optional[str]

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"field": self.field, "previous": self.previous, "current": self.current}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "ChangePair":
        previous = data.get("previous")
        current = data.get("current")
        return cls(
            field=str(data.get("field") or ""),
            previous=None if previous is None else str(previous),
            current=None if current is None else str(current),
        )

    @property
    def is_trivial(self) -> bool:
        return normalize_value(self.previous) == normalize_value(self.current)


@dataclass(frozen=True)
class PhotoAttachment:
    url: str
    label: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "label": self.label}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "PhotoAttachment":
        return cls(url=str(data.get("url") or ""), label=str(data.get("label") or ""))


def normalize_value(value: object) -> str:
    """Return the comparison form of ``value``; empty, ``None`` and ``-`` are equal.

    Dates compare at day granularity.
    """

    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    if text in _EMPTY_MARKERS:
        return ""
    return text


def display_value(value: object) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return normalize_value(value)
    return str(value)


def diff_values(
    previous: Mapping[str, object],
    current: Mapping[str, object],
    names: Optional[Mapping[str, str]] = None,
    *,
    prefix: str = "",
) -> List[ChangePair]:
    """Return a change pair for every key of ``current`` that differs from ``previous``.

    ``names`` maps attribute names to the field names used in the log.
    """

    changes: List[ChangePair] = []
    for key, value in current.items():
        before = previous.get(key)
        if normalize_value(before) == normalize_value(value):
            continue
        name = (names or {}).get(key, key)
        changes.append(ChangePair(field=f"{prefix}{name}", previous=display_value(before), current=display_value(value)))
    return changes


def seed_change(source: str) -> ChangePair:
    return ChangePair(field=SEED_FIELD, previous=None, current=f"Imported from {source}")


def should_record(changes: Iterable[ChangePair], photos: Sequence[PhotoAttachment] = ()) -> bool:
    """A history entry is only written for a real change or an attached photo."""

    if any(photo.url for photo in photos):
        return True
    return any(not change.is_trivial for change in changes)


@dataclass
class HistoryEntry:
    unit_id: str
    changes: List[ChangePair]
    user_id: Optional[str] = None
    note: Optional[str] = None
    photos: List[PhotoAttachment] = field(default_factory=list)
    created_at: Optional[str] = None
    id: Optional[int] = None
