"""JSON lines outbox holding record pushes that could not be delivered."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence

from core import app_paths

logger = logging.getLogger(__name__)


def _as_list(value: object) -> List[str]:
    return [str(item) for item in value] if isinstance(value, list) else []


class OutboxQueue:
    """Persist failed push payloads to disk until they are replayed."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path or app_paths.data_path("outbox.jsonl")
        self._lock = threading.Lock()
        if self._path.parent and not self._path.parent.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def append(self, entries: Sequence[Mapping[str, object]]) -> None:
        if not entries:
            return
        serialised = [json.dumps(entry, ensure_ascii=False) for entry in entries]
        with self._lock:
            with self._path.open("a", encoding="utf-8") as handle:
                for line in serialised:
                    handle.write(line)
                    handle.write("\n")

    def merge(self, entry: Mapping[str, object], *, key: str = "unit_id") -> None:
        """Queue ``entry``, folding it into a pending entry with the same ``key``.

        The ``fields`` lists of both are united; the newer entry's other
        values win.
        """

        with self._lock:
            entries = self._read_entries()
            for index, pending in enumerate(entries):
                if pending.get(key) != entry.get(key):
                    continue
                fields = sorted({*_as_list(pending.get("fields")), *_as_list(entry.get("fields"))})
                entries[index] = {**pending, **entry, "fields": fields}
                self._rewrite(entries)
                return
        self.append([entry])

    def pending(self) -> List[Mapping[str, object]]:
        with self._lock:
            return self._read_entries()

    def _read_entries(self) -> List[Mapping[str, object]]:
        if not self._path.exists():
            return []
        with self._path.open("r", encoding="utf-8") as handle:
            lines = handle.readlines()
        entries: List[Mapping[str, object]] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Dropping corrupt outbox line: %s", line[:80])
                continue
            if isinstance(payload, dict):
                entries.append(payload)
        return entries

    def _rewrite(self, entries: Sequence[Mapping[str, object]]) -> None:
        if not entries:
            try:
                self._path.unlink()
            except FileNotFoundError:
                pass
            return
        with self._path.open("w", encoding="utf-8") as handle:
            for payload in entries:
                handle.write(json.dumps(payload, ensure_ascii=False))
                handle.write("\n")

    def drain(self, handler: Callable[[Mapping[str, object]], bool]) -> int:
        """Replay queued entries through ``handler``.

        ``handler`` returns ``True`` when the entry was delivered; entries for
        which it returns ``False`` or raises stay queued.  Returns the number
        of delivered entries.
        """

        with self._lock:
            entries = self._read_entries()

        sent: List[Mapping[str, object]] = []
        for payload in entries:
            try:
                delivered = handler(payload)
            except Exception:
                logger.exception("Outbox replay failed for %s", payload.get("unit_id"))
                delivered = False
            if delivered:
                sent.append(payload)

        with self._lock:
            # Only the exact payloads that were sent are removed; entries
            # appended or merged while draining stay queued.
            remaining = self._read_entries()
            for payload in sent:
                if payload in remaining:
                    remaining.remove(payload)
            self._rewrite(remaining)

        return len(sent)


__all__ = ["OutboxQueue"]
