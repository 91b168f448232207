"""Paused ("paralyzed") work bucket, several entries per action key."""

from __future__ import annotations

import dataclasses
import logging

from tma_compensator.normalize import make_paused_entry_id, normalize_paused_store, utc_now_iso
from tma_compensator.schema import PausedWorkEntry
from tma_compensator.storage import StateStorage

logger = logging.getLogger(__name__)

_PATCHABLE_FIELDS = {"item", "type", "tma", "accumulated_seconds"}


class PausedWorkStore:
    """Chronological list of paused entries per key; the last one is the latest.

    Storage is the source of truth and is normalized on every read, so a
    hand-edited or legacy value never reaches the callers unrepaired.
    """

    def __init__(self, storage: StateStorage):
        self.storage = storage

    def snapshot(self) -> dict[str, list[PausedWorkEntry]]:
        return self.storage.get_paused_work()

    def _save(self, store: dict[str, list[PausedWorkEntry]]) -> None:
        self.storage.set_paused_work(normalize_paused_store({k: [e.to_dict() for e in v] for k, v in store.items()}))

    def entries(self, key: str) -> list[PausedWorkEntry]:
        return list(self.snapshot().get(key, []))

    def count(self, key: str) -> int:
        return len(self.entries(key))

    def latest(self, key: str) -> PausedWorkEntry | None:
        entries = self.entries(key)
        return entries[-1] if entries else None

    def get(self, key: str, entry_id: str) -> PausedWorkEntry | None:
        for entry in self.entries(key):
            if entry.id == entry_id:
                return entry
        return None

    def push(self, key: str, item: str, type_: str, tma: int, accumulated_seconds: int) -> str | None:
        """Append a new entry and return its id, or ``None`` when it is not storable."""

        seconds = max(0, int(accumulated_seconds))
        if not key or not item or not type_ or seconds <= 0:
            logger.debug("Rejected paused entry for %s (%ss)", key, seconds)
            return None
        store = self.snapshot()
        entry = PausedWorkEntry(
            id=make_paused_entry_id(),
            item=item,
            type=type_,
            tma=max(0, int(tma)),
            accumulated_seconds=seconds,
            updated_at_iso=utc_now_iso(),
        )
        store.setdefault(key, []).append(entry)
        self._save(store)
        logger.info("Paused %s with %ss accumulated", key, seconds)
        return entry.id

    def pop(self, key: str, entry_id: str | None = None) -> PausedWorkEntry | None:
        """Remove ``entry_id`` (or the latest entry) and return it."""

        store = self.snapshot()
        entries = store.get(key, [])
        if not entries:
            return None
        if entry_id is None:
            removed = entries.pop()
        else:
            index = next((i for i, entry in enumerate(entries) if entry.id == entry_id), None)
            if index is None:
                return None
            removed = entries.pop(index)
        if entries:
            store[key] = entries
        else:
            store.pop(key, None)
        self._save(store)
        return removed

    def update(self, key: str, entry_id: str, **patch) -> bool:
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch paused entry fields: {sorted(unknown)}")
        store = self.snapshot()
        entries = store.get(key, [])
        for index, entry in enumerate(entries):
            if entry.id == entry_id:
                entries[index] = dataclasses.replace(entry, **patch, updated_at_iso=utc_now_iso())
                self._save(store)
                return True
        return False

    def sorted_entries(self) -> list[tuple[str, PausedWorkEntry]]:
        """All entries across keys, most recently updated first."""

        pairs = [(key, entry) for key, entries in self.snapshot().items() for entry in entries]
        return sorted(pairs, key=lambda pair: pair[1].updated_at_iso, reverse=True)

    def total_seconds(self) -> int:
        return sum(entry.accumulated_seconds for _, entry in self.sorted_entries())

    def clear(self) -> None:
        self.storage.set_paused_work({})
