"""Optimistic local writes reconciled against an asynchronous cloud mirror.

Local changes apply to the ledger immediately and are uploaded in the
background. A confirmed insert swaps the optimistic ``local-`` record for the
canonical one in place. Remote events are merged by id. Anything applied
from a remote source is never uploaded again.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Optional, Protocol

from tma_compensator.ledger import LedgerStore
from tma_compensator.normalize import normalize_transaction
from tma_compensator.schema import Transaction

logger = logging.getLogger(__name__)

TRANSACTIONS_TABLE = "transactions"
SETTINGS_TABLE = "settings"

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"


class CloudMirror(Protocol):
    async def upsert_settings(self, payload: dict) -> None: ...

    async def insert_transaction(self, tx: Transaction) -> Transaction | dict | None: ...

    async def delete_transaction(self, tx_id: str) -> None: ...


@dataclass(frozen=True)
class RemoteEvent:
    table: str
    kind: str
    row: dict


@dataclass
class PendingRecord:
    """An optimistic insert waiting for its canonical id."""

    local_id: str
    canonical_id: Optional[str] = None
    delete_requested: bool = False


class SyncReconciler:
    """Ledger wrapper that mirrors local writes and applies remote ones."""

    def __init__(
        self,
        ledger: LedgerStore,
        cloud: CloudMirror | None = None,
        on_settings: Callable[[dict], Any] | None = None,
    ):
        self.ledger = ledger
        self.cloud = cloud
        self.on_settings = on_settings
        self.pending: dict[str, PendingRecord] = {}
        self.applying_remote = False
        self._queued: list[Awaitable[None]] = []
        self._tasks: set[asyncio.Task] = set()
        self.counters = {"uploaded": 0, "confirmed": 0, "remote_applied": 0, "failures": 0}

    @contextmanager
    def remote_context(self) -> Iterator[None]:
        previous = self.applying_remote
        self.applying_remote = True
        try:
            yield
        finally:
            self.applying_remote = previous

    @property
    def transactions(self) -> tuple[Transaction, ...]:
        return self.ledger.transactions

    @property
    def balance_seconds(self) -> int:
        return self.ledger.balance_seconds

    def touch_activity(self, now_ms: int | None = None) -> None:
        self.ledger.touch_activity(now_ms)

    def _uploads_enabled(self, remote: bool) -> bool:
        return self.cloud is not None and not remote and not self.applying_remote

    # ---- Scheduling ----

    def _schedule(self, coro: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._queued.append(coro)
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def has_pending_work(self) -> bool:
        return bool(self._queued or self._tasks)

    async def flush(self) -> None:
        """Run queued cloud calls and wait for every in-flight one."""

        while self._queued or self._tasks:
            queued, self._queued = self._queued, []
            await asyncio.gather(*queued, *list(self._tasks))

    def drain(self) -> bool:
        """Flush queued cloud calls from synchronous code.

        Returns ``False`` without doing anything when an event loop is already
        running; tasks there are spawned directly and need no draining.
        """

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            if self._queued:
                asyncio.run(self.flush())
            return True
        return False

    def discard_queued(self) -> int:
        queued, self._queued = self._queued, []
        for coro in queued:
            close = getattr(coro, "close", None)
            if close is not None:
                close()
        if queued:
            logger.info("Discarded %s queued cloud calls", len(queued))
        return len(queued)

    async def _guarded(self, label: str, call: Awaitable[Any]) -> Any:
        try:
            return await call
        except Exception:  # noqa: BLE001
            self.counters["failures"] += 1
            logger.warning("Cloud %s failed", label, exc_info=True)
            return None

    # ---- Local writes ----

    def add_transaction(self, tx: Transaction, remote: bool = False) -> Transaction:
        if remote or self.applying_remote:
            with self.remote_context():
                if tx.id and not tx.is_local:
                    self.ledger.merge(tx)
                    return self.ledger.get(tx.id) or tx
                return self.ledger.add_transaction(tx)

        stored = self.ledger.add_transaction(tx)
        if self._uploads_enabled(remote):
            self.pending[stored.id] = PendingRecord(local_id=stored.id)
            self._schedule(self._upload(stored))
        return stored

    def delete_transaction_at(self, index: int, remote: bool = False) -> Transaction | None:
        removed = self.ledger.delete_transaction_at(index)
        if removed is None or not self._uploads_enabled(remote):
            return removed

        record = self.pending.get(removed.id)
        if record is not None:
            # Insert still in flight: delete the canonical row once it exists.
            record.delete_requested = True
            logger.debug("Deferred remote delete of %s until confirmed", removed.id)
        elif not removed.is_local:
            self._schedule(self._guarded("delete", self.cloud.delete_transaction(removed.id)))
        return removed

    def push_settings(self, payload: dict) -> bool:
        if not self._uploads_enabled(False):
            return False
        self._schedule(self._guarded("settings upsert", self.cloud.upsert_settings(dict(payload))))
        return True

    async def _upload(self, stored: Transaction) -> None:
        self.counters["uploaded"] += 1
        result = await self._guarded("insert", self.cloud.insert_transaction(stored))
        record = self.pending.pop(stored.id, PendingRecord(local_id=stored.id))
        confirmed = result if isinstance(result, Transaction) else normalize_transaction(result)
        if confirmed is None or not confirmed.id:
            return
        record.canonical_id = confirmed.id
        self.confirm(record, confirmed)

    def confirm(self, record: PendingRecord, confirmed: Transaction) -> None:
        """Swap the optimistic record for ``confirmed``; never leaves both."""

        with self.remote_context():
            if self.ledger.index_of(confirmed.id) is not None:
                # The event stream delivered the canonical row first.
                self.ledger.remove_by_id(record.local_id)
            elif not self.ledger.replace_by_id(record.local_id, confirmed):
                logger.debug("Optimistic record %s is gone; nothing to swap", record.local_id)

            if record.delete_requested:
                self.ledger.remove_by_id(confirmed.id)

        self.counters["confirmed"] += 1
        logger.info("Confirmed %s as %s", record.local_id, confirmed.id)
        if record.delete_requested and self.cloud is not None:
            self._schedule(self._guarded("delete", self.cloud.delete_transaction(confirmed.id)))

    # ---- Remote events ----

    def apply_remote_event(self, event: RemoteEvent) -> bool:
        """Merge one pushed change; returns True when anything was applied."""

        with self.remote_context():
            applied = self._apply(event)
        if applied:
            self.counters["remote_applied"] += 1
        return applied

    def _apply(self, event: RemoteEvent) -> bool:
        if event.table == SETTINGS_TABLE:
            if event.kind == DELETE or self.on_settings is None:
                return False
            self.on_settings(dict(event.row))
            return True

        if event.table != TRANSACTIONS_TABLE:
            logger.debug("Ignoring event for unknown table %r", event.table)
            return False

        if event.kind == DELETE:
            tx_id = str(event.row.get("id") or "")
            return bool(tx_id) and self.ledger.remove_by_id(tx_id) is not None

        if event.kind in (INSERT, UPDATE):
            tx = normalize_transaction(event.row)
            if tx is None or not tx.id:
                return False
            self.ledger.merge(tx)
            return True

        logger.debug("Ignoring unknown event kind %r", event.kind)
        return False
