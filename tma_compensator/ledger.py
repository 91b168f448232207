"""Transaction ledger: balance and quota accounting."""

from __future__ import annotations

import dataclasses
import logging
import secrets
from typing import Iterable

from tma_compensator.schema import (
    BALANCE_MARGIN_SECONDS,
    DAILY_QUOTA,
    Transaction,
    quota_weight,
)
from tma_compensator.storage import StateStorage
from tma_compensator.time_model import Clock

logger = logging.getLogger(__name__)


def make_local_id(now_ms: int) -> str:
    return f"local-{now_ms}-{secrets.token_hex(6)}"


def sum_balance(transactions: Iterable[Transaction]) -> int:
    """Authoritative balance: sum of differences of non-time-tracker transactions."""

    return sum(tx.difference for tx in transactions if not tx.is_time_tracker)


class LedgerStore:
    """Most-recent-first transaction list with an incrementally kept balance.

    ``add_transaction`` and ``delete_transaction_at`` adjust the balance by the
    transaction's difference; every bulk change re-derives it from the list.
    """

    def __init__(
        self,
        storage: StateStorage | None = None,
        clock: Clock | None = None,
        daily_quota: int = DAILY_QUOTA,
        balance_margin_seconds: int = BALANCE_MARGIN_SECONDS,
    ):
        self.storage = storage if storage is not None else StateStorage()
        self.clock = clock if clock is not None else Clock()
        self.daily_quota = daily_quota
        self.balance_margin_seconds = balance_margin_seconds
        self._transactions: list[Transaction] = []
        self._balance_seconds = 0
        self.last_activity_ms: int | None = None

    @classmethod
    def load(cls, storage: StateStorage, clock: Clock | None = None, **kwargs) -> "LedgerStore":
        ledger = cls(storage=storage, clock=clock, **kwargs)
        ledger.reload()
        return ledger

    def reload(self) -> None:
        self._transactions = self.storage.get_transactions()
        self._balance_seconds = self.storage.get_balance_seconds()
        self.last_activity_ms = self.storage.get_last_registered_at_ms()

    def reset(self) -> None:
        self._transactions = []
        self._balance_seconds = 0
        self.last_activity_ms = None
        self._persist()

    # ---- Read-only views ----

    @property
    def transactions(self) -> tuple[Transaction, ...]:
        return tuple(self._transactions)

    @property
    def balance_seconds(self) -> int:
        return self._balance_seconds

    @property
    def quota_units_done(self) -> int:
        return sum(quota_weight(tx.item) for tx in self._transactions)

    @property
    def quota_units_remaining(self) -> int:
        return max(0, self.daily_quota - self.quota_units_done)

    def within_margin(self) -> bool:
        return abs(self._balance_seconds) <= self.balance_margin_seconds

    def index_of(self, tx_id: str) -> int | None:
        for index, tx in enumerate(self._transactions):
            if tx.id == tx_id:
                return index
        return None

    def get(self, tx_id: str) -> Transaction | None:
        index = self.index_of(tx_id)
        return self._transactions[index] if index is not None else None

    # ---- Local mutations ----

    def touch_activity(self, now_ms: int | None = None) -> None:
        self.last_activity_ms = now_ms if now_ms is not None else self.clock.now_ms()
        self.storage.set_last_registered_at_ms(self.last_activity_ms)

    def add_transaction(self, tx: Transaction) -> Transaction:
        """Insert ``tx`` at the head, apply its difference, return the stored record."""

        now_ms = self.clock.now_ms()
        stored = dataclasses.replace(
            tx,
            id=tx.id or make_local_id(now_ms),
            created_at_iso=tx.created_at_iso or self.clock.now_iso(),
        )
        self._transactions.insert(0, stored)
        if not stored.is_time_tracker:
            self._balance_seconds += stored.difference
        self.touch_activity(now_ms)
        self._persist()
        logger.info(
            "Added %s (%ss vs TMA %ss, diff %+d); balance now %+d",
            stored.key,
            stored.time_spent,
            stored.tma,
            stored.difference,
            self._balance_seconds,
        )
        return stored

    def delete_transaction_at(self, index: int) -> Transaction | None:
        """Remove the transaction at ``index``; the exact inverse of adding it."""

        if not isinstance(index, int) or index < 0 or index >= len(self._transactions):
            return None
        removed = self._transactions.pop(index)
        if not removed.is_time_tracker:
            self._balance_seconds -= removed.difference
        self._persist()
        logger.info("Deleted %s at %d; balance now %+d", removed.key, index, self._balance_seconds)
        return removed

    # ---- Bulk / external changes ----

    def recompute_balance_from_transactions(self) -> int:
        self._balance_seconds = sum_balance(self._transactions)
        return self._balance_seconds

    def replace_all(self, transactions: Iterable[Transaction]) -> None:
        self._transactions = list(transactions)
        self.recompute_balance_from_transactions()
        self._persist()

    def replace_by_id(self, tx_id: str, replacement: Transaction) -> bool:
        """Swap the record carrying ``tx_id`` in place, keeping list order."""

        index = self.index_of(tx_id)
        if index is None:
            return False
        self._transactions[index] = replacement
        self.recompute_balance_from_transactions()
        self._persist()
        return True

    def merge(self, tx: Transaction) -> bool:
        """Upsert a canonical record by id; unknown ids go to the head. Returns True if inserted."""

        if not tx.id:
            return False
        index = self.index_of(tx.id)
        if index is None:
            self._transactions.insert(0, tx)
        else:
            self._transactions[index] = tx
        self.recompute_balance_from_transactions()
        self._persist()
        return index is None

    def remove_by_id(self, tx_id: str) -> Transaction | None:
        index = self.index_of(tx_id)
        if index is None:
            return None
        removed = self._transactions.pop(index)
        self.recompute_balance_from_transactions()
        self._persist()
        return removed

    def _persist(self) -> None:
        self.storage.set_balance_seconds(self._balance_seconds)
        self.storage.set_transactions(self._transactions)
