"""
In-Memory Activity Store.

Process-local implementation of ActivityStore for tests and
single-process deployments without a database. Each method body
runs without suspension points, so every operation is atomic with
respect to other coroutines on the same event loop.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from chain_adapters.exceptions import StorageError
from chain_adapters.models import (
    BalanceSnapshot,
    CanonicalTransaction,
    Chain,
    DedupKey,
    WalletChainState,
)
from storage.interface import ActivityStore, InsertOutcome, merge_checkpoint


logger = logging.getLogger(__name__)


class InMemoryActivityStore(ActivityStore):
    """
    Dict-backed store.

    Failure injection for tests:
    - fail_keys: records with these dedup keys are reported as failed
    - fail_next_insert(): the next insert_transactions call raises
    """

    def __init__(self) -> None:
        self._transactions: dict[DedupKey, CanonicalTransaction] = {}
        self._states: dict[tuple[str, Chain], WalletChainState] = {}

        self.fail_keys: set[DedupKey] = set()
        self._pending_insert_error: Optional[Exception] = None
        self._pending_probe_error: Optional[Exception] = None

    # =========================================================
    # FAILURE INJECTION
    # =========================================================

    def fail_next_insert(self, error: Optional[Exception] = None) -> None:
        self._pending_insert_error = error or StorageError("Injected insert failure")

    def fail_next_probe(self, error: Optional[Exception] = None) -> None:
        self._pending_probe_error = error or StorageError("Injected probe failure")

    # =========================================================
    # TRANSACTIONS
    # =========================================================

    async def find_existing_keys(self, keys: Iterable[DedupKey]) -> set[DedupKey]:
        if self._pending_probe_error is not None:
            error, self._pending_probe_error = self._pending_probe_error, None
            raise error
        return {key for key in keys if key in self._transactions}

    async def insert_transactions(
        self,
        records: list[CanonicalTransaction],
    ) -> InsertOutcome:
        if self._pending_insert_error is not None:
            error, self._pending_insert_error = self._pending_insert_error, None
            raise error

        outcome = InsertOutcome()
        for record in records:
            key = record.dedup_key
            if key in self.fail_keys:
                outcome.failed.append(record)
            elif key in self._transactions:
                outcome.conflicts.append(record)
            else:
                self._transactions[key] = record
                outcome.inserted.append(record)

        logger.debug(
            f"Inserted {len(outcome.inserted)} records "
            f"({len(outcome.conflicts)} conflicts, {len(outcome.failed)} failed)"
        )
        return outcome

    async def list_transactions(
        self,
        wallet_address: Optional[str] = None,
        chain: Optional[Chain] = None,
        limit: Optional[int] = None,
    ) -> list[CanonicalTransaction]:
        records = [
            r for r in self._transactions.values()
            if (wallet_address is None or r.wallet_address == wallet_address)
            and (chain is None or r.chain == chain)
        ]
        records.sort(key=lambda r: r.cursor, reverse=True)
        return records[:limit] if limit is not None else records

    # =========================================================
    # WALLET STATE
    # =========================================================

    async def get_wallet_state(
        self,
        wallet_address: str,
        chain: Chain,
    ) -> Optional[WalletChainState]:
        state = self._states.get((wallet_address, chain))
        if state is None:
            return None
        # Callers get a copy; mutation goes through record_fetch only
        return WalletChainState(**vars(state))

    async def record_fetch(
        self,
        wallet_address: str,
        chain: Chain,
        balance: Optional[BalanceSnapshot],
        fetched_at: datetime,
        checkpoint_candidate: Optional[int],
    ) -> WalletChainState:
        key = (wallet_address, chain)
        state = self._states.get(key)
        if state is None:
            state = WalletChainState(wallet_address=wallet_address, chain=chain)
            self._states[key] = state

        if balance is not None:
            state.balance = balance.balance
            state.value_in_quote = balance.value_in_quote
        state.last_fetched_at = fetched_at
        state.checkpoint = merge_checkpoint(state.checkpoint, checkpoint_candidate)
        return WalletChainState(**vars(state))

    async def list_wallet_states(
        self,
        chain: Optional[Chain] = None,
    ) -> list[WalletChainState]:
        return [
            WalletChainState(**vars(s))
            for s in self._states.values()
            if chain is None or s.chain == chain
        ]
