"""Shared fakes for ledger tests: in-memory store, scripted source, truth resolver."""

from __future__ import annotations

from typing import Mapping

import pytest

from ledger.balances import BalanceResolver
from ledger.exceptions import StorageError, UpstreamError
from ledger.gate import ConcurrencyGate
from ledger.jobs.holder_sync import SyncOrchestrator
from ledger.models import Cursor, TransferActivity
from ledger.service import LedgerService
from ledger.transfers import TransferEventSource

A = "0x" + "a" * 40
B = "0x" + "b" * 40
C = "0x" + "c" * 40
D = "0x" + "d" * 40
ZERO = "0x" + "0" * 40


def transfer(sender: str, recipient: str, amount: int, block: int, log_index: int = 0) -> TransferActivity:
    return TransferActivity(
        sender=sender,
        recipient=recipient,
        amount=amount,
        block_number=block,
        tx_hash=f"0x{block:064x}",
        log_index=log_index,
    )


class MemoryHolderStore:
    """Same snapshot-then-cursor semantics as HolderStore, kept in dicts."""

    def __init__(self) -> None:
        self.cursor: Cursor | None = None
        self.snapshots: dict[int, dict[str, int]] = {}
        self.commits: list[int] = []
        self.fail_cursor_writes = 0

    def seed(self, holders: Mapping[str, int], last_block: int) -> None:
        self.snapshots = {1: dict(holders)}
        self.cursor = Cursor(last_processed_block=last_block, snapshot_version=1, revision=1)

    async def get_cursor(self) -> Cursor | None:
        return self.cursor

    async def get_resume_block(self, start_block: int = 0) -> int:
        if self.cursor is None:
            return start_block
        return self.cursor.last_processed_block + 1

    async def load_holders(self) -> dict[str, int]:
        if self.cursor is None:
            return {}
        return dict(self.snapshots.get(self.cursor.snapshot_version, {}))

    async def commit(self, holders: Mapping[str, int] | None, *, cursor_block: int) -> Cursor:
        if self.cursor is not None and cursor_block < self.cursor.last_processed_block:
            raise ValueError("cursor moved backwards")
        return self._write(holders, cursor_block)

    async def replace_holders(self, holders: Mapping[str, int]) -> Cursor:
        if self.cursor is None:
            raise StorageError("no cursor")
        return self._write(holders, self.cursor.last_processed_block)

    async def query_holders(self, *, sort_by: str, order: str, limit: int, offset: int) -> list[tuple[str, int]]:
        rows = list((await self.load_holders()).items())
        index = 0 if sort_by == "address" else 1
        rows.sort(key=lambda r: r[0])
        rows.sort(key=lambda r: r[index], reverse=order == "desc")
        return rows[offset : offset + limit]

    async def holder_totals(self) -> tuple[int, int]:
        holders = await self.load_holders()
        return len(holders), sum(holders.values())

    def close(self) -> None:
        return None

    def _write(self, holders: Mapping[str, int] | None, cursor_block: int) -> Cursor:
        committed = self.cursor.snapshot_version if self.cursor else 0
        version = committed
        if holders is not None:
            if any(b <= 0 for b in holders.values()):
                raise ValueError("non-positive balance")
            # Orphans above the committed version are discarded; the new
            # snapshot goes above the highest of them
            highest = max(self.snapshots, default=committed)
            self.snapshots = {v: s for v, s in self.snapshots.items() if v <= committed}
            version = max(committed, highest) + 1
            self.snapshots[version] = dict(holders)

        if self.fail_cursor_writes:
            self.fail_cursor_writes -= 1
            raise StorageError("cursor insert failed")

        self.cursor = Cursor(
            last_processed_block=cursor_block,
            snapshot_version=version,
            revision=(self.cursor.revision if self.cursor else 0) + 1,
        )
        self.commits.append(cursor_block)
        return self.cursor


class ScriptedTransferSource(TransferEventSource):
    def __init__(self, head: int, transfers: list[TransferActivity] | None = None) -> None:
        self.head = head
        self.transfers = list(transfers or [])
        self.ranges: list[tuple[int, int]] = []
        self.fail_from: set[int] = set()
        self.closed = False

    async def get_head_block(self) -> int:
        return self.head

    async def fetch_range(self, from_block: int, to_block: int) -> list[TransferActivity]:
        if from_block in self.fail_from:
            raise UpstreamError(f"upstream down at {from_block}")
        self.ranges.append((from_block, to_block))
        return [t for t in self.transfers if from_block <= t.block_number <= to_block]

    async def close(self) -> None:
        self.closed = True


class TruthBalanceResolver(BalanceResolver):
    """Answers from a dict of on-chain balances and records every batch."""

    def __init__(self, truth: Mapping[str, int] | None = None, batch_size: int = 3, concurrency: int = 2) -> None:
        super().__init__(batch_size, concurrency, group_delay=0)
        self.truth = dict(truth or {})
        self.batches: list[list[str]] = []
        self.fail_on: str | None = None

    async def _fetch_batch(self, addresses: list[str]) -> dict[str, int]:
        self.batches.append(list(addresses))
        if self.fail_on in addresses:
            raise UpstreamError(f"balanceOf({self.fail_on}) timed out")
        return {a: self.truth.get(a, 0) for a in addresses}

    @property
    def queried(self) -> list[str]:
        return [a for batch in self.batches for a in batch]


@pytest.fixture
def store() -> MemoryHolderStore:
    return MemoryHolderStore()


@pytest.fixture
def resolver() -> TruthBalanceResolver:
    return TruthBalanceResolver()


@pytest.fixture
def gate() -> ConcurrencyGate:
    return ConcurrencyGate(poll_interval=0.01)


def make_service(
    store: MemoryHolderStore,
    source: ScriptedTransferSource,
    resolver: TruthBalanceResolver,
    gate: ConcurrencyGate,
    **orchestrator_kwargs,
) -> LedgerService:
    orchestrator_kwargs.setdefault("chunk_delay", 0)
    orchestrator_kwargs.setdefault("start_block", 0)
    orchestrator = SyncOrchestrator(store, source, resolver, **orchestrator_kwargs)
    return LedgerService(store, source, resolver, gate=gate, orchestrator=orchestrator)
