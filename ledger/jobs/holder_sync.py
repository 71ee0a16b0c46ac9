"""Job: incremental holder sync from the last committed cursor to chain head.

Each pass walks ``[resume, head]`` in fixed-size chunks. For every chunk it:

1. Fetches transfer activity from the configured transfer source
2. Derives the new holder set, either by applying signed deltas to the
   committed balances (incremental) or by re-resolving every touched
   address on-chain (authoritative); the strategy is fixed per pass
3. Commits the holder set and the chunk's last block as the new cursor

A failure aborts the pass before the failing chunk is committed. Chunks
committed earlier stay committed, so the next pass resumes right after the
last one that made it.
"""

from __future__ import annotations

import asyncio
import logging

from ledger.accounting import apply_transfers, positive_only, touched_addresses
from ledger.balances import BalanceResolver
from ledger.config import BLOCK_CHUNK_SIZE, CHUNK_DELAY, START_BLOCK, SYNC_STRATEGY
from ledger.models import SyncResult, SyncState, SyncStrategy, TransferActivity
from ledger.store import HolderStore
from ledger.transfers import TransferEventSource

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Drives sync passes. Callers serialize passes through the gate."""

    def __init__(
        self,
        store: HolderStore,
        source: TransferEventSource,
        resolver: BalanceResolver | None = None,
        *,
        strategy: SyncStrategy | str = SYNC_STRATEGY,
        chunk_size: int = BLOCK_CHUNK_SIZE,
        chunk_delay: float = CHUNK_DELAY,
        start_block: int = START_BLOCK,
    ) -> None:
        self.strategy = SyncStrategy(strategy)
        if self.strategy is SyncStrategy.AUTHORITATIVE and resolver is None:
            raise ValueError("Authoritative sync needs a balance resolver")
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self._store = store
        self._source = source
        self._resolver = resolver
        self._chunk_size = chunk_size
        self._chunk_delay = chunk_delay
        self._start_block = start_block
        self.state = SyncState.IDLE
        self.last_error: str | None = None

    async def run_pass(self) -> SyncResult:
        """Run one pass to chain head. Raises on the first unrecoverable error."""
        try:
            result = await self._run()
        except Exception as exc:
            self.state = SyncState.FAILED
            self.last_error = str(exc) or type(exc).__name__
            logger.error(
                "sync_pass_failed",
                extra={"error": self.last_error, "strategy": self.strategy.value},
                exc_info=True,
            )
            raise
        else:
            self.last_error = None
            return result
        finally:
            self.state = SyncState.IDLE

    async def _run(self) -> SyncResult:
        self.state = SyncState.SCANNING
        resume = await self._store.get_resume_block(self._start_block)
        head = await self._source.get_head_block()
        result = SyncResult(from_block=resume, to_block=head, strategy=self.strategy)

        if resume > head:
            logger.debug("sync_up_to_date", extra={"resume_block": resume, "head_block": head})
            return result

        logger.info(
            "sync_pass_started",
            extra={"from_block": resume, "to_block": head, "strategy": self.strategy.value},
        )

        chunk_start = resume
        while chunk_start <= head:
            chunk_end = min(chunk_start + self._chunk_size - 1, head)

            self.state = SyncState.SCANNING
            transfers = await self._source.fetch_range(chunk_start, chunk_end)

            self.state = SyncState.RESOLVING
            holders = await self._derive_holders(transfers)

            self.state = SyncState.COMMITTING
            await self._store.commit(holders, cursor_block=chunk_end)

            result.chunks += 1
            result.transfers += len(transfers)
            if holders is not None:
                result.holders = len(holders)
            logger.info(
                "sync_chunk_committed",
                extra={
                    "from_block": chunk_start,
                    "to_block": chunk_end,
                    "transfers": len(transfers),
                    "holders": None if holders is None else len(holders),
                },
            )

            chunk_start = chunk_end + 1
            if chunk_start <= head:
                await asyncio.sleep(self._chunk_delay)

        logger.info(
            "sync_pass_complete",
            extra={
                "from_block": resume,
                "to_block": head,
                "chunks": result.chunks,
                "transfers": result.transfers,
            },
        )
        return result

    async def _derive_holders(
        self, transfers: list[TransferActivity]
    ) -> dict[str, int] | None:
        """Complete holder set after *transfers*, or None if nothing changed."""
        if not transfers:
            return None

        if self.strategy is SyncStrategy.INCREMENTAL:
            prior = await self._store.load_holders()
            return positive_only(apply_transfers(prior, transfers))

        touched = touched_addresses(transfers)
        if not touched:
            return None
        assert self._resolver is not None
        resolved = await self._resolver.resolve(touched)
        holders = await self._store.load_holders()
        for address in touched:
            if address in resolved:
                holders[address] = resolved[address]
            else:
                holders.pop(address, None)
        return holders
