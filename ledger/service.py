"""Wires the sync engine together and exposes the manual trigger."""

from __future__ import annotations

import logging

from ledger.balances import BalanceResolver, build_balance_resolver
from ledger.config import SYNC_STRATEGY
from ledger.exceptions import SyncInProgressError
from ledger.gate import ConcurrencyGate
from ledger.jobs.holder_sync import SyncOrchestrator
from ledger.jobs.reconciliation import ReconciliationJob
from ledger.models import ReconciliationResult, SyncResult
from ledger.store import HolderStore
from ledger.transfers import TransferEventSource, build_transfer_source

logger = logging.getLogger(__name__)


class LedgerService:
    """Entry points for sync and reconciliation passes.

    Attributes:
        store: Holder snapshot and cursor persistence.
        gate: Process-local flags serializing passes.
        orchestrator: Runs sync passes.
        reconciliation: Runs audit passes.
    """

    def __init__(
        self,
        store: HolderStore,
        source: TransferEventSource,
        resolver: BalanceResolver,
        *,
        gate: ConcurrencyGate | None = None,
        orchestrator: SyncOrchestrator | None = None,
    ) -> None:
        self.store = store
        self.gate = gate or ConcurrencyGate()
        self._source = source
        self._resolver = resolver
        self.orchestrator = orchestrator or SyncOrchestrator(
            store, source, resolver, strategy=SYNC_STRATEGY,
        )
        self.reconciliation = ReconciliationJob(store, resolver, self.gate)

    @classmethod
    def from_config(cls) -> LedgerService:
        return cls(
            HolderStore.get_instance(),
            build_transfer_source(),
            build_balance_resolver(),
        )

    def is_syncing(self) -> bool:
        return self.gate.syncing

    async def sync(self) -> SyncResult:
        """Run one sync pass now.

        Raises SyncInProgressError immediately if a pass is running; any
        failure of the pass itself propagates to the caller.
        """
        if not self.gate.try_start_sync():
            raise SyncInProgressError()
        try:
            return await self.orchestrator.run_pass()
        finally:
            self.gate.end_sync()

    async def reconcile(self) -> ReconciliationResult | None:
        return await self.reconciliation.run()

    async def close(self) -> None:
        await self._source.close()
        await self._resolver.close()
        self.store.close()
