"""Job: full audit of the stored holder set against on-chain balances."""

from __future__ import annotations

import logging

from ledger.balances import BalanceResolver
from ledger.gate import ConcurrencyGate
from ledger.models import ReconciliationResult
from ledger.store import HolderStore

logger = logging.getLogger(__name__)


class ReconciliationJob:
    """Re-resolve every stored holder and replace the set if it drifted.

    Waits for any running sync pass before it starts. Holds the gate's
    reconcile flag for the whole run so no sync pass starts meanwhile.
    """

    def __init__(
        self,
        store: HolderStore,
        resolver: BalanceResolver,
        gate: ConcurrencyGate,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._gate = gate

    async def run(self) -> ReconciliationResult | None:
        """Returns None when another reconciliation is already running."""
        if not await self._gate.start_reconcile():
            logger.info("reconcile_skip", extra={"reason": "already_running"})
            return None
        try:
            return await self._reconcile()
        finally:
            self._gate.end_reconcile()

    async def _reconcile(self) -> ReconciliationResult:
        stored = await self._store.load_holders()
        if not stored:
            logger.debug("reconcile_skip", extra={"reason": "no_holders"})
            return ReconciliationResult()

        resolved = await self._resolver.resolve(stored.keys())
        result = ReconciliationResult(
            checked=len(stored),
            dropped=sorted(stored.keys() - resolved.keys()),
            changed=sorted(
                a for a, balance in resolved.items() if stored.get(a) != balance
            ),
        )

        if not result.drift:
            logger.info("reconcile_complete", extra={"checked": result.checked, "drift": False})
            return result

        await self._store.replace_holders(resolved)
        result.written = True
        logger.warning(
            "reconcile_drift_corrected",
            extra={
                "checked": result.checked,
                "dropped": len(result.dropped),
                "changed": len(result.changed),
            },
        )
        return result
