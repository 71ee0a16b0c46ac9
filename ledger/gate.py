"""In-process gate that keeps sync and reconciliation passes apart.

The flags live in this process only. Running two engine instances against
the same ClickHouse database needs a shared lock, which this does not
provide.
"""

from __future__ import annotations

import asyncio
import logging

from ledger.config import GATE_POLL_INTERVAL

logger = logging.getLogger(__name__)


class ConcurrencyGate:
    """Two flags, ``syncing`` and ``reconciling``.

    All methods run on the event loop thread and never await between the
    check and the set, so check-and-set is atomic.
    """

    def __init__(self, poll_interval: float = GATE_POLL_INTERVAL) -> None:
        self.syncing = False
        self.reconciling = False
        self._poll_interval = poll_interval

    def try_start_sync(self) -> bool:
        """Claim the sync flag. False when any pass is already running."""
        if self.syncing or self.reconciling:
            return False
        self.syncing = True
        return True

    def end_sync(self) -> None:
        self.syncing = False

    async def start_reconcile(self) -> bool:
        """Wait for an in-flight sync to finish, then claim the reconcile flag.

        Returns False if another reconciliation already holds the flag.
        """
        waited = 0
        while self.syncing:
            if waited == 0:
                logger.info("reconcile_waiting_for_sync")
            waited += 1
            await asyncio.sleep(self._poll_interval)

        if self.reconciling:
            return False
        self.reconciling = True
        return True

    def end_reconcile(self) -> None:
        self.reconciling = False

    def status(self) -> dict[str, bool]:
        return {"syncing": self.syncing, "reconciling": self.reconciling}
