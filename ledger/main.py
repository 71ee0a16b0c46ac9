"""Run the holder ledger: create tables, then sync and serve until signalled."""

from __future__ import annotations

import asyncio
import logging

from ledger.config import (
    SYNC_STRATEGY,
    TOKEN_ADDRESS,
    TRANSFER_SOURCE,
    setup_logging,
)
from ledger.migrate import run_migration
from ledger.scheduler import LedgerScheduler

logger = logging.getLogger(__name__)


async def _serve() -> None:
    setup_logging()
    logger.info(
        "ledger_boot",
        extra={
            "token": TOKEN_ADDRESS,
            "transfer_source": TRANSFER_SOURCE,
            "strategy": SYNC_STRATEGY,
        },
    )

    # Tables must exist before the first pass reads the cursor
    try:
        applied = run_migration()
    except Exception:
        logger.error("ledger_schema_failed", exc_info=True)
        raise
    logger.info("ledger_schema_ready", extra={"files": applied})

    await LedgerScheduler().start()


def main() -> None:
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
