"""Apply the ledger's ClickHouse DDL in file-name order."""

from __future__ import annotations

import logging
from pathlib import Path

from ledger.store import HolderStore

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).parent / "schema"


def schema_files(schema_dir: Path = SCHEMA_DIR) -> list[Path]:
    return sorted(schema_dir.glob("*.sql"))


def run_migration(store: HolderStore | None = None, schema_dir: Path = SCHEMA_DIR) -> list[str]:
    """Create the cursor and holder tables if missing.

    Every statement is ``IF NOT EXISTS``, so this runs on each startup.
    Returns the names of the files applied.
    """
    store = store or HolderStore.get_instance()
    applied = []

    for path in schema_files(schema_dir):
        store.run_migration(path.read_text())
        applied.append(path.name)
        logger.info("migration_applied", extra={"file": path.name})

    if not applied:
        logger.warning("migration_skip", extra={"dir": str(schema_dir), "reason": "no schema files"})
    return applied
