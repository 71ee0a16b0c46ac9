"""ClickHouse-backed holder store with snapshot versioning.

ClickHouse cannot commit two tables in one transaction, so every write that
changes holders goes into a fresh snapshot (``snapshot_version``) and the
singleton cursor row is written last. The cursor row names the current
snapshot, which makes it the commit point: a crash before it is written
leaves the previous cursor and snapshot in force, and the orphaned rows are
discarded by the next commit.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

import clickhouse_connect
from clickhouse_connect.driver.client import Client

from ledger.config import (
    CLICKHOUSE_DATABASE,
    CLICKHOUSE_HOST,
    CLICKHOUSE_PASSWORD,
    CLICKHOUSE_PORT,
    CLICKHOUSE_SECURE,
    CLICKHOUSE_USER,
    START_BLOCK,
    WRITER_BASE_BACKOFF,
    WRITER_MAX_RETRIES,
)
from ledger.exceptions import StorageError
from ledger.models import Cursor

logger = logging.getLogger(__name__)

CURSOR_ID = "latest"
HOLDERS_TABLE = "token_holders"
CURSOR_TABLE = "sync_cursor"

TABLE_COLUMNS: dict[str, list[str]] = {
    HOLDERS_TABLE: ["snapshot_version", "address", "balance"],
    CURSOR_TABLE: [
        "id", "last_processed_block", "snapshot_version", "revision", "updated_at",
    ],
}

# Read API sort keys -> ORDER BY expressions (never interpolate user input)
SORT_COLUMNS = {
    "balance": "balance",
    "percentage": "balance",
    "address": "address",
}


class HolderStore:
    """Persist the holder snapshot and the sync cursor in ClickHouse."""

    _instance: HolderStore | None = None

    def __init__(
        self,
        client: Client | None = None,
        max_retries: int = WRITER_MAX_RETRIES,
        base_backoff: float = WRITER_BASE_BACKOFF,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._max_retries = max_retries
        self._base_backoff = base_backoff

    @classmethod
    def get_instance(cls) -> HolderStore:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def _get_client(self) -> Client:
        if self._client is None:
            self._client = clickhouse_connect.get_client(
                host=CLICKHOUSE_HOST,
                port=CLICKHOUSE_PORT,
                username=CLICKHOUSE_USER,
                password=CLICKHOUSE_PASSWORD,
                database=CLICKHOUSE_DATABASE,
                secure=CLICKHOUSE_SECURE,
                compress="lz4",
                connect_timeout=30,
                send_receive_timeout=300,
            )
        return self._client

    # ------------------------------------------------------------------
    # Cursor
    # ------------------------------------------------------------------

    async def get_cursor(self) -> Cursor | None:
        rows = await self._query(
            f"""
            SELECT last_processed_block, snapshot_version, revision
            FROM {CURSOR_TABLE} FINAL
            WHERE id = {{id:String}}
            """,
            {"id": CURSOR_ID},
        )
        if not rows:
            return None
        block, version, revision = rows[0]
        return Cursor(
            id=CURSOR_ID,
            last_processed_block=int(block),
            snapshot_version=int(version),
            revision=int(revision),
        )

    async def get_resume_block(self, start_block: int = START_BLOCK) -> int:
        """First block not yet folded into the holder set."""
        cursor = await self.get_cursor()
        if cursor is None:
            return start_block
        return cursor.last_processed_block + 1

    # ------------------------------------------------------------------
    # Holders
    # ------------------------------------------------------------------

    async def load_holders(self) -> dict[str, int]:
        """The committed snapshot as ``{address: balance}``."""
        cursor = await self.get_cursor()
        if cursor is None or cursor.snapshot_version == 0:
            return {}
        rows = await self._query(
            f"""
            SELECT address, balance
            FROM {HOLDERS_TABLE}
            WHERE snapshot_version = {{v:UInt64}}
            """,
            {"v": cursor.snapshot_version},
        )
        return {address: int(balance) for address, balance in rows}

    async def commit(
        self,
        holders: Mapping[str, int] | None,
        *,
        cursor_block: int,
    ) -> Cursor:
        """Write *holders* as the new snapshot, then advance the cursor.

        ``holders`` is the complete holder set after the chunk; ``None``
        advances the cursor and keeps the current snapshot.
        """
        current = await self.get_cursor()
        if current is not None and cursor_block < current.last_processed_block:
            raise ValueError(
                f"Cursor cannot move back from {current.last_processed_block} to {cursor_block}"
            )
        return await self._write(current, holders, cursor_block)

    async def replace_holders(self, holders: Mapping[str, int]) -> Cursor:
        """Replace the whole holder set without moving the cursor block."""
        current = await self.get_cursor()
        if current is None:
            raise StorageError("Cannot replace holders before the first sync")
        return await self._write(current, holders, current.last_processed_block)

    async def query_holders(
        self,
        *,
        sort_by: str,
        order: str,
        limit: int,
        offset: int,
    ) -> list[tuple[str, int]]:
        cursor = await self.get_cursor()
        if cursor is None or cursor.snapshot_version == 0:
            return []
        column = SORT_COLUMNS[sort_by]
        direction = "ASC" if order.lower() == "asc" else "DESC"
        rows = await self._query(
            f"""
            SELECT address, balance
            FROM {HOLDERS_TABLE}
            WHERE snapshot_version = {{v:UInt64}}
            ORDER BY {column} {direction}, address ASC
            LIMIT {{limit:UInt32}} OFFSET {{offset:UInt64}}
            """,
            {"v": cursor.snapshot_version, "limit": limit, "offset": offset},
        )
        return [(address, int(balance)) for address, balance in rows]

    async def holder_totals(self) -> tuple[int, int]:
        """``(holder_count, total_supply)`` of the committed snapshot."""
        cursor = await self.get_cursor()
        if cursor is None or cursor.snapshot_version == 0:
            return 0, 0
        rows = await self._query(
            f"""
            SELECT count(), sum(balance)
            FROM {HOLDERS_TABLE}
            WHERE snapshot_version = {{v:UInt64}}
            """,
            {"v": cursor.snapshot_version},
        )
        count, supply = rows[0] if rows else (0, 0)
        return int(count), int(supply or 0)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def run_migration(self, sql: str) -> None:
        """Execute raw SQL (for schema migration)."""
        client = self._get_client()
        for statement in sql.split(";"):
            statement = statement.strip()
            if statement:
                client.command(statement)
        logger.info("migration_complete")

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _write(
        self,
        current: Cursor | None,
        holders: Mapping[str, int] | None,
        cursor_block: int,
    ) -> Cursor:
        committed = current.snapshot_version if current else 0
        revision = (current.revision if current else 0) + 1
        version = committed

        if holders is not None:
            bad = [a for a, b in holders.items() if b <= 0]
            if bad:
                raise ValueError(f"Refusing to store non-positive balance for {bad[0]}")
            # Always above any orphan version; replicated tables drop repeated blocks
            version = await self._discard_orphans(committed) + 1
            rows = [[version, address, balance] for address, balance in holders.items()]
            if rows:
                await self._insert_with_retry(
                    HOLDERS_TABLE, rows, settings={"insert_deduplicate": 0},
                )

        cursor = Cursor(
            id=CURSOR_ID,
            last_processed_block=cursor_block,
            snapshot_version=version,
            revision=revision,
        )
        await self._insert_with_retry(CURSOR_TABLE, [[
            CURSOR_ID,
            cursor.last_processed_block,
            cursor.snapshot_version,
            cursor.revision,
            datetime.now(timezone.utc),
        ]])

        if version != committed:
            await self._prune(committed)
        logger.info(
            "ledger_commit",
            extra={
                "cursor_block": cursor_block,
                "snapshot_version": version,
                "holders": None if holders is None else len(holders),
            },
        )
        return cursor

    async def _discard_orphans(self, committed: int) -> int:
        """Drop rows of snapshots written after the committed cursor.

        Returns the highest snapshot version in use, orphans included.
        """
        rows = await self._query(
            f"""
            SELECT count(), max(snapshot_version)
            FROM {HOLDERS_TABLE}
            WHERE snapshot_version > {{v:UInt64}}
            """,
            {"v": committed},
        )
        count, highest = rows[0] if rows else (0, 0)
        if count:
            logger.warning(
                "orphan_snapshot_discarded",
                extra={"committed_version": committed, "orphan_version": int(highest), "rows": int(count)},
            )
            await self._delete_where("snapshot_version > {v:UInt64}", committed)
        return max(committed, int(highest or 0))

    async def _prune(self, keep_from: int) -> None:
        """Drop snapshots older than *keep_from* (readers may still hold it)."""
        if keep_from <= 1:
            return
        await self._delete_where("snapshot_version < {v:UInt64}", keep_from)

    async def _delete_where(self, condition: str, version: int) -> None:
        client = self._get_client()
        await asyncio.to_thread(
            client.command,
            f"ALTER TABLE {HOLDERS_TABLE} DELETE WHERE {condition}",
            parameters={"v": version},
            settings={"mutations_sync": 1},
        )

    async def _query(self, sql: str, parameters: dict[str, Any]) -> list[tuple]:
        client = self._get_client()
        result = await asyncio.to_thread(client.query, sql, parameters=parameters)
        return result.result_rows

    async def _insert_with_retry(
        self,
        table: str,
        rows: list[list[Any]],
        settings: dict[str, Any] | None = None,
    ) -> None:
        columns = TABLE_COLUMNS[table]
        backoff = self._base_backoff

        for attempt in range(1, self._max_retries + 1):
            try:
                client = self._get_client()
                await asyncio.to_thread(
                    client.insert, table, rows, column_names=columns, settings=settings,
                )
                logger.debug("insert_ok", extra={"table": table, "rows": len(rows)})
                return
            except Exception as exc:
                logger.warning(
                    "insert_retry",
                    extra={
                        "table": table,
                        "attempt": attempt,
                        "backoff": backoff,
                        "rows": len(rows),
                    },
                    exc_info=True,
                )
                if attempt == self._max_retries:
                    logger.error(
                        "insert_failed",
                        extra={"table": table, "rows": len(rows)},
                    )
                    raise StorageError(f"Insert into {table} failed: {exc}") from exc
                await asyncio.sleep(backoff)
                backoff *= 2
                # Reconnect on next attempt
                if self._owns_client:
                    self._client = None
