"""Transfer event sources: explorer transaction history or node event logs.

Both variants return the same ``TransferActivity`` tuples for an inclusive
block range, sorted in chain order, and raise on malformed upstream data
instead of returning an empty range.
"""

from __future__ import annotations

import abc
import asyncio
import logging

from pydantic import ValidationError

from ledger.accounting import chain_order
from ledger.api.explorer_client import ExplorerClient
from ledger.api.rpc_client import RpcClient, parse_quantity
from ledger.config import (
    EXPLORER_PAGE_DELAY,
    EXPLORER_PAGE_SIZE,
    LOG_BLOCK_SPAN,
    TOKEN_ADDRESS,
    TRANSFER_SOURCE,
)
from ledger.exceptions import MalformedResponseError
from ledger.models import TransferActivity

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


class TransferEventSource(abc.ABC):
    """Yields token transfer activity for block ranges."""

    @abc.abstractmethod
    async def get_head_block(self) -> int:
        """Latest block height the source can serve."""

    @abc.abstractmethod
    async def fetch_range(self, from_block: int, to_block: int) -> list[TransferActivity]:
        """All transfers in ``[from_block, to_block]``, in chain order."""

    async def close(self) -> None:
        return None


class ExplorerTransferSource(TransferEventSource):
    """Transaction-history variant backed by the explorer ``tokentx`` action."""

    def __init__(
        self,
        client: ExplorerClient | None = None,
        token_address: str = TOKEN_ADDRESS,
        page_size: int = EXPLORER_PAGE_SIZE,
        page_delay: float = EXPLORER_PAGE_DELAY,
    ) -> None:
        self._client = client or ExplorerClient()
        self._token = token_address.lower()
        self._page_size = page_size
        self._page_delay = page_delay

    async def close(self) -> None:
        await self._client.close()

    async def get_head_block(self) -> int:
        return await self._client.get_block_number()

    async def fetch_range(self, from_block: int, to_block: int) -> list[TransferActivity]:
        """Page through the range by sliding ``startblock`` forward.

        A full page means the API window was exhausted; the next request
        restarts at the last block seen. That block's rows were already
        taken from the previous page, so the same number of leading rows
        at that block is skipped. ``tokentx`` rows carry no log index, so
        two transfers in one transaction are told apart only by position.
        """
        transfers: list[TransferActivity] = []
        start = from_block
        overlap = 0

        while True:
            rows = await self._client.fetch_token_transfers(
                self._token, start, to_block, offset=self._page_size,
            )
            page = [_parse_explorer_row(row) for row in rows]

            skipped = 0
            while skipped < overlap and skipped < len(page) and page[skipped].block_number == start:
                skipped += 1
            if skipped < overlap:
                raise MalformedResponseError(
                    f"Explorer returned {skipped} rows for block {start}, expected at least {overlap}"
                )
            transfers.extend(page[skipped:])

            if len(rows) < self._page_size:
                break

            last_block = page[-1].block_number
            # A single block holding a full page cannot be split any further
            if last_block <= start:
                raise MalformedResponseError(
                    f"Block {start} has more than {self._page_size} transfers"
                )
            overlap = sum(1 for tx in page if tx.block_number == last_block)
            start = last_block
            await asyncio.sleep(self._page_delay)

        logger.debug(
            "explorer_range_fetched",
            extra={"from_block": from_block, "to_block": to_block, "transfers": len(transfers)},
        )
        return chain_order(transfers)


class LogTransferSource(TransferEventSource):
    """Event-log variant backed by ``eth_getLogs`` on a node."""

    def __init__(
        self,
        client: RpcClient | None = None,
        token_address: str = TOKEN_ADDRESS,
        block_span: int = LOG_BLOCK_SPAN,
    ) -> None:
        if block_span < 1:
            raise ValueError("block_span must be positive")
        self._client = client or RpcClient()
        self._token = token_address.lower()
        self._block_span = block_span

    async def close(self) -> None:
        await self._client.close()

    async def get_head_block(self) -> int:
        return await self._client.get_block_number()

    async def fetch_range(self, from_block: int, to_block: int) -> list[TransferActivity]:
        transfers: list[TransferActivity] = []
        start = from_block
        while start <= to_block:
            end = min(start + self._block_span - 1, to_block)
            logs = await self._client.get_logs(
                address=self._token,
                topics=[TRANSFER_TOPIC],
                from_block=start,
                to_block=end,
            )
            transfers.extend(decode_transfer_log(log) for log in logs)
            start = end + 1
        return chain_order(transfers)


def _parse_explorer_row(row: dict) -> TransferActivity:
    try:
        return TransferActivity(
            sender=row["from"],
            recipient=row["to"],
            amount=int(row["value"]),
            block_number=int(row["blockNumber"]),
            tx_hash=row.get("hash", ""),
            log_index=int(row.get("logIndex") or 0),
        )
    except (KeyError, TypeError, ValueError, ValidationError) as exc:
        raise MalformedResponseError(f"Malformed tokentx row: {row!r:.200}") from exc


def decode_transfer_log(log: dict) -> TransferActivity:
    """Decode an ERC-20 ``Transfer`` log (indexed from/to, amount in data)."""
    topics = log.get("topics") if isinstance(log, dict) else None
    if not isinstance(topics, list) or len(topics) != 3:
        raise MalformedResponseError(f"Not an ERC-20 Transfer log: {log!r:.200}")
    if str(topics[0]).lower() != TRANSFER_TOPIC:
        raise MalformedResponseError(f"Unexpected topic {topics[0]!r}")
    try:
        return TransferActivity(
            sender=_topic_address(topics[1]),
            recipient=_topic_address(topics[2]),
            amount=parse_quantity(log.get("data"), "Transfer data"),
            block_number=parse_quantity(log.get("blockNumber"), "blockNumber"),
            tx_hash=log.get("transactionHash") or "",
            log_index=parse_quantity(log.get("logIndex", "0x0"), "logIndex"),
        )
    except ValidationError as exc:
        raise MalformedResponseError(f"Malformed Transfer log: {log!r:.200}") from exc


def _topic_address(topic: str) -> str:
    if not isinstance(topic, str) or len(topic) != 66:
        raise MalformedResponseError(f"Bad address topic {topic!r}")
    return "0x" + topic[-40:].lower()


def build_transfer_source(kind: str = TRANSFER_SOURCE) -> TransferEventSource:
    """Pick the transfer backend named in configuration."""
    if kind == "explorer":
        return ExplorerTransferSource()
    if kind == "rpc":
        return LogTransferSource()
    raise ValueError(f"Unknown transfer source: {kind!r}")
