"""Balance resolvers: batched, rate-limited ``balanceOf`` lookups."""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Iterable

from ledger.api.explorer_client import ExplorerClient
from ledger.api.rpc_client import RpcClient, parse_quantity
from ledger.config import (
    BALANCE_CONCURRENCY,
    BALANCE_GROUP_DELAY,
    BALANCE_SOURCE,
    EXPLORER_BALANCE_BATCH_SIZE,
    RPC_BALANCE_BATCH_SIZE,
    TOKEN_ADDRESS,
)
from ledger.exceptions import MalformedResponseError

logger = logging.getLogger(__name__)

# balanceOf(address)
BALANCE_OF_SELECTOR = "0x70a08231"


def _chunks(lst: list, n: int) -> list[list]:
    return [lst[i : i + n] for i in range(0, len(lst), n)]


class BalanceResolver(abc.ABC):
    """Resolve current token balances for a set of addresses.

    Addresses are split into batches of ``batch_size``; ``concurrency``
    batches run at once and the resolver sleeps ``group_delay`` seconds
    between groups. Any failing batch fails the whole call, so a result is
    always complete: an address missing from it holds nothing.
    """

    def __init__(
        self,
        batch_size: int,
        concurrency: int = BALANCE_CONCURRENCY,
        group_delay: float = BALANCE_GROUP_DELAY,
    ) -> None:
        if batch_size < 1 or concurrency < 1:
            raise ValueError("batch_size and concurrency must be positive")
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.group_delay = group_delay

    async def resolve(self, addresses: Iterable[str]) -> dict[str, int]:
        """Return ``{address: balance}`` for addresses with a positive balance."""
        ordered = sorted({a.lower() for a in addresses})
        batches = _chunks(ordered, self.batch_size)
        groups = _chunks(batches, self.concurrency)
        balances: dict[str, int] = {}

        for i, group in enumerate(groups):
            results = await asyncio.gather(*(self._fetch_batch(b) for b in group))
            for batch, result in zip(group, results):
                missing = [a for a in batch if a not in result]
                if missing:
                    raise MalformedResponseError(
                        f"No balance returned for {len(missing)} address(es), e.g. {missing[0]}"
                    )
                for address in batch:
                    if result[address] > 0:
                        balances[address] = result[address]

            if i < len(groups) - 1:
                await asyncio.sleep(self.group_delay)

        logger.info(
            "balances_resolved",
            extra={
                "addresses": len(ordered),
                "batches": len(batches),
                "holders": len(balances),
            },
        )
        return balances

    @abc.abstractmethod
    async def _fetch_batch(self, addresses: list[str]) -> dict[str, int]:
        """Balances for exactly *addresses* (zero included)."""

    async def close(self) -> None:
        return None


class RpcBalanceResolver(BalanceResolver):
    """One JSON-RPC batch of ``eth_call balanceOf`` per address batch."""

    def __init__(
        self,
        client: RpcClient | None = None,
        token_address: str = TOKEN_ADDRESS,
        batch_size: int = RPC_BALANCE_BATCH_SIZE,
        concurrency: int = BALANCE_CONCURRENCY,
        group_delay: float = BALANCE_GROUP_DELAY,
    ) -> None:
        super().__init__(batch_size, concurrency, group_delay)
        self._client = client or RpcClient()
        self._token = token_address.lower()

    async def close(self) -> None:
        await self._client.close()

    async def _fetch_batch(self, addresses: list[str]) -> dict[str, int]:
        calls = [
            ("eth_call", [{"to": self._token, "data": encode_balance_of(a)}, "latest"])
            for a in addresses
        ]
        results = await self._client.batch(calls)
        return {
            address: parse_quantity(raw, f"balanceOf({address})")
            for address, raw in zip(addresses, results)
        }


class ExplorerBalanceResolver(BalanceResolver):
    """One explorer ``tokenbalance`` request per address, gathered per batch."""

    def __init__(
        self,
        client: ExplorerClient | None = None,
        token_address: str = TOKEN_ADDRESS,
        batch_size: int = EXPLORER_BALANCE_BATCH_SIZE,
        concurrency: int = 1,
        group_delay: float = BALANCE_GROUP_DELAY,
    ) -> None:
        super().__init__(batch_size, concurrency, group_delay)
        self._client = client or ExplorerClient()
        self._token = token_address.lower()

    async def close(self) -> None:
        await self._client.close()

    async def _fetch_batch(self, addresses: list[str]) -> dict[str, int]:
        values = await asyncio.gather(
            *(self._client.fetch_token_balance(self._token, a) for a in addresses)
        )
        return dict(zip(addresses, values))


def encode_balance_of(address: str) -> str:
    """ABI-encode ``balanceOf(address)`` call data."""
    return BALANCE_OF_SELECTOR + address.lower().removeprefix("0x").zfill(64)


def build_balance_resolver(kind: str = BALANCE_SOURCE) -> BalanceResolver:
    """Pick the balance backend named in configuration."""
    if kind == "rpc":
        return RpcBalanceResolver()
    if kind == "explorer":
        return ExplorerBalanceResolver()
    raise ValueError(f"Unknown balance source: {kind!r}")
