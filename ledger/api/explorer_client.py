"""Client for Etherscan-compatible block explorer APIs (token history, balances)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ledger.config import (
    EXPLORER_API_KEY,
    EXPLORER_API_URL,
    EXPLORER_CHAIN_ID,
    EXPLORER_PAGE_SIZE,
    HTTP_TIMEOUT,
)
from ledger.exceptions import MalformedResponseError, RateLimitError, UpstreamError

logger = logging.getLogger(__name__)

_NO_RESULTS_MESSAGES = ("no transactions found", "no records found")


class ExplorerClient:
    """Query token transfer history and balances from the explorer API.

    Every call goes to the single API endpoint with ``module``/``action``
    query parameters. The API key is attached to every request.
    """

    def __init__(
        self,
        base_url: str = EXPLORER_API_URL,
        api_key: str = EXPLORER_API_KEY,
        chain_id: str = EXPLORER_CHAIN_ID,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = base_url
        self._api_key = api_key
        self._chain_id = chain_id
        self._client = httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    async def get_block_number(self) -> int:
        """Current chain head via the explorer's ``proxy`` module."""
        data = await self._get({"module": "proxy", "action": "eth_blockNumber"})
        if "error" in data:
            raise UpstreamError(f"eth_blockNumber failed: {data['error']}")
        return _parse_hex(data.get("result"), "eth_blockNumber")

    async def fetch_token_transfers(
        self,
        contract: str,
        start_block: int,
        end_block: int,
        *,
        page: int = 1,
        offset: int = EXPLORER_PAGE_SIZE,
    ) -> list[dict]:
        """GET account/tokentx for *contract* between two blocks (inclusive).

        Rows come back in ascending block order. An empty range is an empty
        list; every other ``status=0`` answer raises.
        """
        logger.debug(
            "explorer_tokentx",
            extra={"start_block": start_block, "end_block": end_block, "page": page},
        )
        data = await self._get({
            "module": "account",
            "action": "tokentx",
            "contractaddress": contract,
            "startblock": start_block,
            "endblock": end_block,
            "page": page,
            "offset": offset,
            "sort": "asc",
        })
        return self._unwrap_list(data)

    async def fetch_token_balance(self, contract: str, address: str) -> int:
        """GET account/tokenbalance for one holder at the latest block."""
        data = await self._get({
            "module": "account",
            "action": "tokenbalance",
            "contractaddress": contract,
            "address": address,
            "tag": "latest",
        })
        self._raise_for_status(data)
        result = data.get("result")
        if not isinstance(result, str) or not result.isdigit():
            raise MalformedResponseError(
                f"tokenbalance for {address} returned {result!r}"
            )
        return int(result)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _get(self, params: dict[str, Any]) -> dict:
        params = dict(params)
        if self._chain_id:
            params["chainid"] = self._chain_id
        params["apikey"] = self._api_key

        resp = await self._client.get(self._url, params=params)
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError as exc:
            raise MalformedResponseError("Explorer returned non-JSON body") from exc
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Explorer returned {type(data).__name__}")
        return data

    def _unwrap_list(self, data: dict) -> list[dict]:
        result = data.get("result")
        if data.get("status") == "0":
            message = str(data.get("message", "")).lower()
            if isinstance(result, list) and not result and any(
                m in message for m in _NO_RESULTS_MESSAGES
            ):
                return []
        self._raise_for_status(data)
        if not isinstance(result, list):
            raise MalformedResponseError(f"Invalid response format: {data!r:.200}")
        return result

    @staticmethod
    def _raise_for_status(data: dict) -> None:
        if "status" not in data or "result" not in data:
            raise MalformedResponseError(f"Invalid response format: {data!r:.200}")
        if data["status"] == "1":
            return
        detail = f"{data.get('message', '')}: {data.get('result', '')}"
        if "rate limit" in detail.lower():
            raise RateLimitError(detail)
        raise UpstreamError(detail)


def _parse_hex(value: Any, what: str) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise MalformedResponseError(f"{what} returned {value!r}")
    try:
        return int(value, 16)
    except ValueError as exc:
        raise MalformedResponseError(f"{what} returned {value!r}") from exc
