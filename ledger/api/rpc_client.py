"""JSON-RPC client for an EVM node (block height, event logs, eth_call)."""

from __future__ import annotations

import itertools
import logging
from typing import Any, Sequence

import httpx

from ledger.config import HTTP_TIMEOUT, RPC_URL
from ledger.exceptions import MalformedResponseError, RateLimitError, UpstreamError

logger = logging.getLogger(__name__)

# JSON-RPC error codes nodes use for throttling / oversized queries
_LIMIT_ERROR_CODES = {-32005, 429}


class RpcClient:
    """Thin async JSON-RPC 2.0 client over httpx."""

    def __init__(
        self,
        url: str = RPC_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url:
            raise ValueError("RPC_URL is not configured")
        self._url = url
        self._ids = itertools.count(1)
        self._client = httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    async def call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        data = await self._post(payload)
        if not isinstance(data, dict):
            raise MalformedResponseError(f"{method} returned {type(data).__name__}")
        return _unwrap(data, method)

    async def batch(self, calls: Sequence[tuple[str, list[Any]]]) -> list[Any]:
        """Send *calls* as one JSON-RPC batch; results keep request order.

        Any error entry, or a missing response for any request, fails the
        whole batch.
        """
        if not calls:
            return []
        ids = [next(self._ids) for _ in calls]
        payload = [
            {"jsonrpc": "2.0", "id": req_id, "method": method, "params": params}
            for req_id, (method, params) in zip(ids, calls)
        ]
        data = await self._post(payload)
        if not isinstance(data, list):
            if isinstance(data, dict) and "error" in data:
                _unwrap(data, "batch")
            raise MalformedResponseError(f"Batch returned {type(data).__name__}")

        by_id = {item.get("id"): item for item in data if isinstance(item, dict)}
        results = []
        for req_id, (method, _) in zip(ids, calls):
            item = by_id.get(req_id)
            if item is None:
                raise MalformedResponseError(f"Batch response missing id {req_id}")
            results.append(_unwrap(item, method))
        return results

    async def get_block_number(self) -> int:
        return parse_quantity(await self.call("eth_blockNumber", []), "eth_blockNumber")

    async def get_logs(
        self,
        *,
        address: str,
        topics: Sequence[str | None],
        from_block: int,
        to_block: int,
    ) -> list[dict]:
        result = await self.call("eth_getLogs", [{
            "address": address,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "topics": list(topics),
        }])
        if not isinstance(result, list):
            raise MalformedResponseError(f"eth_getLogs returned {result!r:.200}")
        return result

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _post(self, payload: Any) -> Any:
        resp = await self._client.post(self._url, json=payload)
        if resp.status_code == 429:
            raise RateLimitError("Node returned HTTP 429")
        resp.raise_for_status()
        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedResponseError("Node returned non-JSON body") from exc


def _unwrap(item: dict, method: str) -> Any:
    error = item.get("error")
    if error is not None:
        code = error.get("code") if isinstance(error, dict) else None
        message = error.get("message") if isinstance(error, dict) else error
        if code in _LIMIT_ERROR_CODES:
            raise RateLimitError(f"{method}: {code} {message}")
        raise UpstreamError(f"{method}: {code} {message}")
    if "result" not in item:
        raise MalformedResponseError(f"{method} response has no result")
    return item["result"]


def parse_quantity(value: Any, what: str) -> int:
    """Decode a hex QUANTITY / DATA word into an int."""
    if not isinstance(value, str) or not value.startswith("0x"):
        raise MalformedResponseError(f"{what} returned {value!r}")
    if value == "0x":
        return 0
    try:
        return int(value, 16)
    except ValueError as exc:
        raise MalformedResponseError(f"{what} returned {value!r}") from exc
