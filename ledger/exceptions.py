"""Errors raised by the holder ledger."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger errors."""


class UpstreamError(LedgerError):
    """The explorer API or node answered with an error payload."""


class RateLimitError(UpstreamError):
    """The upstream refused the request because of rate limits."""


class MalformedResponseError(UpstreamError):
    """An upstream response is missing fields or has the wrong shape."""


class BalanceUnderflowError(LedgerError):
    """Applying a transfer would leave a sender with a negative balance."""

    def __init__(self, address: str, balance: int, block_number: int) -> None:
        super().__init__(
            f"Balance of {address} would drop to {balance} at block {block_number}"
        )
        self.address = address
        self.balance = balance
        self.block_number = block_number


class StorageError(LedgerError):
    """A ClickHouse write kept failing after all retries."""


class SyncInProgressError(LedgerError):
    """A pass is already running; the request was not started."""

    def __init__(self, message: str = "Sync already in progress") -> None:
        super().__init__(message)
