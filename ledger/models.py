"""Data models shared by the sync engine, the store and the read API."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class SyncStrategy(str, Enum):
    """How a sync pass derives balances. Fixed for the whole pass."""

    INCREMENTAL = "incremental"        # Signed deltas over persisted balances
    AUTHORITATIVE = "authoritative"    # Re-resolve touched addresses on-chain


class SyncState(str, Enum):
    """Lifecycle state of the sync orchestrator."""

    IDLE = "idle"
    SCANNING = "scanning"
    RESOLVING = "resolving"
    COMMITTING = "committing"
    FAILED = "failed"


class TransferActivity(BaseModel):
    """A single token transfer observed on-chain."""

    sender: str = Field(..., description="Lower-cased sender address.")
    recipient: str = Field(..., description="Lower-cased recipient address.")
    amount: int = Field(..., ge=0, description="Raw token amount (smallest unit).")
    block_number: int = Field(..., ge=0)
    tx_hash: str = Field(default="")
    log_index: int = Field(default=0, ge=0)

    @field_validator("sender", "recipient", "tx_hash")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.lower()


class Cursor(BaseModel):
    """Singleton record pointing at the last fully processed block.

    ``snapshot_version`` names the holder snapshot that was committed with
    this cursor; ``revision`` orders cursor rows in storage.
    """

    id: str = "latest"
    last_processed_block: int = Field(..., ge=0)
    snapshot_version: int = Field(default=0, ge=0)
    revision: int = Field(default=0, ge=0)


class SyncResult(BaseModel):
    """Summary of one sync pass."""

    from_block: int
    to_block: int
    chunks: int = 0
    transfers: int = 0
    holders: Optional[int] = None
    strategy: SyncStrategy = SyncStrategy.INCREMENTAL

    @property
    def up_to_date(self) -> bool:
        return self.chunks == 0


class ReconciliationResult(BaseModel):
    """Summary of one reconciliation pass."""

    checked: int = 0
    dropped: list[str] = Field(default_factory=list)
    changed: list[str] = Field(default_factory=list)
    written: bool = False

    @property
    def drift(self) -> bool:
        return bool(self.dropped or self.changed)
