"""Balance accounting over transfer activity."""

from __future__ import annotations

from typing import Iterable, Mapping

from ledger.config import ZERO_ADDRESS
from ledger.exceptions import BalanceUnderflowError
from ledger.models import TransferActivity


def chain_order(transfers: Iterable[TransferActivity]) -> list[TransferActivity]:
    return sorted(transfers, key=lambda t: (t.block_number, t.log_index))


def touched_addresses(
    transfers: Iterable[TransferActivity],
    sentinel: str = ZERO_ADDRESS,
) -> set[str]:
    """Every real address on either side of a transfer."""
    touched: set[str] = set()
    for tx in transfers:
        touched.add(tx.sender)
        touched.add(tx.recipient)
    touched.discard(sentinel)
    return touched


def apply_transfers(
    balances: Mapping[str, int],
    transfers: Iterable[TransferActivity],
    sentinel: str = ZERO_ADDRESS,
) -> dict[str, int]:
    """Return *balances* with every transfer applied in chain order.

    Mints credit the recipient, burns debit the sender, and the sentinel
    never gets a balance. A sender going negative means the prior state or
    the transfer feed is wrong, so it raises instead of clamping.
    """
    result = dict(balances)
    for tx in chain_order(transfers):
        if tx.sender != sentinel:
            remaining = result.get(tx.sender, 0) - tx.amount
            if remaining < 0:
                raise BalanceUnderflowError(tx.sender, remaining, tx.block_number)
            result[tx.sender] = remaining
        if tx.recipient != sentinel:
            result[tx.recipient] = result.get(tx.recipient, 0) + tx.amount
    return result


def positive_only(balances: Mapping[str, int]) -> dict[str, int]:
    """Drop zero balances; holders are only stored while they hold something."""
    return {address: balance for address, balance in balances.items() if balance > 0}
