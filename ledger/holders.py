"""Read side: paginated, ranked holder listing with share of supply."""

from __future__ import annotations

import math
from decimal import Decimal, localcontext
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from ledger.store import HolderStore

_PERCENT_PLACES = Decimal("0.0000000001")


class SortBy(str, Enum):
    BALANCE = "balance"
    ADDRESS = "address"
    PERCENTAGE = "percentage"  # Same ordering as balance


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class HoldersQuery(BaseModel):
    """Validated ``GET /holders`` query parameters."""

    model_config = ConfigDict(populate_by_name=True)

    page: int = Field(default=1, ge=1, description="Page number (starts from 1).")
    limit: int = Field(default=10, ge=1, le=100, description="Items per page.")
    sort_by: SortBy = Field(default=SortBy.BALANCE, alias="sortBy")
    order: SortOrder = Field(default=SortOrder.DESC)


class HolderView(BaseModel):
    address: str
    balance: str
    percentage: str


class HoldersPage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: list[HolderView]
    total: int
    page: int
    limit: int
    total_pages: int = Field(alias="totalPages")
    has_next_page: bool = Field(alias="hasNextPage")
    has_previous_page: bool = Field(alias="hasPreviousPage")


def share_of_supply(balance: int, supply: int) -> str:
    """Balance as a percentage of *supply*, fixed at 10 decimal places."""
    with localcontext() as ctx:
        ctx.prec = 120
        pct = Decimal(balance) / Decimal(supply or 1) * 100
        return format(pct.quantize(_PERCENT_PLACES), "f")


async def get_holders(store: HolderStore, query: HoldersQuery) -> HoldersPage:
    total, supply = await store.holder_totals()
    rows = await store.query_holders(
        sort_by=query.sort_by.value,
        order=query.order.value,
        limit=query.limit,
        offset=(query.page - 1) * query.limit,
    )
    total_pages = math.ceil(total / query.limit)
    return HoldersPage(
        data=[
            HolderView(
                address=address,
                balance=str(balance),
                percentage=share_of_supply(balance, supply),
            )
            for address, balance in rows
        ],
        total=total,
        page=query.page,
        limit=query.limit,
        total_pages=total_pages,
        has_next_page=query.page < total_pages,
        has_previous_page=query.page > 1,
    )
