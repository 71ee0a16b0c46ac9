"""Tests for the sync orchestrator (chunking, strategies, failure and resume)."""

import pytest

from conftest import A, B, C, D, ZERO, ScriptedTransferSource, transfer
from ledger.exceptions import BalanceUnderflowError, StorageError, UpstreamError
from ledger.jobs.holder_sync import SyncOrchestrator
from ledger.models import SyncState, SyncStrategy


def orchestrator(store, source, resolver=None, **kwargs):
    kwargs.setdefault("chunk_delay", 0)
    kwargs.setdefault("start_block", 0)
    return SyncOrchestrator(store, source, resolver, **kwargs)


# ------------------------------------------------------------------
# Incremental accounting
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_transfer_moves_balance_and_advances_cursor(store):
    store.seed({A: 500, B: 300}, last_block=99)
    source = ScriptedTransferSource(head=150, transfers=[transfer(A, C, 100, 150)])

    result = await orchestrator(store, source).run_pass()

    assert await store.load_holders() == {A: 400, B: 300, C: 100}
    assert store.cursor.last_processed_block == 150
    assert result.from_block == 100
    assert result.transfers == 1
    assert result.holders == 3


@pytest.mark.asyncio
async def test_second_pass_without_activity_changes_nothing(store):
    store.seed({A: 500, B: 300}, last_block=99)
    source = ScriptedTransferSource(head=150, transfers=[transfer(A, C, 100, 150)])
    sync = orchestrator(store, source)

    await sync.run_pass()
    cursor, holders, commits = store.cursor, await store.load_holders(), list(store.commits)

    result = await sync.run_pass()

    assert result.up_to_date
    assert store.cursor == cursor
    assert await store.load_holders() == holders
    assert store.commits == commits


@pytest.mark.asyncio
async def test_range_is_walked_in_chunks_with_monotonic_cursor(store):
    source = ScriptedTransferSource(
        head=25,
        transfers=[transfer(ZERO, A, 1000, 3), transfer(A, B, 250, 12), transfer(B, C, 50, 25)],
    )

    result = await orchestrator(store, source, chunk_size=10).run_pass()

    assert source.ranges == [(0, 9), (10, 19), (20, 25)]
    assert store.commits == [9, 19, 25]
    assert result.chunks == 3
    assert await store.load_holders() == {A: 750, B: 200, C: 50}


@pytest.mark.asyncio
async def test_chunk_without_transfers_only_moves_cursor(store):
    store.seed({A: 10}, last_block=0)
    source = ScriptedTransferSource(head=40)

    await orchestrator(store, source, chunk_size=20).run_pass()

    assert store.commits == [20, 40]
    assert store.cursor.snapshot_version == 1
    assert await store.load_holders() == {A: 10}


@pytest.mark.asyncio
async def test_mint_and_burn_never_store_the_zero_address(store):
    source = ScriptedTransferSource(
        head=5,
        transfers=[transfer(ZERO, A, 100, 1), transfer(A, ZERO, 40, 2), transfer(A, B, 60, 3)],
    )

    await orchestrator(store, source).run_pass()

    # A sent everything away, so it is removed rather than stored at zero
    assert await store.load_holders() == {B: 60}


@pytest.mark.asyncio
async def test_negative_sender_balance_is_surfaced_not_clamped(store):
    store.seed({A: 50}, last_block=9)
    source = ScriptedTransferSource(head=20, transfers=[transfer(A, B, 80, 15)])
    sync = orchestrator(store, source)

    with pytest.raises(BalanceUnderflowError) as exc_info:
        await sync.run_pass()

    assert exc_info.value.address == A
    assert exc_info.value.balance == -30
    assert store.cursor.last_processed_block == 9
    assert await store.load_holders() == {A: 50}
    assert sync.state is SyncState.IDLE
    assert sync.last_error


# ------------------------------------------------------------------
# Failure and resume
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_failed_chunk_keeps_earlier_chunks_and_next_pass_resumes(store):
    source = ScriptedTransferSource(
        head=29,
        transfers=[transfer(ZERO, A, 100, 5), transfer(A, B, 30, 15), transfer(B, C, 10, 25)],
    )
    source.fail_from = {10}
    sync = orchestrator(store, source, chunk_size=10)

    with pytest.raises(UpstreamError):
        await sync.run_pass()

    assert store.cursor.last_processed_block == 9
    assert await store.load_holders() == {A: 100}

    source.fail_from = set()
    source.ranges.clear()
    await sync.run_pass()

    assert source.ranges[0] == (10, 19)
    assert store.commits == [9, 19, 29]
    assert await store.load_holders() == {A: 70, B: 20, C: 10}


@pytest.mark.asyncio
async def test_crash_between_holder_and_cursor_write_is_replayed_cleanly(store):
    transfers = [transfer(ZERO, A, 100, 5), transfer(A, B, 30, 15)]
    reference = type(store)()
    await orchestrator(reference, ScriptedTransferSource(29, transfers), chunk_size=10).run_pass()

    source = ScriptedTransferSource(head=29, transfers=transfers)
    sync = orchestrator(store, source, chunk_size=10)
    store.fail_cursor_writes = 1

    with pytest.raises(StorageError):
        await sync.run_pass()

    # Holder rows were written but never became current
    assert store.cursor is None
    assert await store.load_holders() == {}

    await sync.run_pass()

    assert store.cursor.last_processed_block == reference.cursor.last_processed_block
    assert await store.load_holders() == await reference.load_holders()


# ------------------------------------------------------------------
# Authoritative re-resolution
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_authoritative_pass_resolves_touched_addresses(store, resolver):
    store.seed({A: 500, B: 300, D: 7}, last_block=99)
    resolver.truth = {A: 400, B: 300, C: 100, D: 7}
    source = ScriptedTransferSource(head=150, transfers=[transfer(A, C, 100, 150)])

    await orchestrator(store, source, resolver, strategy=SyncStrategy.AUTHORITATIVE).run_pass()

    assert sorted(resolver.queried) == [A, C]
    assert await store.load_holders() == {A: 400, B: 300, C: 100, D: 7}
    assert store.cursor.last_processed_block == 150


@pytest.mark.asyncio
async def test_authoritative_pass_drops_touched_address_at_zero(store, resolver):
    store.seed({A: 500, B: 300}, last_block=99)
    resolver.truth = {B: 300, C: 500}
    source = ScriptedTransferSource(head=120, transfers=[transfer(A, C, 500, 110)])

    await orchestrator(store, source, resolver, strategy="authoritative").run_pass()

    assert await store.load_holders() == {B: 300, C: 500}


@pytest.mark.asyncio
async def test_authoritative_resolver_failure_aborts_without_commit(store, resolver):
    store.seed({A: 500}, last_block=99)
    resolver.truth = {A: 400, C: 100}
    resolver.fail_on = C
    source = ScriptedTransferSource(head=150, transfers=[transfer(A, C, 100, 150)])

    with pytest.raises(UpstreamError):
        await orchestrator(store, source, resolver, strategy=SyncStrategy.AUTHORITATIVE).run_pass()

    assert store.cursor.last_processed_block == 99
    assert await store.load_holders() == {A: 500}


def test_authoritative_strategy_requires_resolver(store):
    with pytest.raises(ValueError):
        SyncOrchestrator(store, ScriptedTransferSource(head=0), strategy=SyncStrategy.AUTHORITATIVE)
