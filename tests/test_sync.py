import asyncio
import time

import pytest

from conftest import ALICE, BOB, IMPLEMENTATION, PROXY, FakeFetcher
from leaderboard_indexer.aggregator import compute_score
from leaderboard_indexer.errors import ConfigurationError, LeaseHeldError, RpcError, StoreError
from leaderboard_indexer.sync import SyncRequest


def _assert_scores_consistent(store):
    for stats in store.top_by_score(1000):
        assert stats.score == compute_score(stats.streams_created, stats.withdrawals_claimed)


async def test_first_pass_starts_at_genesis(make_sync, store, logs):
    fetcher = FakeFetcher(500, [logs.created(ALICE, 100, block=150)])
    summary = await make_sync(fetcher).run_pass(SyncRequest("testnet"))

    assert (summary.from_block, summary.to_block) == (100, 500)
    assert summary.status == "synced"
    assert summary.events_created_count == 1
    assert store.get_checkpoint("testnet") == 500
    assert sorted(fetcher.calls) == [(PROXY.lower(), 100, 500), (IMPLEMENTATION.lower(), 100, 500)]


async def test_resume_is_capped_to_max_range(make_sync, store):
    store.pin_checkpoint("testnet", 500)
    sync = make_sync(FakeFetcher(2600))

    summary = await sync.run_pass(SyncRequest("testnet"))
    assert (summary.from_block, summary.to_block) == (501, 1500)
    assert store.get_checkpoint("testnet") == 1500
    assert not summary.caught_up


async def test_created_and_withdrawn_in_one_pass(make_sync, store, logs):
    fetcher = FakeFetcher(
        500,
        [
            logs.created(ALICE, 100, block=200, log_index=0),
            logs.withdrawn(ALICE, 30, block=201, log_index=0),
            logs.other(block=202),
        ],
    )
    summary = await make_sync(fetcher).run_pass(SyncRequest("testnet"))

    stats = store.get_account(ALICE)
    assert (stats.streams_created, stats.withdrawals_claimed) == (1, 1)
    assert (stats.total_deposited, stats.total_withdrawn) == (100, 30)
    assert stats.score == 15
    assert summary.raw_log_count == 3
    assert summary.skipped_count == 1
    assert summary.to_dict()["processed"] == {"streamCreated": 1, "streamWithdrawn": 1}


async def test_rerun_after_checkpoint_is_a_noop(make_sync, store, logs):
    fetcher = FakeFetcher(500, [logs.created(ALICE, 100, block=150)])
    sync = make_sync(fetcher)
    await sync.run_pass(SyncRequest("testnet"))
    calls = len(fetcher.calls)

    summary = await sync.run_pass(SyncRequest("testnet"))
    assert summary.noop
    assert summary.to_dict()["message"] == "No new blocks to index"
    assert len(fetcher.calls) == calls
    assert store.get_account(ALICE).streams_created == 1
    assert store.get_checkpoint("testnet") == 500


async def test_partial_fetch_failure_still_advances(make_sync, store, logs):
    fetcher = FakeFetcher(
        500,
        [logs.created(ALICE, 100, block=150, address=PROXY), logs.created(BOB, 1, block=151, address=IMPLEMENTATION)],
        failing=[IMPLEMENTATION],
    )
    summary = await make_sync(fetcher).run_pass(SyncRequest("testnet"))

    assert summary.status == "synced"
    assert list(summary.fetch_failures) == [IMPLEMENTATION.lower()]
    assert "ConnectionError" in summary.fetch_failures[IMPLEMENTATION.lower()]
    assert summary.events_created_count == 1
    assert store.get_account(ALICE) is not None
    assert store.get_account(BOB) is None
    assert store.get_checkpoint("testnet") == 500


async def test_reset_replay_does_not_double_count(make_sync, store, logs):
    fetcher = FakeFetcher(500, [logs.created(ALICE, 100, block=150), logs.created(BOB, 1, block=400)])
    sync = make_sync(fetcher)
    await sync.run_pass(SyncRequest("testnet"))

    summary = await sync.run_pass(SyncRequest("testnet", from_block=120, reset=True))
    assert (summary.from_block, summary.to_block) == (120, 500)
    assert summary.duplicate_count == 2
    assert summary.events_created_count == 0
    assert store.get_account(ALICE).streams_created == 1
    assert store.get_account(BOB).streams_created == 1
    assert store.get_checkpoint("testnet") == 500


async def test_checkpoint_is_monotonic_without_reset(make_sync, store, logs):
    fetcher = FakeFetcher(1200, [logs.created(ALICE, 1, block=b) for b in (100, 900, 1150, 2100)])
    sync = make_sync(fetcher)
    seen = []
    for head in (1200, 1200, 2500, 2400, 3000, 3000):
        fetcher.head = head
        await sync.run_pass(SyncRequest("testnet"))
        seen.append(store.get_checkpoint("testnet"))
        _assert_scores_consistent(store)
    assert seen == sorted(seen)
    assert store.get_account(ALICE).streams_created == 4


async def test_catch_up_reaches_head(make_sync, store, logs):
    fetcher = FakeFetcher(2600, [logs.created(ALICE, 1, block=b) for b in (100, 1100, 2600)])
    summaries = await make_sync(fetcher).catch_up(SyncRequest("testnet"))

    assert [(s.from_block, s.to_block) for s in summaries] == [(100, 1099), (1100, 2099), (2100, 2600)]
    assert store.get_checkpoint("testnet") == 2600
    assert store.get_account(ALICE).streams_created == 3


async def test_first_run_without_genesis_uses_lookback(make_sync, store):
    summary = await make_sync(FakeFetcher(5000)).run_pass(SyncRequest("nogenesis"))
    assert (summary.from_block, summary.to_block) == (4000, 4999)


async def test_store_failure_leaves_checkpoint_at_pin(make_sync, store, logs, monkeypatch):
    def broken_commit(*args, **kwargs):
        raise StoreError("database is locked")

    monkeypatch.setattr(store, "commit_window", broken_commit)
    fetcher = FakeFetcher(500, [logs.created(ALICE, 100, block=150)])
    with pytest.raises(StoreError):
        await make_sync(fetcher).run_pass(SyncRequest("testnet"))

    assert store.get_checkpoint("testnet") == 99
    assert store.get_account(ALICE) is None
    # the lease is released even though the pass failed
    store.acquire_lease("testnet", "someone-else", ttl=60)


async def test_unknown_network_touches_nothing(make_sync, store):
    with pytest.raises(ConfigurationError):
        await make_sync(FakeFetcher(500)).run_pass(SyncRequest("nowhere"))
    assert store.get_checkpoint("nowhere") is None


async def test_head_failure_is_reported_as_rpc_error(make_sync, store):
    class DeadFetcher(FakeFetcher):
        async def get_head(self):
            raise TimeoutError("read timed out")

    with pytest.raises(RpcError):
        await make_sync(DeadFetcher(0)).run_pass(SyncRequest("testnet"))
    assert store.get_checkpoint("testnet") is None


async def test_overlapping_pass_is_refused(make_sync, store):
    store.acquire_lease("testnet", "other-worker", ttl=60)
    with pytest.raises(LeaseHeldError):
        await make_sync(FakeFetcher(500)).run_pass(SyncRequest("testnet"))
    assert store.get_checkpoint("testnet") is None


class SlowFetcher(FakeFetcher):
    def _get_logs(self, address, from_block, to_block):
        time.sleep(0.05)
        return super()._get_logs(address, from_block, to_block)


async def test_concurrent_passes_on_one_instance_are_exclusive(make_sync, store, logs):
    sync = make_sync(SlowFetcher(500, [logs.created(ALICE, 100, block=150)]))
    outcomes = await asyncio.gather(
        sync.run_pass(SyncRequest("testnet")),
        sync.run_pass(SyncRequest("testnet")),
        return_exceptions=True,
    )

    assert sum(isinstance(outcome, LeaseHeldError) for outcome in outcomes) == 1
    [summary] = [outcome for outcome in outcomes if not isinstance(outcome, BaseException)]
    assert summary.status == "synced"
    assert store.get_account(ALICE).streams_created == 1
    # released once the winning pass finishes
    store.acquire_lease("testnet", "next-worker", ttl=60)


async def test_release_failure_does_not_mask_pass_error(make_sync, store, monkeypatch):
    def broken_commit(*args, **kwargs):
        raise StoreError("database is locked")

    def broken_release(*args, **kwargs):
        raise StoreError("could not open transaction")

    monkeypatch.setattr(store, "commit_window", broken_commit)
    monkeypatch.setattr(store, "release_lease", broken_release)
    with pytest.raises(StoreError, match="database is locked"):
        await make_sync(FakeFetcher(500)).run_pass(SyncRequest("testnet"))


async def test_release_failure_after_success_still_returns_summary(make_sync, store, logs, monkeypatch):
    def broken_release(*args, **kwargs):
        raise StoreError("could not open transaction")

    monkeypatch.setattr(store, "release_lease", broken_release)
    summary = await make_sync(FakeFetcher(500, [logs.created(ALICE, 1, block=150)])).run_pass(SyncRequest("testnet"))
    assert summary.status == "synced"
    assert store.get_checkpoint("testnet") == 500
