"""One leaderboard synchronization pass.

A pass plans a block window from the stored checkpoint, fetches DripCore
logs for every configured address, decodes them, and commits the resulting
account deltas together with the checkpoint advance.

Known gap: when one address fails to fetch, the checkpoint still advances
past the window and those logs are not retried. The failure is reported in
the summary; replaying the range with ``reset`` is safe because applied
events are recorded by (source address, block, log index).
"""

import os
import socket
import uuid
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from .aggregator import ScoreWeights, StatAggregator
from .config import DEFAULT_LEASE_TTL, NetworkConfig, get_network
from .decoder import EventCatalogue
from .errors import RpcError, StoreError
from .fetcher import LogFetcher
from .planner import plan_window
from .store import LeaderboardStore
from .util import _log


class SyncRequest(NamedTuple):
    network: str = "sepolia"
    from_block: Optional[int] = None
    reset: bool = False


class SyncSummary:
    def __init__(
        self,
        network: str,
        status: str,
        from_block: int,
        to_block: Optional[int],
        head: int,
        contract_address: Optional[str] = None,
    ):
        self.network = network
        self.status = status
        self.from_block = from_block
        self.to_block = to_block
        self.head = head
        self.contract_address = contract_address
        self.raw_log_count = 0
        self.events_created_count = 0
        self.events_withdrawn_count = 0
        self.skipped_count = 0
        self.decode_error_count = 0
        self.duplicate_count = 0
        self.fetch_failures: Dict[str, str] = {}

    @property
    def noop(self) -> bool:
        return self.status == "noop"

    @property
    def caught_up(self) -> bool:
        return self.noop or (self.to_block is not None and self.to_block >= self.head)

    def to_dict(self) -> Dict[str, Any]:
        if self.noop:
            return {
                "message": "No new blocks to index",
                "network": self.network,
                "fromBlock": str(self.from_block),
                "toBlock": str(self.head),
            }
        return {
            "message": "Sync complete",
            "network": self.network,
            "contractAddress": self.contract_address,
            "fromBlock": str(self.from_block),
            "toBlock": str(self.to_block),
            "head": str(self.head),
            "rawLogsCount": self.raw_log_count,
            "processed": {
                "streamCreated": self.events_created_count,
                "streamWithdrawn": self.events_withdrawn_count,
            },
            "skipped": self.skipped_count,
            "decodeErrors": self.decode_error_count,
            "duplicates": self.duplicate_count,
            "fetchFailures": dict(self.fetch_failures),
        }


def _default_fetcher(network: NetworkConfig) -> LogFetcher:
    return LogFetcher(network.rpc_http, timeout=network.request_timeout)


def _lease_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LeaderboardSync:
    def __init__(
        self,
        config: Dict[str, Any],
        store: LeaderboardStore,
        fetcher_factory: Optional[Callable[[NetworkConfig], Any]] = None,
        catalogue: Optional[EventCatalogue] = None,
    ):
        self.config = config
        self.store = store
        self.fetcher_factory = fetcher_factory or _default_fetcher
        self.catalogue = catalogue or EventCatalogue()
        self.weights = ScoreWeights.from_config(config.get("weights"))
        self.lease_ttl = float(config.get("lease_ttl", DEFAULT_LEASE_TTL))

    async def run_pass(self, request: SyncRequest) -> SyncSummary:
        network = get_network(self.config, request.network)
        fetcher = self.fetcher_factory(network)
        # fresh token per pass; the lease is not re-entrant
        owner = _lease_owner()
        self.store.acquire_lease(network.name, owner, self.lease_ttl)
        try:
            return await self._run_locked(network, fetcher, request)
        finally:
            try:
                self.store.release_lease(network.name, owner)
            except StoreError as exc:
                _log(f"WARN: could not release {network.name} lease (expires after {self.lease_ttl:g}s): {exc}")

    async def _run_locked(self, network: NetworkConfig, fetcher: Any, request: SyncRequest) -> SyncSummary:
        try:
            head = await fetcher.get_head()
        except Exception as exc:
            raise RpcError(f"could not read head for {network.name}: {type(exc).__name__}: {exc}") from exc

        last = self.store.get_checkpoint(network.name)
        if request.from_block is not None and not request.reset and last is not None:
            _log(f"WARN: fromBlock={request.from_block} ignored without reset (checkpoint at {last})")
        genesis = network.genesis_block
        if request.from_block is not None and last is None:
            genesis = request.from_block

        plan = plan_window(
            last,
            head,
            genesis_block=genesis,
            lookback=network.lookback,
            max_range=network.max_range,
            reset=request.reset,
            reset_from=request.from_block,
        )
        if plan.pin is not None:
            self.store.pin_checkpoint(network.name, plan.pin)
            reason = "Reset" if request.reset else "First run"
            _log(f"{reason}: {network.name} checkpoint pinned to {plan.pin}, starting at {plan.from_block}")
        elif last is not None:
            _log(f"Resuming {network.name} from last processed block {last}, starting at {plan.from_block}")

        summary = SyncSummary(
            network.name,
            "noop" if plan.empty else "synced",
            plan.from_block,
            plan.to_block,
            head,
            contract_address=network.addresses[0],
        )
        if plan.empty:
            _log(f"No new blocks to index on {network.name} (next {plan.from_block}, head {head})")
            return summary

        _log(f"Fetching logs {plan.from_block}-{plan.to_block} for {', '.join(network.addresses)}")
        fetched = await fetcher.fetch(network.addresses, plan.from_block, plan.to_block)
        report = self.catalogue.decode_batch(fetched.logs)

        known = self.store.already_applied(network.name, [event.key for event in report.events])
        aggregator = StatAggregator(known).apply_all(report.events)
        self.store.commit_window(
            network.name, plan.to_block, aggregator.deltas, aggregator.applied_keys, self.weights
        )

        summary.raw_log_count = len(fetched.logs)
        summary.events_created_count = aggregator.created
        summary.events_withdrawn_count = aggregator.withdrawn
        summary.skipped_count = report.skipped
        summary.decode_error_count = report.decode_errors
        summary.duplicate_count = aggregator.duplicates
        summary.fetch_failures = dict(fetched.failures)

        if report.decode_errors:
            _log(f"WARN: {report.decode_errors} logs failed to decode")
        if report.skipped:
            _log(f"{report.skipped} logs skipped (not StreamCreated/StreamWithdrawn)")
        if fetched.failures:
            _log(f"WARN: window {plan.from_block}-{plan.to_block} committed with partial data: {fetched.failures}")
        _log(
            f"Sync complete on {network.name}: {plan.from_block}-{plan.to_block}, "
            f"{summary.raw_log_count} raw logs, {aggregator.created} created, "
            f"{aggregator.withdrawn} withdrawn, checkpoint = {plan.to_block}"
        )
        return summary

    async def catch_up(self, request: SyncRequest, max_passes: int = 100) -> List[SyncSummary]:
        """Run passes until the checkpoint reaches the head (or ``max_passes``)."""
        summaries: List[SyncSummary] = []
        for _ in range(max_passes):
            summary = await self.run_pass(request)
            summaries.append(summary)
            if summary.caught_up:
                break
            # only the first pass honours reset / fromBlock
            request = SyncRequest(network=request.network)
        return summaries
