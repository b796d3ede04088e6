"""Fold decoded stream events into per-account leaderboard totals.

The aggregator only builds deltas. Deltas reach the database together with
the checkpoint advance in ``LeaderboardStore.commit_window`` so a window is
either fully counted or not counted at all.
"""

from typing import Dict, Iterable, List, NamedTuple, Optional, Set

from .decoder import DecodedEvent, EventKey, StreamCreated, StreamWithdrawn
from .util import _db_addr


class ScoreWeights(NamedTuple):
    create: int = 10
    withdraw: int = 5

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, int]]) -> "ScoreWeights":
        cfg = cfg or {}
        default = cls()
        return cls(int(cfg.get("create", default.create)), int(cfg.get("withdraw", default.withdraw)))


DEFAULT_WEIGHTS = ScoreWeights()


def compute_score(streams_created: int, withdrawals_claimed: int, weights: ScoreWeights = DEFAULT_WEIGHTS) -> int:
    return streams_created * weights.create + withdrawals_claimed * weights.withdraw


class AccountStats:
    def __init__(
        self,
        address: str,
        streams_created: int = 0,
        withdrawals_claimed: int = 0,
        total_deposited: int = 0,
        total_withdrawn: int = 0,
        score: int = 0,
        updated_at: Optional[str] = None,
    ):
        self.address = address
        self.streams_created = streams_created
        self.withdrawals_claimed = withdrawals_claimed
        self.total_deposited = total_deposited
        self.total_withdrawn = total_withdrawn
        self.score = score
        self.updated_at = updated_at

    def to_dict(self) -> Dict[str, object]:
        # amounts and score go out as strings: uint256 sums overflow JS numbers
        return {
            "address": self.address,
            "streamsCreated": self.streams_created,
            "withdrawalsClaimed": self.withdrawals_claimed,
            "totalDeposited": str(self.total_deposited),
            "totalWithdrawn": str(self.total_withdrawn),
            "points": str(self.score),
            "updatedAt": self.updated_at,
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AccountStats):
            return NotImplemented
        return (
            self.address,
            self.streams_created,
            self.withdrawals_claimed,
            self.total_deposited,
            self.total_withdrawn,
            self.score,
        ) == (
            other.address,
            other.streams_created,
            other.withdrawals_claimed,
            other.total_deposited,
            other.total_withdrawn,
            other.score,
        )

    def __repr__(self) -> str:
        return (
            f"AccountStats({self.address}, created={self.streams_created}, "
            f"withdrawals={self.withdrawals_claimed}, deposited={self.total_deposited}, "
            f"withdrawn={self.total_withdrawn}, score={self.score})"
        )


class AccountDelta:
    def __init__(self, address: str):
        self.address = address
        self.streams_created = 0
        self.withdrawals_claimed = 0
        self.deposited = 0
        self.withdrawn = 0

    def merge_into(self, stats: Optional[AccountStats], weights: ScoreWeights = DEFAULT_WEIGHTS) -> AccountStats:
        """Add this delta to ``stats`` (or a fresh row) and recompute the score."""
        base = stats if stats is not None else AccountStats(self.address)
        created = base.streams_created + self.streams_created
        withdrawals = base.withdrawals_claimed + self.withdrawals_claimed
        return AccountStats(
            address=self.address,
            streams_created=created,
            withdrawals_claimed=withdrawals,
            total_deposited=base.total_deposited + self.deposited,
            total_withdrawn=base.total_withdrawn + self.withdrawn,
            score=compute_score(created, withdrawals, weights),
        )


class StatAggregator:
    def __init__(self, already_applied: Optional[Iterable[EventKey]] = None):
        self.deltas: Dict[str, AccountDelta] = {}
        self.applied_keys: List[EventKey] = []
        self.created = 0
        self.withdrawn = 0
        self.duplicates = 0
        self._seen: Set[EventKey] = set(already_applied or ())

    def _delta(self, address: str) -> AccountDelta:
        address = _db_addr(address)
        delta = self.deltas.get(address)
        if delta is None:
            delta = AccountDelta(address)
            self.deltas[address] = delta
        return delta

    def apply(self, event: DecodedEvent) -> bool:
        """Fold one event in; returns False when the event was already counted."""
        key = EventKey(_db_addr(event.key.source_address), event.key.block_number, event.key.log_index)
        if key in self._seen:
            self.duplicates += 1
            return False
        self._seen.add(key)

        if isinstance(event, StreamCreated):
            delta = self._delta(event.sender)
            delta.streams_created += 1
            delta.deposited += event.deposit_amount
            self.created += 1
        elif isinstance(event, StreamWithdrawn):
            delta = self._delta(event.recipient)
            delta.withdrawals_claimed += 1
            delta.withdrawn += event.amount
            self.withdrawn += 1
        else:
            raise TypeError(f"Unsupported event type: {type(event).__name__}")
        self.applied_keys.append(key)
        return True

    def apply_all(self, events: Iterable[DecodedEvent]) -> "StatAggregator":
        for event in events:
            self.apply(event)
        return self
