from typing import Any, Dict, List, Optional

from .aggregator import AccountStats
from .store import LeaderboardStore
from .util import _db_addr, is_address


DEFAULT_TOP_N = 50


class RankedAccount:
    def __init__(self, stats: AccountStats, rank: Optional[int]):
        self.stats = stats
        self.rank = rank

    @property
    def address(self) -> str:
        return self.stats.address

    @property
    def ranked(self) -> bool:
        return self.rank is not None

    def to_dict(self) -> Dict[str, Any]:
        out = self.stats.to_dict()
        out["rank"] = self.rank
        return out

    def __repr__(self) -> str:
        return f"RankedAccount(rank={self.rank}, {self.stats!r})"


def get_top_n(store: LeaderboardStore, n: int = DEFAULT_TOP_N) -> List[RankedAccount]:
    """Accounts by score descending; ties ordered by address so ranks are stable."""
    if n < 0:
        raise ValueError("n must be non-negative")
    return [RankedAccount(stats, idx + 1) for idx, stats in enumerate(store.top_by_score(n))]


def get_rank(store: LeaderboardStore, address: str) -> RankedAccount:
    """Stats plus competition rank for ``address``.

    Unknown addresses come back unranked with zero counters; nothing is
    written.
    """
    if not is_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    address = _db_addr(address)
    stats = store.get_account(address)
    if stats is None:
        return RankedAccount(AccountStats(address), None)
    return RankedAccount(stats, store.count_with_score_above(stats.score) + 1)
