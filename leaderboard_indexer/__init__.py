"""DripCore leaderboard indexer: incremental log sync, per-account stats and ranking."""

from .aggregator import AccountStats, ScoreWeights, StatAggregator, compute_score
from .config import NetworkConfig, get_network, load_config
from .decoder import EventCatalogue, StreamCreated, StreamWithdrawn
from .errors import ConfigurationError, IndexerError, LeaseHeldError, RpcError, StoreError
from .planner import WindowPlan, plan_window
from .ranking import RankedAccount, get_rank, get_top_n
from .store import LeaderboardStore
from .sync import LeaderboardSync, SyncRequest, SyncSummary

__version__ = "0.1.0"
