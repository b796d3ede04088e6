import pytest
from eth_abi import encode
from eth_utils import keccak
from hexbytes import HexBytes

from leaderboard_indexer.config import load_config
from leaderboard_indexer.decoder import STREAM_CREATED, STREAM_WITHDRAWN, EventCatalogue
from leaderboard_indexer.fetcher import LogFetcher
from leaderboard_indexer.store import LeaderboardStore
from leaderboard_indexer.sync import LeaderboardSync


PROXY = "0x5530975fDe062FE6706298fF3945E3d1a17A310a"
IMPLEMENTATION = "0xEAD6aF75911455673EF50975E8a429Eb67267703"
TOKEN = "0x62b8b11039fcfe5ab0c56e502b1c372a3d2a9c7a"
ALICE = "0x" + "aa" * 20
BOB = "0x" + "bb" * 20
CAROL = "0x" + "cc" * 20


class LogBuilder:
    """Builds raw eth_getLogs entries for the DripCore events."""

    def __init__(self, catalogue: EventCatalogue):
        self.catalogue = catalogue
        self._tx = 0

    def raw(self, topics, data, block, log_index, address=PROXY):
        self._tx += 1
        return {
            "address": address,
            "topics": [HexBytes(t) for t in topics],
            "data": HexBytes(data),
            "blockNumber": block,
            "logIndex": log_index,
            "transactionIndex": 0,
            "transactionHash": HexBytes(self._tx.to_bytes(32, "big")),
            "blockHash": HexBytes(block.to_bytes(32, "big")),
            "removed": False,
        }

    def created(self, sender, deposit, block=100, log_index=0, address=PROXY, stream_id=1):
        topics = [
            self.catalogue.topic_for(STREAM_CREATED),
            encode(["uint256"], [stream_id]),
            encode(["address"], [sender]),
        ]
        data = encode(
            ["address[]", "address", "uint256", "uint256", "uint256", "string", "string"],
            [[BOB], TOKEN, deposit, 1733346982, 1733350582, "Payroll", "December"],
        )
        return self.raw(topics, data, block, log_index, address)

    def withdrawn(self, recipient, amount, block=100, log_index=0, address=PROXY, stream_id=1):
        topics = [
            self.catalogue.topic_for(STREAM_WITHDRAWN),
            encode(["uint256"], [stream_id]),
            encode(["address"], [recipient]),
        ]
        return self.raw(topics, encode(["uint256"], [amount]), block, log_index, address)

    def other(self, block=100, log_index=0, address=PROXY):
        topics = [keccak(text="StreamCancelled(uint256)"), encode(["uint256"], [1])]
        return self.raw(topics, b"", block, log_index, address)


class FakeFetcher(LogFetcher):
    """LogFetcher with the JSON-RPC calls replaced by in-memory data."""

    def __init__(self, head, logs=(), failing=()):
        super().__init__("http://127.0.0.1:8545", timeout=5)
        self.head = head
        self.logs = list(logs)
        self.failing = {address.lower() for address in failing}
        self.calls = []

    async def get_head(self):
        return self.head

    def _get_logs(self, address, from_block, to_block):
        self.calls.append((address.lower(), from_block, to_block))
        if address.lower() in self.failing:
            raise ConnectionError("connection refused")
        return [
            log
            for log in self.logs
            if log["address"].lower() == address.lower() and from_block <= log["blockNumber"] <= to_block
        ]


@pytest.fixture
def catalogue():
    return EventCatalogue()


@pytest.fixture
def logs(catalogue):
    return LogBuilder(catalogue)


@pytest.fixture
def store(tmp_path):
    db = LeaderboardStore(str(tmp_path / "leaderboard.db"))
    yield db
    db.close()


@pytest.fixture
def config(tmp_path):
    cfg = load_config()
    cfg["db_path"] = str(tmp_path / "leaderboard.db")
    cfg["networks"]["testnet"] = {
        "chain_id": 31337,
        "rpc_http": "http://127.0.0.1:8545",
        "addresses": [PROXY, IMPLEMENTATION],
        "genesis_block": 100,
        "max_range": 1000,
    }
    cfg["networks"]["nogenesis"] = {
        "rpc_http": "http://127.0.0.1:8545",
        "addresses": [PROXY],
        "lookback": 1000,
    }
    return cfg


@pytest.fixture
def make_sync(config, store, catalogue):
    def _make(fetcher):
        return LeaderboardSync(config, store, fetcher_factory=lambda network: fetcher, catalogue=catalogue)

    return _make
