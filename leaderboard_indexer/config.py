"""Per-network chain configuration.

Networks are rows in a table keyed by name; code never branches on a
network's name. A JSON config file may override any field of the built-in
rows or add new networks:

    {
      "db_path": "./leaderboard.db",
      "weights": {"create": 10, "withdraw": 5},
      "networks": {
        "mainnet": {"rpc_http": "https://...", "genesis_block": 53003427}
      }
    }
"""

import os
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError
from .util import ZERO_ADDRESS, _load_json, _to_checksum, is_address


DEFAULT_MAX_RANGE = 1000
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_LEASE_TTL = 300
DEFAULT_DB_PATH = "./leaderboard.db"

# DripCore deployments. Proxy first; implementation addresses follow.
BUILTIN_NETWORKS: Dict[str, Dict[str, Any]] = {
    "sepolia": {
        "chain_id": 11142220,
        "rpc_http": "https://forno.celo-sepolia.celo-testnet.org",
        "rpc_env": ["CELO_SEPOLIA_RPC_URL", "CELO_RPC_URL"],
        "addresses": ["0xfAaB5005f7844eC5499cF258F52dE29EDc74aa31"],
        "genesis_block": None,
    },
    "mainnet": {
        "chain_id": 42220,
        "rpc_http": "https://rpc.ankr.com/celo",
        "rpc_env": ["CELO_MAINNET_RPC_URL"],
        "addresses": [
            "0x5530975fDe062FE6706298fF3945E3d1a17A310a",
            "0xEAD6aF75911455673EF50975E8a429Eb67267703",
        ],
        "genesis_block": 53003427,
    },
    "lisk": {
        "chain_id": 1135,
        "rpc_http": "https://rpc.api.lisk.com",
        "rpc_env": ["LISK_RPC_URL"],
        "addresses": ["0x87BcC4Ef6817d3137568Be91f019bC4e35d9A4b6"],
        "genesis_block": None,
    },
}


class NetworkConfig:
    def __init__(
        self,
        name: str,
        chain_id: Optional[int],
        rpc_http: Optional[str],
        addresses: List[str],
        rpc_ws: Optional[str] = None,
        genesis_block: Optional[int] = None,
        lookback: Optional[int] = None,
        max_range: int = DEFAULT_MAX_RANGE,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.name = name
        self.chain_id = chain_id
        self.rpc_http = rpc_http
        self.rpc_ws = rpc_ws
        self.addresses = addresses
        self.genesis_block = genesis_block
        self.max_range = max_range
        self.lookback = lookback if lookback is not None else max_range
        self.request_timeout = request_timeout

    def __repr__(self) -> str:
        return f"NetworkConfig(name={self.name!r}, chain_id={self.chain_id}, addresses={self.addresses})"


def _rpc_from_env(entry: Dict[str, Any]) -> Optional[str]:
    for var in entry.get("rpc_env") or []:
        value = os.environ.get(var)
        if value:
            return value
    return None


def _merge_networks(overrides: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    merged = {name: dict(entry) for name, entry in BUILTIN_NETWORKS.items()}
    for name, entry in (overrides or {}).items():
        if not isinstance(entry, dict):
            raise ConfigurationError(f"config.networks.{name} must be an object")
        merged.setdefault(name, {}).update(entry)
    return merged


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    cfg: Dict[str, Any] = _load_json(path) if path else {}
    cfg["networks"] = _merge_networks(cfg.get("networks", {}))
    cfg["db_path"] = os.environ.get("LEADERBOARD_DB_PATH") or cfg.get("db_path", DEFAULT_DB_PATH)
    cfg.setdefault("weights", {})
    cfg.setdefault("lease_ttl", DEFAULT_LEASE_TTL)
    return cfg


def get_network(config: Dict[str, Any], name: str) -> NetworkConfig:
    networks = config.get("networks") or {}
    entry = networks.get(name)
    if entry is None:
        raise ConfigurationError(f"Unknown network {name!r} (known: {', '.join(sorted(networks))})")

    # Environment wins over the file so deployments can swap providers.
    rpc_http = _rpc_from_env(entry) or entry.get("rpc_http")
    if not rpc_http:
        raise ConfigurationError(f"RPC URL not set for network {name}")

    addresses = []
    for address in entry.get("addresses") or []:
        if not is_address(address) or address.lower() == ZERO_ADDRESS:
            continue
        addresses.append(_to_checksum(address))
    if not addresses:
        raise ConfigurationError(f"DripCore not deployed on network {name}")

    genesis = entry.get("genesis_block")
    max_range = int(entry.get("max_range", DEFAULT_MAX_RANGE))
    if max_range < 1:
        raise ConfigurationError(f"max_range must be positive for network {name}")
    lookback = entry.get("lookback")
    return NetworkConfig(
        name=name,
        chain_id=entry.get("chain_id"),
        rpc_http=rpc_http,
        rpc_ws=entry.get("rpc_ws"),
        addresses=addresses,
        genesis_block=int(genesis) if genesis is not None else None,
        lookback=int(lookback) if lookback is not None else None,
        max_range=max_range,
        request_timeout=float(entry.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)),
    )
