"""Leaderboard indexer CLI.

Usage:
  python -m leaderboard_indexer --config config.json sync --network mainnet
  python -m leaderboard_indexer --config config.json sync --network mainnet --catch-up
  python -m leaderboard_indexer --config config.json sync --network mainnet --reset --from-block 53003427
  python -m leaderboard_indexer --config config.json follow --network mainnet
  python -m leaderboard_indexer --config config.json top --limit 20
  python -m leaderboard_indexer --config config.json rank 0xabc...
  python -m leaderboard_indexer --config config.json reset --network mainnet
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict

import websockets
from websockets.exceptions import WebSocketException

from .config import get_network, load_config
from .errors import IndexerError
from .ranking import DEFAULT_TOP_N, get_rank, get_top_n
from .store import LeaderboardStore
from .sync import LeaderboardSync, SyncRequest
from .util import _json_dumps, _log


async def follow(sync: LeaderboardSync, network_name: str, reconnect_delay: int = 5) -> None:
    """Run a catch-up pass on every new head announced over the websocket.

    Passes are serialized on this connection; a head that arrives while a pass
    is running is covered by the next one.
    """
    network = get_network(sync.config, network_name)
    if not network.rpc_ws:
        raise IndexerError(f"rpc_ws is required to follow {network_name}")

    backoff = max(reconnect_delay, 1)
    max_backoff = 60
    request = SyncRequest(network=network_name)

    while True:
        try:
            await sync.catch_up(request)
            async with websockets.connect(network.rpc_ws, ping_interval=20, ping_timeout=20) as ws:
                _log("Websocket connected, subscribing to newHeads...")
                await ws.send(json.dumps({"jsonrpc": "2.0", "id": 1, "method": "eth_subscribe", "params": ["newHeads"]}))
                backoff = max(reconnect_delay, 1)

                async for message in ws:
                    payload = json.loads(message)
                    if payload.get("id") == 1:
                        if payload.get("error"):
                            raise RuntimeError(f"Subscribe failed: {payload}")
                        _log(f"Subscribed: {payload.get('result')}")
                    elif payload.get("method") == "eth_subscription":
                        await sync.catch_up(request)
        except (IndexerError, OSError, RuntimeError, ValueError, WebSocketException) as exc:
            _log(f"Follow error: {exc}")
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, max_backoff)


def _print(obj: Any) -> None:
    print(_json_dumps(obj, indent=2))


def _cmd_sync(args: argparse.Namespace, cfg: Dict[str, Any], store: LeaderboardStore) -> None:
    sync = LeaderboardSync(cfg, store)
    request = SyncRequest(network=args.network, from_block=args.from_block, reset=args.reset)
    if args.catch_up:
        summaries = asyncio.run(sync.catch_up(request, max_passes=args.max_passes))
        _print([summary.to_dict() for summary in summaries])
    else:
        _print(asyncio.run(sync.run_pass(request)).to_dict())


def _cmd_reset(args: argparse.Namespace, cfg: Dict[str, Any], store: LeaderboardStore) -> None:
    network = get_network(cfg, args.network)
    start = args.from_block if args.from_block is not None else network.genesis_block
    if start is None:
        raise IndexerError(f"--from-block is required: {args.network} has no genesis_block")
    deleted = store.reset_leaderboard(network.name, start)
    _print({"deleted": deleted, "network": network.name, "startingBlock": start})


def main() -> None:
    parser = argparse.ArgumentParser(description="DripCore leaderboard indexer")
    parser.add_argument("--config", default=None, help="Path to config JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    sync_parser = sub.add_parser("sync", help="Run one synchronization pass")
    sync_parser.add_argument("--network", default="sepolia")
    sync_parser.add_argument("--from-block", type=int, default=None)
    sync_parser.add_argument("--reset", action="store_true")
    sync_parser.add_argument("--catch-up", action="store_true", help="Repeat passes until the head is reached")
    sync_parser.add_argument("--max-passes", type=int, default=100)

    follow_parser = sub.add_parser("follow", help="Sync on every new head (websocket)")
    follow_parser.add_argument("--network", default="sepolia")

    top_parser = sub.add_parser("top", help="Top accounts by points")
    top_parser.add_argument("--limit", type=int, default=DEFAULT_TOP_N)

    rank_parser = sub.add_parser("rank", help="Stats and rank for one address")
    rank_parser.add_argument("address")

    reset_parser = sub.add_parser("reset", help="Clear all stats and restart a network")
    reset_parser.add_argument("--network", default="mainnet")
    reset_parser.add_argument("--from-block", type=int, default=None)

    args = parser.parse_args()
    cfg = load_config(args.config)
    store = LeaderboardStore(cfg["db_path"])

    try:
        if args.command == "sync":
            _cmd_sync(args, cfg, store)
        elif args.command == "follow":
            asyncio.run(follow(LeaderboardSync(cfg, store), args.network))
        elif args.command == "top":
            _print([entry.to_dict() for entry in get_top_n(store, args.limit)])
        elif args.command == "rank":
            _print(get_rank(store, args.address).to_dict())
        elif args.command == "reset":
            _cmd_reset(args, cfg, store)
    except (IndexerError, ValueError) as exc:
        _log(f"ERROR: {exc}")
        sys.exit(1)
    finally:
        store.close()
