"""Serverless HTTP handlers for the leaderboard.

Each handler takes an API-gateway style ``event`` dict and returns
``{"statusCode": ..., "headers": ..., "body": json}``. Failures come back as
``{"error": ...}`` bodies; transport exceptions never reach the caller.
"""

import asyncio
import os
from typing import Any, Dict, Optional

from .config import load_config
from .errors import ConfigurationError, IndexerError, LeaseHeldError, StoreError
from .ranking import DEFAULT_TOP_N, get_rank, get_top_n
from .store import LeaderboardStore
from .sync import LeaderboardSync, SyncRequest
from .util import _json_dumps, _log


_runtime: Dict[str, Any] = {}


def _get_config() -> Dict[str, Any]:
    if "config" not in _runtime:
        _runtime["config"] = load_config(os.environ.get("LEADERBOARD_CONFIG"))
    return _runtime["config"]


def _get_store() -> LeaderboardStore:
    if "store" not in _runtime:
        _runtime["store"] = LeaderboardStore(_get_config()["db_path"])
    return _runtime["store"]


def _get_sync() -> LeaderboardSync:
    if "sync" not in _runtime:
        _runtime["sync"] = LeaderboardSync(_get_config(), _get_store())
    return _runtime["sync"]


def _response(status: int, body: Any) -> Dict[str, Any]:
    return {
        "statusCode": status,
        "headers": {"Content-Type": "application/json", "Cache-Control": "no-store"},
        "body": _json_dumps(body),
    }


def _query(event: Dict[str, Any]) -> Dict[str, str]:
    return event.get("queryStringParameters") or {}


def _optional_int(value: Optional[str], name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer") from None
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def sync_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    params = _query(event)
    try:
        request = SyncRequest(
            network=params.get("network") or "sepolia",
            from_block=_optional_int(params.get("fromBlock"), "fromBlock"),
            reset=params.get("reset") == "true",
        )
    except ValueError as exc:
        return _response(400, {"error": str(exc)})

    try:
        summary = asyncio.run(_get_sync().run_pass(request))
    except LeaseHeldError as exc:
        return _response(409, {"error": str(exc)})
    except ConfigurationError as exc:
        _log(f"Sync configuration error: {exc}")
        return _response(500, {"error": str(exc)})
    except IndexerError as exc:
        _log(f"Error in leaderboard sync: {exc}")
        return _response(500, {"error": "Failed to sync leaderboard"})
    return _response(200, summary.to_dict())


def leaderboard_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    try:
        limit = _optional_int(_query(event).get("limit"), "limit")
    except ValueError as exc:
        return _response(400, {"error": str(exc)})
    try:
        ranked = get_top_n(_get_store(), DEFAULT_TOP_N if limit is None else limit)
    except StoreError as exc:
        _log(f"Error loading leaderboard: {exc}")
        return _response(500, {"error": "Failed to load leaderboard"})
    return _response(200, [entry.to_dict() for entry in ranked])


def user_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    address = ((event.get("pathParameters") or {}).get("address") or "").lower()
    try:
        ranked = get_rank(_get_store(), address)
    except ValueError:
        return _response(400, {"error": "Invalid address"})
    except StoreError as exc:
        _log(f"Error loading stats for {address}: {exc}")
        return _response(500, {"error": "Failed to load user leaderboard stats"})
    return _response(200, ranked.to_dict())
