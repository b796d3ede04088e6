import json
import re
import sys
import time
from typing import Any, Dict

from hexbytes import HexBytes
from web3 import Web3


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _log(msg: str) -> None:
    ts = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())
    sys.stderr.write(f"[{ts} UTC] {msg}\n")
    sys.stderr.flush()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray)):
        return to_hex(obj)
    if isinstance(obj, set):
        return sorted(obj)
    return str(obj)


def to_hex(value: Any) -> str:
    # hexbytes>=1.0 dropped the 0x prefix from HexBytes.hex()
    return "0x" + bytes(value).hex()


def _json_dumps(obj: Any, **kwargs: Any) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=True, **kwargs)


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _to_checksum(addr: str) -> str:
    return Web3.to_checksum_address(addr)


def _db_addr(addr: str) -> str:
    return addr.lower()


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def _parse_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.startswith("0x"):
            return int(value, 16)
        return int(value)
    return int(value)


def _normalize_log(log: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(log)
    for key in ("transactionHash", "blockHash", "data"):
        if isinstance(out.get(key), str):
            out[key] = HexBytes(out[key])
    if isinstance(out.get("topics"), (list, tuple)):
        out["topics"] = [HexBytes(t) if isinstance(t, (str, bytes)) else t for t in out["topics"]]
    for key in ("blockNumber", "transactionIndex", "logIndex"):
        if key in out and out[key] is not None:
            out[key] = _parse_int(out[key])
    if "address" in out and isinstance(out["address"], str):
        out["address"] = _to_checksum(out["address"])
    return out


def utc_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
