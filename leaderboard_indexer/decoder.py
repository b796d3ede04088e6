"""Decode raw DripCore logs into typed leaderboard events.

Every raw log ends up as exactly one of ``Matched``, ``Skipped`` or
``DecodeError``. Only ``Matched`` carries an event; the other two are counted
and dropped by the caller, never raised.
"""

import os
from typing import Any, Dict, List, NamedTuple, Optional, Union

from eth_utils import event_abi_to_log_topic
from web3 import Web3
from web3._utils.events import get_event_data

from .util import _db_addr, _load_json, _log, _normalize_log, is_address, to_hex


STREAM_CREATED = "StreamCreated"
STREAM_WITHDRAWN = "StreamWithdrawn"

DRIP_CORE_EVENTS: List[Dict[str, Any]] = [
    {
        "type": "event",
        "name": STREAM_CREATED,
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "streamId", "type": "uint256"},
            {"indexed": True, "name": "sender", "type": "address"},
            {"indexed": False, "name": "recipients", "type": "address[]"},
            {"indexed": False, "name": "token", "type": "address"},
            {"indexed": False, "name": "deposit", "type": "uint256"},
            {"indexed": False, "name": "startTime", "type": "uint256"},
            {"indexed": False, "name": "endTime", "type": "uint256"},
            {"indexed": False, "name": "title", "type": "string"},
            {"indexed": False, "name": "description", "type": "string"},
        ],
    },
    {
        "type": "event",
        "name": STREAM_WITHDRAWN,
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "streamId", "type": "uint256"},
            {"indexed": True, "name": "recipient", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
    },
]


class EventKey(NamedTuple):
    source_address: str
    block_number: int
    log_index: int


class StreamCreated(NamedTuple):
    sender: str
    deposit_amount: int
    stream_id: Optional[int]
    key: EventKey


class StreamWithdrawn(NamedTuple):
    recipient: str
    amount: int
    stream_id: Optional[int]
    key: EventKey


DecodedEvent = Union[StreamCreated, StreamWithdrawn]


class Matched(NamedTuple):
    event: DecodedEvent


class Skipped(NamedTuple):
    topic: Optional[str]


class DecodeError(NamedTuple):
    event_name: str
    reason: str


DecodeResult = Union[Matched, Skipped, DecodeError]


class DecodeReport:
    def __init__(self) -> None:
        self.events: List[DecodedEvent] = []
        self.skipped = 0
        self.decode_errors = 0

    @property
    def created_count(self) -> int:
        return sum(1 for e in self.events if isinstance(e, StreamCreated))

    @property
    def withdrawn_count(self) -> int:
        return sum(1 for e in self.events if isinstance(e, StreamWithdrawn))


def _extract_abi(abi_json: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(abi_json, list):
        return abi_json
    if isinstance(abi_json, dict) and "abi" in abi_json:
        return abi_json.get("abi")
    return None


def load_event_abi(path: str) -> List[Dict[str, Any]]:
    """Load a Hardhat artifact or a raw ABI array, keeping only events."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"ABI path not found: {path}")
    abi = _extract_abi(_load_json(path))
    if abi is None:
        raise ValueError(f"No ABI found in {path}")
    events = []
    for item in abi:
        if isinstance(item, dict) and item.get("type") == "event":
            entry = dict(item)
            entry.setdefault("anonymous", False)
            events.append(entry)
    return events


def _require_address(value: Any, field: str) -> str:
    if not is_address(value):
        raise ValueError(f"{field} is not an address: {value!r}")
    return _db_addr(value)


def _require_amount(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field} is not an integer: {value!r}")
    if value < 0:
        raise ValueError(f"{field} is negative: {value}")
    return value


class EventCatalogue:
    """Topic-indexed set of the events the leaderboard cares about."""

    def __init__(self, event_abis: Optional[List[Dict[str, Any]]] = None, codec: Any = None):
        self.codec = codec if codec is not None else Web3().codec
        self.topic_to_abi: Dict[bytes, Dict[str, Any]] = {}
        for event_abi in event_abis if event_abis is not None else DRIP_CORE_EVENTS:
            if event_abi.get("anonymous"):
                continue
            if event_abi.get("name") not in (STREAM_CREATED, STREAM_WITHDRAWN):
                continue
            self.topic_to_abi[bytes(event_abi_to_log_topic(event_abi))] = event_abi
        if not self.topic_to_abi:
            raise ValueError("ABI has neither StreamCreated nor StreamWithdrawn")

    def topic_for(self, name: str) -> bytes:
        for topic, event_abi in self.topic_to_abi.items():
            if event_abi["name"] == name:
                return topic
        raise KeyError(name)

    def decode_log(self, raw: Dict[str, Any]) -> DecodeResult:
        try:
            log = _normalize_log(raw)
        except Exception as exc:
            return DecodeError("unknown", f"malformed log: {type(exc).__name__}: {exc}")
        topics = log.get("topics") or []
        if not topics:
            return Skipped(None)
        topic0 = bytes(topics[0])
        event_abi = self.topic_to_abi.get(topic0)
        if event_abi is None:
            return Skipped(to_hex(topic0))

        name = event_abi["name"]
        try:
            event_data = get_event_data(self.codec, event_abi, log)
            args = dict(event_data["args"])
            key = EventKey(
                _db_addr(log.get("sourceAddress") or log["address"]),
                int(log["blockNumber"]),
                int(log["logIndex"]),
            )
            stream_id = args.get("streamId")
            if name == STREAM_CREATED:
                event: DecodedEvent = StreamCreated(
                    sender=_require_address(args.get("sender"), "sender"),
                    deposit_amount=_require_amount(args.get("deposit"), "deposit"),
                    stream_id=stream_id,
                    key=key,
                )
            else:
                event = StreamWithdrawn(
                    recipient=_require_address(args.get("recipient"), "recipient"),
                    amount=_require_amount(args.get("amount"), "amount"),
                    stream_id=stream_id,
                    key=key,
                )
        except Exception as exc:
            return DecodeError(name, f"{type(exc).__name__}: {exc}")
        return Matched(event)

    def decode_batch(self, logs: List[Dict[str, Any]]) -> DecodeReport:
        report = DecodeReport()
        for raw in logs:
            result = self.decode_log(raw)
            if isinstance(result, Matched):
                report.events.append(result.event)
            elif isinstance(result, Skipped):
                report.skipped += 1
            else:
                report.decode_errors += 1
                _log(
                    f"WARN: Failed decoding {result.event_name} at block {raw.get('blockNumber')} "
                    f"({raw.get('address')}): {result.reason}"
                )
        return report
