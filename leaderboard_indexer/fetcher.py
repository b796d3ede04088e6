import asyncio
from typing import Any, Dict, List, Optional, Sequence

from web3 import Web3

from .util import _db_addr, _log, _to_checksum


class FetchResult:
    def __init__(self) -> None:
        self.logs: List[Dict[str, Any]] = []
        self.failures: Dict[str, str] = {}


class LogFetcher:
    """Reads block heights and DripCore logs over HTTP JSON-RPC.

    web3's HTTP provider is blocking, so each call runs in the default
    executor and is bounded by ``timeout`` on the asyncio side as well as on
    the HTTP request itself.
    """

    def __init__(self, rpc_http: str, timeout: float = 30, w3: Optional[Web3] = None):
        self.rpc_http = rpc_http
        self.timeout = timeout
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_http, request_kwargs={"timeout": timeout}))

    async def _call(self, fn: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(loop.run_in_executor(None, fn, *args), timeout=self.timeout)

    async def get_head(self) -> int:
        return int(await self._call(lambda: self.w3.eth.block_number))

    def _get_logs(self, address: str, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        return list(
            self.w3.eth.get_logs(
                {
                    "fromBlock": from_block,
                    "toBlock": to_block,
                    "address": _to_checksum(address),
                }
            )
        )

    async def _fetch_one(self, address: str, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        raw = await self._call(self._get_logs, address, from_block, to_block)
        logs = []
        for entry in raw:
            # left raw; malformed entries are classified by the decoder
            log = dict(entry)
            log["sourceAddress"] = _db_addr(address)
            logs.append(log)
        return logs

    async def fetch(self, addresses: Sequence[str], from_block: int, to_block: int) -> FetchResult:
        """Fetch logs for every address; one address failing never hides the others."""
        result = FetchResult()
        outcomes = await asyncio.gather(
            *(self._fetch_one(address, from_block, to_block) for address in addresses),
            return_exceptions=True,
        )
        for address, outcome in zip(addresses, outcomes):
            key = _db_addr(address)
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.TimeoutError):
                    message = f"timed out after {self.timeout}s"
                else:
                    message = f"{type(outcome).__name__}: {outcome}"
                result.failures[key] = message
                _log(f"WARN: get_logs failed for {address} ({from_block}-{to_block}): {message}")
                continue
            result.logs.extend(outcome)
            _log(f"Found {len(outcome)} logs from {address} ({from_block}-{to_block})")
        return result
