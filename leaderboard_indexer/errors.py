class IndexerError(Exception):
    """Base class for errors that abort a synchronization pass."""


class ConfigurationError(IndexerError, ValueError):
    """Network is unknown or lacks an RPC endpoint / contract address."""


class StoreError(IndexerError, RuntimeError):
    """A checkpoint or aggregate write could not be committed."""


class RpcError(IndexerError):
    """The chain head could not be read; nothing was fetched or written."""


class LeaseHeldError(IndexerError):
    def __init__(self, network: str, owner: str):
        super().__init__(f"sync already running for {network} (lease held by {owner})")
        self.network = network
        self.owner = owner
