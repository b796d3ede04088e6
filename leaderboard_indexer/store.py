import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Set

from .aggregator import DEFAULT_WEIGHTS, AccountDelta, AccountStats, ScoreWeights
from .decoder import EventKey
from .errors import LeaseHeldError, StoreError
from .util import _db_addr, _log, utc_now


SCHEMA = """
CREATE TABLE IF NOT EXISTS checkpoints (
    network TEXT PRIMARY KEY,
    last_processed_block INTEGER NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS account_stats (
    address TEXT PRIMARY KEY,
    streams_created INTEGER NOT NULL DEFAULT 0,
    withdrawals_claimed INTEGER NOT NULL DEFAULT 0,
    total_deposited TEXT NOT NULL DEFAULT '0',
    total_withdrawn TEXT NOT NULL DEFAULT '0',
    score INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_account_stats_score ON account_stats(score DESC, address ASC);

CREATE TABLE IF NOT EXISTS applied_events (
    network TEXT NOT NULL,
    source_address TEXT NOT NULL,
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    PRIMARY KEY (network, source_address, block_number, log_index)
);

CREATE TABLE IF NOT EXISTS leases (
    network TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""


def _row_to_stats(row: sqlite3.Row) -> AccountStats:
    return AccountStats(
        address=row["address"],
        streams_created=int(row["streams_created"]),
        withdrawals_claimed=int(row["withdrawals_claimed"]),
        total_deposited=int(row["total_deposited"]),
        total_withdrawn=int(row["total_withdrawn"]),
        score=int(row["score"]),
        updated_at=row["updated_at"],
    )


class LeaderboardStore:
    """sqlite-backed checkpoints, account stats, idempotency ledger and leases."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        # autocommit mode; every write goes through an explicit BEGIN IMMEDIATE
        try:
            self.conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL;")
            self.conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise StoreError(f"could not open {db_path}: {exc}") from exc
        self.db_lock = threading.RLock()

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self.db_lock:
            try:
                cur = self.conn.cursor()
                cur.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StoreError(f"could not open transaction: {exc}") from exc
            try:
                yield cur
                cur.execute("COMMIT")
            except sqlite3.Error as exc:
                self.conn.rollback()
                raise StoreError(str(exc)) from exc
            except BaseException:
                self.conn.rollback()
                raise

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self.db_lock:
            try:
                yield self.conn
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    # -- checkpoints ---------------------------------------------------------

    def get_checkpoint(self, network: str) -> Optional[int]:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT last_processed_block FROM checkpoints WHERE network = ?", (network,)
            ).fetchone()
        return int(row["last_processed_block"]) if row else None

    def pin_checkpoint(self, network: str, block_number: int) -> None:
        """Set the checkpoint unconditionally (first run and explicit reset only)."""
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO checkpoints (network, last_processed_block, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(network) DO UPDATE SET
                    last_processed_block = excluded.last_processed_block,
                    updated_at = excluded.updated_at
                """,
                (network, block_number, utc_now()),
            )

    # -- aggregation ---------------------------------------------------------

    def already_applied(self, network: str, keys: Iterable[EventKey]) -> Set[EventKey]:
        """Return the subset of ``keys`` already recorded for ``network``."""
        applied: Set[EventKey] = set()
        with self._reading() as conn:
            cur = conn.cursor()
            for key in keys:
                row = cur.execute(
                    """
                    SELECT 1 FROM applied_events
                    WHERE network = ? AND source_address = ? AND block_number = ? AND log_index = ?
                    """,
                    (network, _db_addr(key.source_address), key.block_number, key.log_index),
                ).fetchone()
                if row is not None:
                    applied.add(key)
        return applied

    def commit_window(
        self,
        network: str,
        to_block: int,
        deltas: Dict[str, AccountDelta],
        applied_keys: Iterable[EventKey],
        weights: ScoreWeights = DEFAULT_WEIGHTS,
    ) -> None:
        """Record events, merge deltas and advance the checkpoint atomically.

        A key that is already in the ledger aborts the whole window with
        ``StoreError``: it means another writer counted it concurrently.
        The checkpoint only ever moves forward here.
        """
        now = utc_now()
        with self._transaction() as cur:
            cur.executemany(
                """
                INSERT INTO applied_events (network, source_address, block_number, log_index)
                VALUES (?, ?, ?, ?)
                """,
                [(network, _db_addr(k.source_address), k.block_number, k.log_index) for k in applied_keys],
            )
            for address, delta in deltas.items():
                row = cur.execute("SELECT * FROM account_stats WHERE address = ?", (address,)).fetchone()
                merged = delta.merge_into(_row_to_stats(row) if row else None, weights)
                cur.execute(
                    """
                    INSERT INTO account_stats (
                        address, streams_created, withdrawals_claimed,
                        total_deposited, total_withdrawn, score, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(address) DO UPDATE SET
                        streams_created = excluded.streams_created,
                        withdrawals_claimed = excluded.withdrawals_claimed,
                        total_deposited = excluded.total_deposited,
                        total_withdrawn = excluded.total_withdrawn,
                        score = excluded.score,
                        updated_at = excluded.updated_at
                    """,
                    (
                        merged.address,
                        merged.streams_created,
                        merged.withdrawals_claimed,
                        str(merged.total_deposited),
                        str(merged.total_withdrawn),
                        merged.score,
                        now,
                    ),
                )
            cur.execute(
                """
                INSERT INTO checkpoints (network, last_processed_block, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(network) DO UPDATE SET
                    last_processed_block = MAX(last_processed_block, excluded.last_processed_block),
                    updated_at = excluded.updated_at
                """,
                (network, to_block, now),
            )

    def reset_leaderboard(self, network: str, start_block: int) -> int:
        """Drop all stats and ledger entries; pin ``network`` to ``start_block - 1``.

        Other networks lose their checkpoints too, since their contribution
        to the (shared) stats is gone.
        """
        with self._transaction() as cur:
            deleted = cur.execute("DELETE FROM account_stats").rowcount
            cur.execute("DELETE FROM applied_events")
            cur.execute("DELETE FROM checkpoints")
            cur.execute(
                "INSERT INTO checkpoints (network, last_processed_block, updated_at) VALUES (?, ?, ?)",
                (network, start_block - 1, utc_now()),
            )
        _log(f"Leaderboard reset: deleted {deleted} account rows, {network} pinned to {start_block - 1}")
        return deleted

    # -- reads ---------------------------------------------------------------

    def get_account(self, address: str) -> Optional[AccountStats]:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT * FROM account_stats WHERE address = ?", (_db_addr(address),)
            ).fetchone()
        return _row_to_stats(row) if row else None

    def top_by_score(self, limit: int, offset: int = 0) -> List[AccountStats]:
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT * FROM account_stats ORDER BY score DESC, address ASC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [_row_to_stats(row) for row in rows]

    def count_with_score_above(self, score: int) -> int:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM account_stats WHERE score > ?", (score,)
            ).fetchone()
        return int(row["n"])

    def count_accounts(self) -> int:
        with self._reading() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM account_stats").fetchone()
        return int(row["n"])

    # -- leases --------------------------------------------------------------

    def acquire_lease(self, network: str, owner: str, ttl: float) -> None:
        now = time.time()
        with self._transaction() as cur:
            row = cur.execute("SELECT owner, expires_at FROM leases WHERE network = ?", (network,)).fetchone()
            if row is not None and row["owner"] != owner and row["expires_at"] > now:
                raise LeaseHeldError(network, row["owner"])
            cur.execute(
                "INSERT OR REPLACE INTO leases (network, owner, expires_at) VALUES (?, ?, ?)",
                (network, owner, now + ttl),
            )

    def release_lease(self, network: str, owner: str) -> None:
        with self._transaction() as cur:
            cur.execute("DELETE FROM leases WHERE network = ? AND owner = ?", (network, owner))
