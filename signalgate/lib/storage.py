"""
Persistence for receipts and agent reputation.

Two backends share one interface:
- MemoryStorage: process-local dicts, per-agent asyncio locks. Dev and tests.
- PostgresStorage: asyncpg pool. Receipts insert with ON CONFLICT DO NOTHING,
  reputation rows are updated inside a transaction holding SELECT ... FOR UPDATE.

The backends only move rows. Hashing lives in receipts.py, score arithmetic
in reputation.py.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional, List

from .errors import StorageUnavailable

logger = logging.getLogger("storage")


SCHEMA = """
CREATE TABLE IF NOT EXISTS receipts (
    hash VARCHAR(64) PRIMARY KEY,
    transaction_signature TEXT NOT NULL,
    signal_content TEXT NOT NULL,
    request_timestamp BIGINT NOT NULL,
    client_public_key TEXT,
    created_at BIGINT NOT NULL
);
CREATE TABLE IF NOT EXISTS reputation (
    agent_id VARCHAR(255) PRIMARY KEY,
    successes INTEGER NOT NULL DEFAULT 0,
    failures INTEGER NOT NULL DEFAULT 0,
    total_requests INTEGER NOT NULL DEFAULT 0,
    reputation_score DOUBLE PRECISION NOT NULL DEFAULT 0.5,
    last_activity BIGINT NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_receipts_created_at ON receipts(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_reputation_rank ON reputation(reputation_score DESC, total_requests DESC);
"""

RECEIPT_COLUMNS = (
    "hash, transaction_signature, signal_content, request_timestamp, "
    "client_public_key, created_at"
)
REPUTATION_COLUMNS = (
    "agent_id, successes, failures, total_requests, reputation_score, last_activity"
)


def rank_key(row: dict) -> tuple:
    """Leaderboard order: score desc, then evidence (total requests) desc."""
    return (-row["reputation_score"], -row["total_requests"])


@dataclass
class ReputationTxn:
    """
    Handle for one locked reputation row.

    `current` is the row as read under the lock (None if the agent has no row).
    Call save() with the new row; it is written when the block exits cleanly.
    """
    agent_id: str
    current: Optional[dict]
    pending: Optional[dict] = None

    def save(self, row: dict):
        if row["agent_id"] != self.agent_id:
            raise ValueError(f"row for {row['agent_id']} saved under lock for {self.agent_id}")
        self.pending = dict(row)


class MemoryStorage:
    def __init__(self):
        self._receipts: dict[str, dict] = {}
        self._reputations: dict[str, dict] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def connect(self):
        logger.info("Using in-memory storage (data is lost on restart)")

    async def close(self):
        pass

    async def insert_receipt(self, row: dict) -> bool:
        if row["hash"] in self._receipts:
            return False
        self._receipts[row["hash"]] = dict(row)
        return True

    async def get_receipt(self, receipt_hash: str) -> Optional[dict]:
        row = self._receipts.get(receipt_hash)
        return dict(row) if row else None

    async def list_receipts(self, limit: int) -> List[dict]:
        rows = sorted(self._receipts.values(), key=lambda r: r["created_at"], reverse=True)
        return [dict(r) for r in rows[:limit]]

    async def _load_reputation(self, agent_id: str) -> Optional[dict]:
        row = self._reputations.get(agent_id)
        return dict(row) if row else None

    @asynccontextmanager
    async def reputation_row(self, agent_id: str) -> AsyncIterator[ReputationTxn]:
        lock = self._locks.setdefault(agent_id, asyncio.Lock())
        async with lock:
            txn = ReputationTxn(agent_id, await self._load_reputation(agent_id))
            yield txn
            if txn.pending is not None:
                self._reputations[agent_id] = txn.pending

    async def get_reputation(self, agent_id: str) -> Optional[dict]:
        return await self._load_reputation(agent_id)

    async def list_reputations(self, limit: int) -> List[dict]:
        rows = sorted(self._reputations.values(), key=rank_key)
        return [dict(r) for r in rows[:limit]]


class PostgresStorage:
    def __init__(self, dsn: str, timeout: float = 5.0, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.timeout = timeout
        self.min_size = min_size
        self.max_size = max_size
        self.pool = None

    async def connect(self):
        import asyncpg
        try:
            self.pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.timeout,
            )
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA)
        except (OSError, asyncpg.PostgresError) as e:
            raise StorageUnavailable(f"Could not connect to database: {e}") from e
        logger.info("Connected to PostgreSQL")

    async def close(self):
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def _connection(self):
        import asyncpg
        if self.pool is None:
            raise StorageUnavailable("Database pool not initialized")
        try:
            async with self.pool.acquire(timeout=self.timeout) as conn:
                yield conn
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.error(f"Database error: {e}")
            raise StorageUnavailable() from e

    async def insert_receipt(self, row: dict) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(
                f"""
                INSERT INTO receipts ({RECEIPT_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (hash) DO NOTHING
                """,
                row["hash"],
                row["transaction_signature"],
                row["signal_content"],
                row["request_timestamp"],
                row["client_public_key"],
                row["created_at"],
            )
            # asyncpg returns the command tag, e.g. "INSERT 0 1"
            return result.endswith(" 1")

    async def get_receipt(self, receipt_hash: str) -> Optional[dict]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {RECEIPT_COLUMNS} FROM receipts WHERE hash = $1", receipt_hash
            )
            return dict(row) if row else None

    async def list_receipts(self, limit: int) -> List[dict]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {RECEIPT_COLUMNS} FROM receipts ORDER BY created_at DESC LIMIT $1", limit
            )
            return [dict(r) for r in rows]

    @asynccontextmanager
    async def reputation_row(self, agent_id: str) -> AsyncIterator[ReputationTxn]:
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO reputation (agent_id) VALUES ($1) ON CONFLICT (agent_id) DO NOTHING",
                    agent_id,
                )
                row = await conn.fetchrow(
                    f"SELECT {REPUTATION_COLUMNS} FROM reputation WHERE agent_id = $1 FOR UPDATE",
                    agent_id,
                )
                current = dict(row) if row and row["total_requests"] > 0 else None
                txn = ReputationTxn(agent_id, current)
                yield txn
                if txn.pending is not None:
                    p = txn.pending
                    await conn.execute(
                        """
                        UPDATE reputation
                        SET successes = $2, failures = $3, total_requests = $4,
                            reputation_score = $5, last_activity = $6
                        WHERE agent_id = $1
                        """,
                        agent_id,
                        p["successes"],
                        p["failures"],
                        p["total_requests"],
                        p["reputation_score"],
                        p["last_activity"],
                    )

    async def get_reputation(self, agent_id: str) -> Optional[dict]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {REPUTATION_COLUMNS} FROM reputation WHERE agent_id = $1 AND total_requests > 0",
                agent_id,
            )
            return dict(row) if row else None

    async def list_reputations(self, limit: int) -> List[dict]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {REPUTATION_COLUMNS} FROM reputation
                WHERE total_requests > 0
                ORDER BY reputation_score DESC, total_requests DESC
                LIMIT $1
                """,
                limit,
            )
            return [dict(r) for r in rows]
