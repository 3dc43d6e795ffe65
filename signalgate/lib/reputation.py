"""
Agent reputation accounting.

Each agent has success/failure counters. The score is always recomputed from
them and never written on its own:

    total_requests == successes + failures
    reputation_score == successes / total_requests   (0.5 before any outcome)

record_outcome() is a read-modify-write on one row. It runs under the storage
backend's per-agent lock (asyncio.Lock in memory, SELECT ... FOR UPDATE in
Postgres), so concurrent outcomes for one agent serialize and outcomes for
different agents do not wait on each other.
"""
import logging
from typing import Callable, Optional, List

from ..models.signals import AgentReputation
from .receipts import now_ms

logger = logging.getLogger("reputation")

NEUTRAL_SCORE = 0.5


def fresh_row(agent_id: str) -> dict:
    return {
        "agent_id": agent_id,
        "successes": 0,
        "failures": 0,
        "total_requests": 0,
        "reputation_score": NEUTRAL_SCORE,
        "last_activity": 0,
    }


def apply_outcome(row: dict, success: bool, at: int) -> dict:
    """Return a new row with one outcome counted. Pure."""
    successes = row["successes"] + (1 if success else 0)
    failures = row["failures"] + (0 if success else 1)
    total = successes + failures
    return {
        "agent_id": row["agent_id"],
        "successes": successes,
        "failures": failures,
        "total_requests": total,
        "reputation_score": successes / total,
        "last_activity": at,
    }


class ReputationBook:
    """Owns the reputation table."""

    def __init__(self, storage, clock: Callable[[], int] = now_ms):
        self.storage = storage
        self.clock = clock

    async def record_outcome(self, agent_id: str, success: bool) -> AgentReputation:
        async with self.storage.reputation_row(agent_id) as txn:
            current = txn.current or fresh_row(agent_id)
            updated = apply_outcome(current, success, self.clock())
            txn.save(updated)

        logger.info(
            f"Reputation {agent_id}: {'success' if success else 'failure'} "
            f"-> {updated['successes']}/{updated['total_requests']} "
            f"score={updated['reputation_score']:.4f}"
        )
        return AgentReputation(**updated)

    async def get(self, agent_id: str) -> Optional[AgentReputation]:
        row = await self.storage.get_reputation(agent_id)
        return AgentReputation(**row) if row else None

    async def leaderboard(self, limit: int = 10) -> List[AgentReputation]:
        """Score descending; equal scores rank the agent with more requests first."""
        rows = await self.storage.list_reputations(max(1, limit))
        return [AgentReputation(**r) for r in rows]

    async def all(self, limit: int = 1000) -> List[AgentReputation]:
        return await self.leaderboard(limit)
