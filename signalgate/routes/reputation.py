from typing import Optional
from fastapi import APIRouter, Query, Request

from ..lib.errors import NotFound

router = APIRouter(prefix="/api/reputation", tags=["reputation"])


@router.get("")
async def get_reputation(request: Request, agent_id: Optional[str] = Query(None, alias="agentId")):
    """One agent's record when agentId is given, otherwise every agent (leaderboard order)."""
    book = request.app.state.reputation
    if agent_id:
        reputation = await book.get(agent_id)
        if reputation is None:
            raise NotFound("Reputation not found for agent")
        return {"success": True, "data": reputation.to_wire()}

    return {"success": True, "data": [r.to_wire() for r in await book.all()]}


@router.get("/leaderboard")
async def get_leaderboard(request: Request, limit: int = Query(10, ge=1, le=100)):
    leaderboard = await request.app.state.reputation.leaderboard(limit)
    return {"success": True, "data": [r.to_wire() for r in leaderboard]}
