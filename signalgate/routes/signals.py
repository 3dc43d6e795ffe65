"""
Paid signal endpoint.

POST /api/signals  {symbol, agentId} + X-PAYMENT header
  200 {success, data: {signal, receipt: {hash, transactionSignature}}}
  402 x402 challenge (no header) | {success: false, error} (bad payment)
  400 unknown symbol / agent (checked before any payment)
"""
import logging
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..lib.x402 import GateStatus, PAYMENT_RESPONSE_HEADER, build_challenge, encode_payment_response
from ..models.signals import SignalRequest
from ..services.agents import AGENTS

logger = logging.getLogger("signals")

router = APIRouter(prefix="/api", tags=["signals"])


@router.post("/signals")
async def request_signal(body: SignalRequest, request: Request):
    """
    Issue one trading signal for one settled payment.

    A client with no X-PAYMENT header gets the 402 challenge describing the
    price, asset and network; that is how clients discover what to pay.
    """
    issuer = request.app.state.issuer
    outcome = await issuer.issue(request.headers, body.symbol, body.agent_id)
    decision = outcome.decision

    if decision.status == GateStatus.CHALLENGE:
        status, challenge = build_challenge(decision.requirement)
        return JSONResponse(status_code=status, content=challenge)

    if decision.status == GateStatus.REJECTED:
        return JSONResponse(status_code=402, content={"success": False, "error": decision.reason or "Invalid payment"})

    headers = {}
    if decision.settlement is not None:
        headers[PAYMENT_RESPONSE_HEADER] = encode_payment_response(decision.settlement)

    return JSONResponse(
        status_code=200,
        content={"success": True, "data": outcome.result.to_wire()},
        headers=headers,
    )


@router.get("/agents")
def list_agents():
    return {"success": True, "data": [a.to_dict() for a in AGENTS]}
