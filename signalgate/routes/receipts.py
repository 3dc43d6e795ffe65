"""
Receipt lookup.

GET /api/receipt/{hash}  - public, no payment. Anyone can recompute the hash
                           from the returned fields (see lib/receipts.py).
GET /api/receipts        - admin listing, newest first. Basic auth, user
                           "admin", password SIGNALGATE_ADMIN_PASSWORD.
"""
import base64
import binascii
import logging
import secrets
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from ..lib.errors import NotFound

logger = logging.getLogger("receipts")

router = APIRouter(prefix="/api", tags=["receipts"])


def verify_admin_auth(authorization: Optional[str], expected_password: Optional[str]) -> bool:
    """
    Verify Basic Auth credentials.

    Expected format: "Basic base64(admin:password)"
    """
    if not authorization:
        return False

    if not expected_password:
        logger.warning("SIGNALGATE_ADMIN_PASSWORD not set, admin endpoints disabled")
        return False

    if not authorization.startswith("Basic "):
        return False

    try:
        decoded = base64.b64decode(authorization[6:]).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        logger.warning(f"Admin auth error: {e}")
        return False

    if ":" not in decoded:
        return False

    username, password = decoded.split(":", 1)
    return username == "admin" and secrets.compare_digest(password, expected_password)


def require_admin(request: Request, authorization: Optional[str] = Header(None)):
    """Dependency to require admin auth."""
    if not verify_admin_auth(authorization, request.app.state.settings.admin_password):
        raise HTTPException(
            status_code=401,
            detail="Admin authentication required",
            headers={"WWW-Authenticate": "Basic realm=\"SignalGate Admin\""},
        )


@router.get("/receipt/{receipt_hash}")
async def get_receipt(receipt_hash: str, request: Request):
    receipt = await request.app.state.ledger.lookup(receipt_hash)
    if receipt is None:
        raise NotFound("Receipt not found")
    return {"success": True, "data": receipt.to_wire()}


@router.get("/receipts", dependencies=[Depends(require_admin)])
async def list_receipts(request: Request, limit: int = Query(50, ge=1, le=500)):
    receipts = await request.app.state.ledger.list(limit)
    return {"success": True, "data": [r.to_wire() for r in receipts]}
