"""
x402 payment gate.

Flow for one request:
1. No X-PAYMENT header        -> CHALLENGE (402 + requirements). Not an error.
2. Header present, bad/unpaid -> REJECTED (402 {"success": false}).
3. Facilitator /verify ok     -> /settle exactly once.
4. Settle ok                  -> ADMITTED, carrying proof + settlement refs.

SECURITY: fails closed. Facilitator down means no admission, never a free pass.
Settlement failure means the protected handler is never called.

The gate holds no state; concurrent requests are isolated by their proofs.
"""
import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from pydantic import ValidationError as ModelValidationError

from ..models.common import PaymentProof, PaymentRequirement, SettlementRefs
from .errors import PaymentRejected, SettlementFailed

logger = logging.getLogger("x402")

PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
X402_VERSION = 1


class GateStatus(str, Enum):
    ADMITTED = "admitted"
    CHALLENGE = "challenge"
    REJECTED = "rejected"


@dataclass
class GateDecision:
    status: GateStatus
    requirement: PaymentRequirement
    proof: Optional[PaymentProof] = None
    settlement: Optional[SettlementRefs] = None
    reason: Optional[str] = None

    @property
    def admitted(self) -> bool:
        return self.status == GateStatus.ADMITTED

    @property
    def transaction_signature(self) -> str:
        """Settled transaction id, falling back to the one the payer sent."""
        if self.settlement and self.settlement.transaction:
            return self.settlement.transaction
        return self.proof.transaction_signature if self.proof else ""

    @property
    def payer(self) -> Optional[str]:
        if self.proof and self.proof.client_public_key:
            return self.proof.client_public_key
        return self.settlement.payer if self.settlement else None


# =============================================================================
# Requirements / challenge
# =============================================================================

def resource_url(base_url: str, path: str) -> str:
    """Resources must be absolute URLs (protocol://path)."""
    if path.startswith("http://") or path.startswith("https://"):
        return path
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def build_requirement(
    *,
    resource: str,
    price_micro_units: int,
    asset_address: str,
    asset_decimals: int,
    network: str,
    pay_to: str,
    description: str,
) -> PaymentRequirement:
    return PaymentRequirement(
        resource=resource,
        price_micro_units=price_micro_units,
        asset_address=asset_address,
        asset_decimals=asset_decimals,
        network=network,
        pay_to=pay_to,
        description=description,
    )


def build_challenge(requirement: PaymentRequirement, error: str = "X-PAYMENT header is required") -> tuple[int, dict]:
    """402 body telling a client exactly what payment unlocks the resource."""
    return 402, {
        "x402Version": X402_VERSION,
        "error": error,
        "accepts": [requirement.to_wire()],
    }


def encode_payment_response(settlement: SettlementRefs) -> str:
    raw = json.dumps(settlement.to_wire(), separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


# =============================================================================
# Proof extraction
# =============================================================================

def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


def _is_utf8_text(value) -> bool:
    if not isinstance(value, str):
        return False
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def extract_payment(headers: Mapping[str, str]) -> Optional[PaymentProof]:
    """
    Decode the X-PAYMENT header.

    Returns None when no header is present (the discovery case).
    Raises PaymentRejected when a header is present but unreadable.
    """
    value = _header(headers, PAYMENT_HEADER)
    if value is None or not value.strip():
        return None

    value = value.strip()
    try:
        if value.startswith("{"):
            payload = json.loads(value)
        else:
            payload = json.loads(base64.b64decode(value, validate=True).decode("utf-8"))
        # Forwarded verbatim to the facilitator; lone surrogates cannot be sent
        json.dumps(payload, ensure_ascii=False).encode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as e:
        logger.warning(f"Malformed X-PAYMENT header: {e}")
        raise PaymentRejected("Malformed payment header") from e

    if not isinstance(payload, dict):
        raise PaymentRejected("Malformed payment header")

    inner = payload.get("payload") if isinstance(payload.get("payload"), dict) else {}
    tx_sig = (
        payload.get("transactionSignature")
        or inner.get("transactionSignature")
        or inner.get("signature")
        or ""
    )
    client_key = payload.get("clientPublicKey") or inner.get("clientPublicKey") or inner.get("payer")

    # tx and payer are hashed into the receipt after settlement: reject now, not then
    for field in (tx_sig, client_key):
        if field is not None and not _is_utf8_text(field):
            logger.warning("X-PAYMENT carries a non-text transaction or payer field")
            raise PaymentRejected("Malformed payment header")

    try:
        return PaymentProof(
            x402_version=int(payload.get("x402Version", X402_VERSION)),
            scheme=payload.get("scheme", "exact"),
            network=payload.get("network"),
            transaction_signature=tx_sig,
            client_public_key=client_key,
            raw=payload,
        )
    except (TypeError, ValueError, ModelValidationError) as e:
        raise PaymentRejected("Malformed payment header") from e


# =============================================================================
# Gate
# =============================================================================

class PaymentGate:
    """
    Request-scoped payment check in front of a paid resource.

    `oracle` is anything with async verify(proof, requirement) and
    async settle(proof, requirement) (see services/facilitator.py).
    """

    def __init__(self, oracle):
        self.oracle = oracle

    async def admit(self, headers: Mapping[str, str], requirement: PaymentRequirement) -> GateDecision:
        try:
            proof = extract_payment(headers)
        except PaymentRejected as e:
            return GateDecision(GateStatus.REJECTED, requirement, reason=e.message)

        if proof is None:
            logger.info(f"No payment for {requirement.resource}, sending challenge")
            return GateDecision(GateStatus.CHALLENGE, requirement)

        # Cheap local checks before spending a facilitator round trip
        if proof.network and proof.network != requirement.network:
            logger.warning(f"Payment on wrong network: {proof.network} != {requirement.network}")
            return GateDecision(GateStatus.REJECTED, requirement, proof=proof, reason="Invalid payment")
        if proof.scheme != requirement.scheme:
            return GateDecision(GateStatus.REJECTED, requirement, proof=proof, reason="Invalid payment")

        # UpstreamUnavailable propagates: fail closed
        verified = await self.oracle.verify(proof, requirement)
        if not verified.is_valid:
            logger.warning(f"Payment verification failed: {verified.invalid_reason}")
            return GateDecision(GateStatus.REJECTED, requirement, proof=proof, reason="Invalid payment")

        settled = await self.oracle.settle(proof, requirement)
        if not settled.success:
            logger.error(f"Payment settlement failed: {settled.error_reason}")
            raise SettlementFailed()

        settlement = SettlementRefs(
            transaction=settled.transaction,
            payer=settled.payer or verified.payer,
            network=settled.network or requirement.network,
            settled_at=int(time.time()),
        )
        decision = GateDecision(GateStatus.ADMITTED, requirement, proof=proof, settlement=settlement)
        logger.info(
            f"Payment settled: tx={decision.transaction_signature[:16]} "
            f"amount={requirement.price_micro_units} resource={requirement.resource}"
        )
        return decision
