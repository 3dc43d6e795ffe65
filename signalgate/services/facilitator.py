"""
x402 facilitator client.

The facilitator is the payment oracle: it checks a payment payload against our
requirements (/verify) and submits the transfer on-chain (/settle). We never
inspect transactions ourselves.

Docs: https://x402.org / https://facilitator.payai.network
"""
import httpx
import logging
from typing import Optional
from pydantic import BaseModel

from ..lib.errors import UpstreamUnavailable
from ..models.common import PaymentProof, PaymentRequirement

logger = logging.getLogger("facilitator")

X402_VERSION = 1


class VerifyResult(BaseModel):
    """Result of a /verify call"""
    is_valid: bool
    invalid_reason: Optional[str] = None
    payer: Optional[str] = None


class SettleResult(BaseModel):
    """Result of a /settle call"""
    success: bool
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[str] = None


class FacilitatorClient:
    """
    HTTP client for an x402 facilitator.

    Transport errors, timeouts and 5xx answers raise UpstreamUnavailable so the
    gate fails closed. A 4xx answer is the facilitator saying no.
    """

    def __init__(self, base_url: str, timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _body(self, proof: PaymentProof, requirement: PaymentRequirement) -> dict:
        return {
            "x402Version": proof.x402_version or X402_VERSION,
            "paymentPayload": proof.raw,
            "paymentRequirements": requirement.to_wire(),
        }

    async def _post(self, path: str, body: dict) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(f"{self.base_url}{path}", json=body)
        except httpx.TimeoutException as e:
            logger.error(f"Facilitator {path} timeout")
            raise UpstreamUnavailable("Payment facilitator timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"Facilitator {path} unreachable: {e}")
            raise UpstreamUnavailable("Payment facilitator unreachable") from e

        if resp.status_code >= 500:
            logger.error(f"Facilitator {path} failed: {resp.status_code} - {resp.text}")
            raise UpstreamUnavailable("Payment facilitator error")
        return resp

    def _json(self, resp: httpx.Response, path: str) -> dict:
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"Payment facilitator sent invalid {path} response") from e
        if not isinstance(data, dict):
            raise UpstreamUnavailable(f"Payment facilitator sent invalid {path} response")
        return data

    async def verify(self, proof: PaymentProof, requirement: PaymentRequirement) -> VerifyResult:
        resp = await self._post("/verify", self._body(proof, requirement))
        data = self._json(resp, "/verify")
        if resp.status_code != 200:
            return VerifyResult(
                is_valid=False,
                invalid_reason=data.get("invalidReason") or data.get("error") or f"HTTP {resp.status_code}",
            )
        return VerifyResult(
            is_valid=bool(data.get("isValid")),
            invalid_reason=data.get("invalidReason"),
            payer=data.get("payer"),
        )

    async def settle(self, proof: PaymentProof, requirement: PaymentRequirement) -> SettleResult:
        resp = await self._post("/settle", self._body(proof, requirement))
        data = self._json(resp, "/settle")
        if resp.status_code != 200:
            return SettleResult(
                success=False,
                error_reason=data.get("errorReason") or data.get("error") or f"HTTP {resp.status_code}",
            )
        return SettleResult(
            success=bool(data.get("success")),
            transaction=data.get("transaction") or None,
            network=data.get("network"),
            payer=data.get("payer"),
            error_reason=data.get("errorReason"),
        )
