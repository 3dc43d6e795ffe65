from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any


class PaymentRequirement(BaseModel):
    """What a payer must send to unlock one resource (x402 "exact" scheme)."""
    model_config = ConfigDict(frozen=True)

    resource: str
    price_micro_units: int = Field(gt=0)
    asset_address: str
    asset_decimals: int = Field(6, ge=0)
    description: str
    network: str
    pay_to: str = ""
    scheme: str = "exact"
    mime_type: str = "application/json"
    max_timeout_seconds: int = 60

    def to_wire(self) -> Dict[str, Any]:
        return {
            "scheme": self.scheme,
            "network": self.network,
            "maxAmountRequired": str(self.price_micro_units),
            "resource": self.resource,
            "description": self.description,
            "mimeType": self.mime_type,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "asset": self.asset_address,
            "extra": {"decimals": self.asset_decimals},
        }


class PaymentProof(BaseModel):
    """Decoded X-PAYMENT header. Untrusted until the facilitator verifies it."""
    x402_version: int = 1
    scheme: str = "exact"
    network: Optional[str] = None
    transaction_signature: str = ""
    client_public_key: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class SettlementRefs(BaseModel):
    transaction: Optional[str] = None
    payer: Optional[str] = None
    network: Optional[str] = None
    settled_at: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "success": True,
            "transaction": self.transaction,
            "payer": self.payer,
            "network": self.network,
        }
