from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, Literal


class CamelModel(BaseModel):
    """Snake-case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class SignalRequest(CamelModel):
    symbol: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class Recommendation(CamelModel):
    """
    Output of a recommendation engine, normalized at the boundary.

    Engines are not trusted verbatim: leverage is clamped to [1, 100],
    portfolio share to [1, 100] percent and confidence to [0, 1].
    Infinities and NaN are rejected outright.
    """
    model_config = ConfigDict(allow_inf_nan=False)

    signal: Literal["long", "short"]
    leverage: float
    portfolio_percentage: float
    take_profit: float = Field(gt=0)
    stop_loss: float = Field(gt=0)
    reasoning: str = ""
    confidence: float

    @field_validator("signal", mode="before")
    @classmethod
    def normalize_signal(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("leverage", "portfolio_percentage", mode="after")
    @classmethod
    def clamp_percent_range(cls, v: float) -> float:
        return _clamp(v, 1.0, 100.0)

    @field_validator("confidence", mode="after")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        return _clamp(v, 0.0, 1.0)


class AgentSignal(CamelModel):
    """The paid result delivered to the caller."""
    model_config = ConfigDict(allow_inf_nan=False)

    agent_id: str
    agent_name: str
    signal: Literal["long", "short"]
    current_price: float
    leverage: float
    liquidation_level: float
    portfolio_percentage: float
    take_profit: float
    stop_loss: float
    reasoning: str
    confidence: float
    timestamp: int
    symbol: str


class Receipt(CamelModel):
    model_config = ConfigDict(frozen=True)

    hash: str
    transaction_signature: str
    signal_content: str
    request_timestamp: int
    client_public_key: Optional[str] = None
    created_at: int


class AgentReputation(CamelModel):
    agent_id: str
    successes: int = 0
    failures: int = 0
    total_requests: int = 0
    reputation_score: float = 0.5
    last_activity: int = 0


class ReceiptRef(CamelModel):
    hash: Optional[str]
    transaction_signature: str
    stored: bool = True


class SignalResult(CamelModel):
    signal: AgentSignal
    receipt: ReceiptRef
