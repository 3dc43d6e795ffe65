"""
Agent registry and supported instruments.

Both lists are static: a request naming anything else is rejected before any
payment is processed.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RiskLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class Agent:
    agent_id: str
    agent_name: str
    risk_level: RiskLevel

    def to_dict(self) -> dict:
        return {"agentId": self.agent_id, "agentName": self.agent_name, "riskLevel": self.risk_level.value}


AGENTS = (
    Agent("zyra", "Zyra", RiskLevel.HIGH),
    Agent("aria", "Aria", RiskLevel.MEDIUM),
    Agent("nova", "Nova", RiskLevel.LOW),
)

SUPPORTED_SYMBOLS = ("BTC/USD", "ETH/USD", "SOL/USD", "USDC/USD")

# Share of the margin that can be lost before liquidation
MAINTENANCE_FACTOR = 0.9


def get_agent(agent_id: str) -> Optional[Agent]:
    for agent in AGENTS:
        if agent.agent_id == agent_id:
            return agent
    return None


def is_supported_symbol(symbol: str) -> bool:
    return symbol in SUPPORTED_SYMBOLS


def liquidation_level(entry_price: float, leverage: float, is_short: bool) -> float:
    """Simplified: liquidated after losing 90% of margin."""
    margin_ratio = MAINTENANCE_FACTOR / leverage
    if is_short:
        return entry_price * (1 + margin_ratio)
    return entry_price * (1 - margin_ratio)
