"""
Recommendation engines.

Each engine answers generate(agent, symbol, current_price, context) with a
Recommendation. Whatever an engine produces goes through the Recommendation
model, so leverage/portfolio/confidence are clamped no matter the source.

- HeuristicEngine: fixed risk-profile defaults. No network.
- HuggingFaceEngine: asks a hosted text-generation model for JSON, falls back
  to the heuristic engine when the model is unreachable or answers garbage.
"""
import httpx
import json
import logging
import re
import time
from typing import Callable, Optional

from pydantic import ValidationError as ModelValidationError

from ..models.signals import Recommendation
from .agents import Agent, RiskLevel
from .market import MarketContext

logger = logging.getLogger("ai")

HF_API_BASE = "https://api-inference.huggingface.co/models"
DEFAULT_MODEL = "mistralai/Mistral-7B-Instruct-v0.2"

DEFAULT_LEVERAGE = {RiskLevel.HIGH: 50, RiskLevel.MEDIUM: 15, RiskLevel.LOW: 3}
DEFAULT_PORTFOLIO = {RiskLevel.HIGH: 20, RiskLevel.MEDIUM: 10, RiskLevel.LOW: 5}
TAKE_PROFIT_PCT = 0.05
STOP_LOSS_PCT = 0.02
DEFAULT_CONFIDENCE = 0.75

RISK_GUIDELINES = {
    RiskLevel.HIGH: "You are a HIGH RISK trader. Recommend leverage 20-100x, larger portfolio allocation (15-30%), and aggressive TP/SL ratios (3:1 or higher).",
    RiskLevel.MEDIUM: "You are a MEDIUM RISK trader. Recommend leverage 5-25x, moderate portfolio allocation (5-15%), and balanced TP/SL ratios (2:1).",
    RiskLevel.LOW: "You are a LOW RISK trader. Recommend leverage 1-10x, conservative portfolio allocation (2-8%), and tighter TP/SL ratios (1.5:1).",
}

JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def take_profit(price: float, is_short: bool) -> float:
    return price * (1 - TAKE_PROFIT_PCT) if is_short else price * (1 + TAKE_PROFIT_PCT)


def stop_loss(price: float, is_short: bool) -> float:
    return price * (1 + STOP_LOSS_PCT) if is_short else price * (1 - STOP_LOSS_PCT)


def _fmt_price(price: float) -> str:
    return f"${price:,.2f}"


class HeuristicEngine:
    """
    Deterministic stand-in for a model.

    Direction alternates per symbol and per hour so repeated demo calls are
    stable within an hour.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    async def generate(self, agent: Agent, symbol: str, current_price: float, context: MarketContext) -> Recommendation:
        return self.analyze(agent, symbol, current_price)

    def analyze(self, agent: Agent, symbol: str, current_price: float) -> Recommendation:
        symbol_hash = sum(ord(c) for c in symbol)
        hour_bucket = int(self.clock()) // 3600
        is_short = (symbol_hash + hour_bucket) % 2 == 0
        side = "short" if is_short else "long"
        outlook = "bearish" if is_short else "bullish"

        return Recommendation(
            signal=side,
            leverage=DEFAULT_LEVERAGE[agent.risk_level],
            portfolio_percentage=DEFAULT_PORTFOLIO[agent.risk_level],
            take_profit=take_profit(current_price, is_short),
            stop_loss=stop_loss(current_price, is_short),
            reasoning=(
                f"Based on {agent.risk_level.value}-risk technical analysis of {symbol}, "
                f"{agent.agent_name} recommends a {side} position at {_fmt_price(current_price)}. "
                f"Current market conditions show {outlook} indicators with measured confidence."
            ),
            confidence=DEFAULT_CONFIDENCE,
        )


def build_prompt(agent: Agent, symbol: str, current_price: float, context: MarketContext) -> str:
    def na(v):
        return "N/A" if v is None else v

    return f"""You are {agent.agent_name}, an AI trading agent specialized in cryptocurrency perpetual futures trading.

{RISK_GUIDELINES[agent.risk_level]}

Current Market Analysis:
- Asset: {symbol}
- Current Price: {_fmt_price(current_price)}
- Long/Short Ratio: {na(context.long_short_ratio)}
- Fear & Greed Index: {na(context.fear_greed_index)} / 100
- RSI: {na(context.rsi)}

Based on this data, provide a trading recommendation in JSON format:
{{
  "signal": "long" or "short",
  "leverage": number (1-100),
  "portfolioPercentage": number (0-100),
  "takeProfit": price target,
  "stopLoss": price target,
  "reasoning": "brief analysis explanation",
  "confidence": number (0-1)
}}

Analysis:"""


def parse_model_output(text: str, agent: Agent, current_price: float) -> Recommendation:
    """
    Pull the JSON object out of generated text and fill gaps with defaults.

    Raises ValueError if no usable JSON object is present.
    """
    match = JSON_OBJECT_RE.search(text or "")
    if not match:
        raise ValueError("no JSON object in model output")

    parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("model output is not a JSON object")

    is_short = str(parsed.get("signal", "")).strip().lower() == "short"
    try:
        return Recommendation(
            signal="short" if is_short else "long",
            leverage=parsed.get("leverage") or DEFAULT_LEVERAGE[agent.risk_level],
            portfolio_percentage=parsed.get("portfolioPercentage") or DEFAULT_PORTFOLIO[agent.risk_level],
            take_profit=parsed.get("takeProfit") or take_profit(current_price, is_short),
            stop_loss=parsed.get("stopLoss") or stop_loss(current_price, is_short),
            reasoning=str(parsed.get("reasoning") or text.strip()),
            confidence=parsed.get("confidence") if parsed.get("confidence") is not None else DEFAULT_CONFIDENCE,
        )
    except ModelValidationError as e:
        raise ValueError(f"model output failed validation: {e}") from e


class HuggingFaceEngine:
    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        timeout: float = 10.0,
        fallback: Optional[HeuristicEngine] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.fallback = fallback or HeuristicEngine()
        self.transport = transport

    async def _complete(self, prompt: str) -> str:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(
                f"{HF_API_BASE}/{self.model}",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "inputs": prompt,
                    "parameters": {"max_new_tokens": 500, "temperature": 0.7, "return_full_text": False},
                },
            )
        if resp.status_code != 200:
            raise ValueError(f"HTTP {resp.status_code} - {resp.text[:200]}")

        data = resp.json()
        if isinstance(data, list) and data:
            data = data[0]
        if isinstance(data, dict):
            data = data.get("generated_text", "")
        if isinstance(data, str):
            return data
        raise ValueError("unexpected response shape")

    async def generate(self, agent: Agent, symbol: str, current_price: float, context: MarketContext) -> Recommendation:
        try:
            text = await self._complete(build_prompt(agent, symbol, current_price, context))
            return parse_model_output(text, agent, current_price)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Model analysis failed for {agent.agent_id}/{symbol}, using heuristic: {e}")
            return self.fallback.analyze(agent, symbol, current_price)
