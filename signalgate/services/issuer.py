"""
Signal issuance: the paid request end to end.

    validate -> payment gate -> price + recommendation -> receipt -> reputation -> respond

Ordering rules:
- Symbol and agent are validated before the gate, so nothing is charged for a
  request we cannot serve.
- Nothing after the gate runs unless the payment settled.
- Receipt and reputation writes are an audit trail. If they fail the paid
  signal is still returned.
- Everything after settlement runs shielded: a client that disconnects does not
  cancel the receipt or reputation writes for a payment already taken.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from ..lib.errors import StorageUnavailable, UpstreamUnavailable, ValidationError
from ..lib.receipts import ReceiptLedger, now_ms
from ..lib.reputation import ReputationBook
from ..lib.x402 import GateDecision, PaymentGate
from ..models.common import PaymentRequirement
from ..models.signals import AgentSignal, ReceiptRef, SignalResult
from .agents import Agent, SUPPORTED_SYMBOLS, get_agent, is_supported_symbol, liquidation_level
from .market import MarketContext

logger = logging.getLogger("issuer")

RECEIPT_ATTEMPTS = 3


def _log_orphaned_failure(task: asyncio.Future):
    """Retrieve the delivery result so a caller that went away still leaves a log line."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(f"Paid delivery finished with {exc!r}")


@dataclass
class IssueOutcome:
    decision: GateDecision
    result: Optional[SignalResult] = None


class SignalIssuer:
    def __init__(
        self,
        gate: PaymentGate,
        ledger: ReceiptLedger,
        reputation: ReputationBook,
        engine,
        prices,
        market,
        requirement: PaymentRequirement,
        upstream_timeout: float = 10.0,
        storage_timeout: float = 5.0,
    ):
        self.gate = gate
        self.ledger = ledger
        self.reputation = reputation
        self.engine = engine
        self.prices = prices
        self.market = market
        self.requirement = requirement
        self.upstream_timeout = upstream_timeout
        self.storage_timeout = storage_timeout

    def validate(self, symbol: str, agent_id: str) -> Agent:
        if not is_supported_symbol(symbol):
            raise ValidationError(
                f"Unsupported trading pair: {symbol}. Available pairs: {', '.join(SUPPORTED_SYMBOLS)}"
            )
        agent = get_agent(agent_id)
        if agent is None:
            raise ValidationError(f"Invalid agent: {agent_id}. Available agents: zyra, aria, nova")
        return agent

    async def issue(self, headers: Mapping[str, str], symbol: str, agent_id: str) -> IssueOutcome:
        agent = self.validate(symbol, agent_id)

        decision = await self.gate.admit(headers, self.requirement)
        if not decision.admitted:
            return IssueOutcome(decision=decision)

        # Payment is taken. Finish the audit trail even if the caller goes away.
        delivery = asyncio.ensure_future(self._deliver(decision, agent, symbol))
        delivery.add_done_callback(_log_orphaned_failure)
        result = await asyncio.shield(delivery)
        return IssueOutcome(decision=decision, result=result)

    async def _deliver(self, decision: GateDecision, agent: Agent, symbol: str) -> SignalResult:
        tx = decision.transaction_signature
        try:
            signal = await self._generate(agent, symbol)
        except UpstreamUnavailable as e:
            logger.error(f"Signal generation failed after payment tx={tx}: {e.message}")
            await self._record_outcome(agent.agent_id, success=False)
            raise UpstreamUnavailable("Failed to generate signal", transactionSignature=tx) from e
        except Exception as e:
            logger.exception(f"Signal generation crashed after payment tx={tx}")
            await self._record_outcome(agent.agent_id, success=False)
            raise UpstreamUnavailable("Failed to generate signal", transactionSignature=tx) from e

        try:
            receipt_hash = await self._store_receipt(decision, signal)
        except Exception:
            logger.exception(f"Receipt could not be built for tx={tx}; signal delivered without receipt")
            receipt_hash = None
        await self._record_outcome(agent.agent_id, success=True)

        return SignalResult(
            signal=signal,
            receipt=ReceiptRef(hash=receipt_hash, transaction_signature=tx, stored=receipt_hash is not None),
        )

    async def _generate(self, agent: Agent, symbol: str) -> AgentSignal:
        try:
            price = await asyncio.wait_for(self.prices.get_price(symbol), self.upstream_timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable("Price feed timed out") from e

        try:
            context = await asyncio.wait_for(self.market.get_context(symbol), self.upstream_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Market context timed out for {symbol}, continuing without it")
            context = MarketContext()

        try:
            rec = await asyncio.wait_for(
                self.engine.generate(agent, symbol, price.price, context), self.upstream_timeout
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable("Recommendation engine timed out") from e

        return AgentSignal(
            agent_id=agent.agent_id,
            agent_name=agent.agent_name,
            signal=rec.signal,
            current_price=price.price,
            leverage=rec.leverage,
            liquidation_level=liquidation_level(price.price, rec.leverage, rec.signal == "short"),
            portfolio_percentage=rec.portfolio_percentage,
            take_profit=rec.take_profit,
            stop_loss=rec.stop_loss,
            reasoning=rec.reasoning,
            confidence=rec.confidence,
            timestamp=now_ms(),
            symbol=symbol,
        )

    async def _store_receipt(self, decision: GateDecision, signal: AgentSignal) -> Optional[str]:
        """Store with retries. The store is idempotent, so retrying is safe."""
        content = signal.model_dump_json(by_alias=True)
        for attempt in range(1, RECEIPT_ATTEMPTS + 1):
            try:
                return await asyncio.wait_for(
                    self.ledger.store(
                        decision.transaction_signature,
                        content,
                        signal.timestamp,
                        decision.payer,
                    ),
                    self.storage_timeout,
                )
            except (StorageUnavailable, asyncio.TimeoutError) as e:
                logger.warning(f"Receipt store attempt {attempt}/{RECEIPT_ATTEMPTS} failed: {e!r}")
        logger.error(f"Receipt not stored for tx={decision.transaction_signature}; signal delivered without receipt")
        return None

    async def _record_outcome(self, agent_id: str, success: bool):
        try:
            await asyncio.wait_for(self.reputation.record_outcome(agent_id, success), self.storage_timeout)
        except (StorageUnavailable, asyncio.TimeoutError) as e:
            logger.warning(f"Reputation update failed for {agent_id}: {e!r}")
        except Exception:
            logger.exception(f"Reputation update crashed for {agent_id}")
