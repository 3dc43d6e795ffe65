"""
Shared fakes for the signal service tests.

Collaborators (facilitator, price feed, engine) are replaced with in-process
fakes that count their calls, so tests can assert what was NOT called.
"""
import base64
import json

import pytest
from fastapi.testclient import TestClient

from signalgate.config import Settings
from signalgate.lib.errors import UpstreamUnavailable
from signalgate.lib.storage import MemoryStorage
from signalgate.main import create_app
from signalgate.services.ai import HeuristicEngine
from signalgate.services.facilitator import SettleResult, VerifyResult
from signalgate.services.market import EmptyMarketContext
from signalgate.services.pyth import StaticPriceSource

TEST_SETTINGS = Settings(
    network="solana-devnet",
    treasury_address="Treasury1111111111111111111111111111111111",
    signal_price=10000,
    public_base_url="https://signals.test",
    admin_password="hunter2",
)

PRICES = {"BTC/USD": 64000.0, "ETH/USD": 3100.0, "SOL/USD": 150.0, "USDC/USD": 1.0}


def payment_header(tx="5xTestSignature", payer="PayerKey111", network="solana-devnet") -> str:
    payload = {
        "x402Version": 1,
        "scheme": "exact",
        "network": network,
        "payload": {"transaction": "base64-serialized-tx", "transactionSignature": tx, "clientPublicKey": payer},
    }
    return base64.b64encode(json.dumps(payload).encode()).decode()


class FakeOracle:
    def __init__(self, valid=True, settles=True, down=False):
        self.valid = valid
        self.settles = settles
        self.down = down
        self.verify_calls = 0
        self.settle_calls = 0

    async def verify(self, proof, requirement):
        self.verify_calls += 1
        if self.down:
            raise UpstreamUnavailable("Payment facilitator unreachable")
        if not self.valid:
            return VerifyResult(is_valid=False, invalid_reason="insufficient_funds")
        return VerifyResult(is_valid=True, payer=proof.client_public_key)

    async def settle(self, proof, requirement):
        self.settle_calls += 1
        if not self.settles:
            return SettleResult(success=False, error_reason="transaction_failed")
        return SettleResult(success=True, transaction=proof.transaction_signature, network=requirement.network)


class CountingEngine(HeuristicEngine):
    def __init__(self):
        super().__init__(clock=lambda: 0)
        self.calls = 0

    async def generate(self, agent, symbol, current_price, context):
        self.calls += 1
        return await super().generate(agent, symbol, current_price, context)


class BrokenStorage(MemoryStorage):
    """Reads work, every write fails."""

    async def insert_receipt(self, row):
        from signalgate.lib.errors import StorageUnavailable
        raise StorageUnavailable()

    def reputation_row(self, agent_id):
        from signalgate.lib.errors import StorageUnavailable
        raise StorageUnavailable()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def engine():
    return CountingEngine()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def client(oracle, engine, storage):
    app = create_app(
        TEST_SETTINGS,
        storage=storage,
        oracle=oracle,
        engine=engine,
        prices=StaticPriceSource(PRICES),
        market=EmptyMarketContext(),
    )
    with TestClient(app) as c:
        yield c
