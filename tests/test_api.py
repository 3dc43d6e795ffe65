"""
HTTP-level tests for the paid signal flow, receipts and reputation.

Run with:
    pytest tests/test_api.py -v
"""
import base64
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import (
    BrokenStorage,
    CountingEngine,
    FakeOracle,
    PRICES,
    TEST_SETTINGS,
    payment_header,
)
from signalgate.lib.receipts import compute_receipt_hash
from signalgate.main import create_app
from signalgate.services.agents import get_agent
from signalgate.services.ai import HeuristicEngine, HuggingFaceEngine
from signalgate.services.market import EmptyMarketContext
from signalgate.services.pyth import StaticPriceSource


def request_signal(client, symbol="BTC/USD", agent_id="nova", header=None):
    headers = {"X-PAYMENT": header} if header is not None else {}
    return client.post("/api/signals", json={"symbol": symbol, "agentId": agent_id}, headers=headers)


class TestPaidSignal:
    """POST /api/signals end to end."""

    def test_paid_signal_produces_verifiable_receipt(self, client, oracle, engine):
        """Valid settled payment -> signal + receipt whose hash recomputes."""
        before = client.get("/api/reputation", params={"agentId": "nova"})
        assert before.status_code == 404, "nova has no record before the first signal"

        resp = request_signal(client, header=payment_header(tx="5xSettled", payer="PayerA"))
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["success"] is True

        data = body["data"]
        assert data["signal"]["agentId"] == "nova"
        assert data["signal"]["symbol"] == "BTC/USD"
        assert data["signal"]["currentPrice"] == PRICES["BTC/USD"]
        assert data["receipt"]["transactionSignature"] == "5xSettled"
        receipt_hash = data["receipt"]["hash"]
        assert len(receipt_hash) == 64

        assert oracle.verify_calls == 1
        assert oracle.settle_calls == 1, "settle exactly once per admitted request"
        assert engine.calls == 1, "protected handler runs exactly once"
        assert "X-PAYMENT-RESPONSE" in resp.headers

        settlement = json.loads(base64.b64decode(resp.headers["X-PAYMENT-RESPONSE"]))
        assert settlement["transaction"] == "5xSettled"

        receipt = client.get(f"/api/receipt/{receipt_hash}")
        assert receipt.status_code == 200
        stored = receipt.json()["data"]
        recomputed = compute_receipt_hash(
            stored["transactionSignature"],
            stored["signalContent"],
            stored["requestTimestamp"],
            stored["clientPublicKey"],
        )
        assert recomputed == receipt_hash, "third party can recompute the receipt hash"
        assert json.loads(stored["signalContent"]) == data["signal"]
        assert stored["clientPublicKey"] == "PayerA"

        after = client.get("/api/reputation", params={"agentId": "nova"})
        assert after.status_code == 200
        assert after.json()["data"]["totalRequests"] == 1
        assert after.json()["data"]["successes"] == 1

    def test_missing_payment_returns_challenge(self, client, oracle, engine):
        """No X-PAYMENT -> 402 challenge with price/asset/decimals, nothing invoked."""
        resp = request_signal(client)
        assert resp.status_code == 402
        body = resp.json()
        assert body["x402Version"] == 1
        assert "success" not in body, "challenge is distinguishable from a rejection"

        accepts = body["accepts"][0]
        assert accepts["maxAmountRequired"] == "10000"
        assert accepts["asset"] == TEST_SETTINGS.usdc_mint
        assert accepts["extra"]["decimals"] == 6
        assert accepts["network"] == "solana-devnet"
        assert accepts["payTo"] == TEST_SETTINGS.treasury_address
        assert accepts["resource"] == "https://signals.test/api/signals"

        assert engine.calls == 0, "no recommendation without payment"
        assert oracle.verify_calls == 0

    def test_invalid_payment_is_rejected(self, engine, storage):
        oracle = FakeOracle(valid=False)
        app = create_app(
            TEST_SETTINGS, storage=storage, oracle=oracle, engine=engine,
            prices=StaticPriceSource(PRICES), market=EmptyMarketContext(),
        )
        with TestClient(app) as client:
            resp = request_signal(client, header=payment_header())

        assert resp.status_code == 402
        assert resp.json() == {"success": False, "error": "Invalid payment"}
        assert oracle.settle_calls == 0, "never settle an unverified proof"
        assert engine.calls == 0

    def test_malformed_payment_header_is_rejected(self, client, oracle):
        resp = request_signal(client, header="%%%not-base64%%%")
        assert resp.status_code == 402
        assert resp.json()["success"] is False
        assert oracle.verify_calls == 0

    def test_settlement_failure_never_serves(self, engine, storage):
        oracle = FakeOracle(settles=False)
        app = create_app(
            TEST_SETTINGS, storage=storage, oracle=oracle, engine=engine,
            prices=StaticPriceSource(PRICES), market=EmptyMarketContext(),
        )
        with TestClient(app) as client:
            resp = request_signal(client, header=payment_header())

        assert resp.status_code == 502
        assert resp.json()["success"] is False
        assert engine.calls == 0, "resource must not be produced without settlement"

    def test_facilitator_down_fails_closed(self, engine, storage):
        oracle = FakeOracle(down=True)
        app = create_app(
            TEST_SETTINGS, storage=storage, oracle=oracle, engine=engine,
            prices=StaticPriceSource(PRICES), market=EmptyMarketContext(),
        )
        with TestClient(app) as client:
            resp = request_signal(client, header=payment_header())

        assert resp.status_code == 503
        assert resp.json()["success"] is False
        assert oracle.settle_calls == 0
        assert engine.calls == 0


class TestValidationBeforePayment:
    """Unknown symbol/agent must be rejected before any payment work."""

    def test_unknown_agent(self, client, oracle, engine):
        resp = request_signal(client, agent_id="ghost", header=payment_header())
        assert resp.status_code == 400
        assert resp.json()["success"] is False
        assert "ghost" in resp.json()["error"]
        assert oracle.verify_calls == 0 and oracle.settle_calls == 0, "no payment oracle calls"
        assert client.get("/api/reputation", params={"agentId": "ghost"}).status_code == 404

    def test_unknown_symbol(self, client, oracle):
        resp = request_signal(client, symbol="DOGE/USD", header=payment_header())
        assert resp.status_code == 400
        assert "DOGE/USD" in resp.json()["error"]
        assert oracle.verify_calls == 0

    def test_missing_fields(self, client, oracle):
        resp = client.post("/api/signals", json={"symbol": "BTC/USD"})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Invalid agentId parameter"}
        assert oracle.verify_calls == 0


class TestAuditTrailFailures:
    def test_storage_down_still_delivers_paid_signal(self, oracle):
        """Receipt/reputation failures after settlement must not erase the result."""
        engine = CountingEngine()
        app = create_app(
            TEST_SETTINGS, storage=BrokenStorage(), oracle=oracle, engine=engine,
            prices=StaticPriceSource(PRICES), market=EmptyMarketContext(),
        )
        with TestClient(app) as client:
            resp = request_signal(client, header=payment_header(tx="5xPaid"))

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["signal"]["agentId"] == "nova"
        assert data["receipt"]["hash"] is None
        assert data["receipt"]["stored"] is False
        assert data["receipt"]["transactionSignature"] == "5xPaid"

    def test_price_feed_down_after_payment_records_failure(self, oracle, engine, storage):
        app = create_app(
            TEST_SETTINGS, storage=storage, oracle=oracle, engine=engine,
            prices=StaticPriceSource({}), market=EmptyMarketContext(),
        )
        with TestClient(app) as client:
            resp = request_signal(client, agent_id="zyra", header=payment_header(tx="5xOrphan"))
            rep = client.get("/api/reputation", params={"agentId": "zyra"}).json()["data"]

        assert resp.status_code == 503
        assert resp.json()["transactionSignature"] == "5xOrphan", "payer can follow up on the settled tx"
        assert rep["failures"] == 1 and rep["totalRequests"] == 1


class TestPublicReads:
    def test_receipt_not_found(self, client):
        resp = client.get("/api/receipt/" + "0" * 64)
        assert resp.status_code == 404
        assert resp.json() == {"success": False, "error": "Receipt not found"}

    def test_reputation_listing_and_leaderboard(self, client):
        for agent_id in ("zyra", "aria", "aria"):
            assert request_signal(client, agent_id=agent_id, header=payment_header(tx=f"tx-{agent_id}")).status_code == 200

        everyone = client.get("/api/reputation").json()["data"]
        assert [r["agentId"] for r in everyone] == ["aria", "zyra"], "equal scores: more requests first"

        board = client.get("/api/reputation/leaderboard", params={"limit": 1}).json()["data"]
        assert len(board) == 1
        assert board[0]["agentId"] == "aria"
        assert board[0]["totalRequests"] == 2

    def test_agents_listing(self, client):
        agents = client.get("/api/agents").json()["data"]
        assert {a["agentId"] for a in agents} == {"zyra", "aria", "nova"}

    def test_health(self, client):
        assert client.get("/health").json()["data"]["status"] == "healthy"


class TestAdminReceipts:
    def test_requires_auth(self, client):
        resp = client.get("/api/receipts")
        assert resp.status_code == 401
        assert resp.json()["success"] is False

    def test_lists_receipts(self, client):
        request_signal(client, header=payment_header(tx="first"))
        request_signal(client, header=payment_header(tx="second"))

        resp = client.get("/api/receipts", auth=("admin", "hunter2"))
        assert resp.status_code == 200
        txs = [r["transactionSignature"] for r in resp.json()["data"]]
        assert set(txs) == {"first", "second"}

    def test_wrong_password(self, client):
        assert client.get("/api/receipts", auth=("admin", "nope")).status_code == 401


class ExplodingEngine(CountingEngine):
    async def generate(self, agent, symbol, current_price, context):
        self.calls += 1
        raise RuntimeError("engine bug")


def model_transport(text: str):
    def handler(request):
        return httpx.Response(200, json=[{"generated_text": text}])
    return httpx.MockTransport(handler)


class TestAfterSettlement:
    """Once the payment settled, the payer always gets the signal or the settled tx."""

    def test_undecodable_payer_rejected_before_verify(self, client, oracle):
        payload = {
            "x402Version": 1,
            "scheme": "exact",
            "network": "solana-devnet",
            "payload": {"transactionSignature": "5xSurrogate", "clientPublicKey": "\ud800"},
        }
        header = base64.b64encode(json.dumps(payload).encode()).decode()

        resp = request_signal(client, header=header)

        assert resp.status_code == 402
        assert resp.json() == {"success": False, "error": "Malformed payment header"}
        assert oracle.verify_calls == 0 and oracle.settle_calls == 0, "nothing charged"

    def test_non_text_payer_rejected_before_verify(self, client, oracle):
        payload = {"scheme": "exact", "network": "solana-devnet",
                   "payload": {"transactionSignature": "5x", "clientPublicKey": 12345}}
        resp = request_signal(client, header=base64.b64encode(json.dumps(payload).encode()).decode())
        assert resp.status_code == 402
        assert oracle.verify_calls == 0

    def test_non_finite_model_output_falls_back(self, oracle, storage):
        engine = HuggingFaceEngine(
            "hf_test",
            fallback=HeuristicEngine(clock=lambda: 0),
            transport=model_transport('Analysis: {"signal": "long", "leverage": 5, "takeProfit": 1e999, "stopLoss": 90}'),
        )
        app = create_app(
            TEST_SETTINGS, storage=storage, oracle=oracle, engine=engine,
            prices=StaticPriceSource(PRICES), market=EmptyMarketContext(),
        )
        with TestClient(app) as client:
            resp = request_signal(client, header=payment_header(tx="5xInf"))
            rep = client.get("/api/reputation", params={"agentId": "nova"}).json()["data"]

        assert resp.status_code == 200, resp.text
        signal = resp.json()["data"]["signal"]
        expected = HeuristicEngine(clock=lambda: 0).analyze(get_agent("nova"), "BTC/USD", PRICES["BTC/USD"])
        assert signal["takeProfit"] == pytest.approx(expected.take_profit)
        assert resp.json()["data"]["receipt"]["stored"] is True
        assert rep["successes"] == 1

    def test_engine_crash_returns_settled_tx(self, oracle, storage):
        engine = ExplodingEngine()
        app = create_app(
            TEST_SETTINGS, storage=storage, oracle=oracle, engine=engine,
            prices=StaticPriceSource(PRICES), market=EmptyMarketContext(),
        )
        with TestClient(app) as client:
            resp = request_signal(client, agent_id="aria", header=payment_header(tx="5xCrash"))
            rep = client.get("/api/reputation", params={"agentId": "aria"}).json()["data"]

        assert resp.status_code == 503
        assert resp.json() == {
            "success": False,
            "error": "Failed to generate signal",
            "transactionSignature": "5xCrash",
        }
        assert (rep["failures"], rep["totalRequests"]) == (1, 1)
