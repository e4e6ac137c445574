"""
tests/test_api.py

HTTP presentation layer: order creation, check rendering, status codes.
"""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from fakes import GAS_FLOOR, MASTER_WALLET, FakeExecutor, FakeExplorerClient
from api.server import create_app, render_outcome
from paywatch.config import Settings
from paywatch.coordinator import CheckOutcome, Coordinator, OutcomeKind
from paywatch.errors import LedgerUnavailable
from paywatch.ledger import LedgerObserver
from paywatch.orders import OrderIntake
from paywatch.store import MemoryOrderStore


@pytest.fixture
def wired():
    settings = Settings(master_wallet=MASTER_WALLET, order_state_path=None)
    store = MemoryOrderStore()
    explorer = FakeExplorerClient()
    executor = FakeExecutor()
    coordinator = Coordinator(
        store=store,
        observer=LedgerObserver(explorer),
        executor=executor,
        master_wallet=MASTER_WALLET,
        payment_window=settings.payment_window_seconds,
        gas_floor=GAS_FLOOR,
    )
    app = create_app(coordinator, OrderIntake(store), store, settings)
    with TestClient(app) as client:
        yield client, explorer, executor


class TestOrderEndpoints:

    def test_plans(self, wired):
        client, _, _ = wired
        body = client.get("/plans").json()
        assert body["asset"] == "ETH"
        assert {p["id"] for p in body["plans"]} == {"day", "week", "month"}

    def test_create_order_returns_address(self, wired):
        client, _, _ = wired
        resp = client.post("/order", json={"plan_id": "month", "customer_ref": "tg:42"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["amount"] == "0.5"
        assert body["payment_address"].startswith("0x")
        assert body["expires_minutes"] == 30

        status = client.get(f"/order/{body['order_id']}").json()
        assert status["status"] == "pending"
        assert status["metadata"] == {"plan_id": "month", "customer_ref": "tg:42"}
        assert "payment_private_key" not in status

    def test_unknown_plan_is_404(self, wired):
        client, _, _ = wired
        assert client.post("/order", json={"plan_id": "lifetime"}).status_code == 404

    def test_unknown_order_is_404(self, wired):
        client, _, _ = wired
        assert client.get("/order/ord_nope").status_code == 404
        assert client.post("/order/ord_nope/check").status_code == 404


class TestCheckEndpoint:

    def test_waiting_then_confirmed(self, wired):
        client, explorer, executor = wired
        order = client.post("/order", json={"plan_id": "month"}).json()

        waiting = client.post(f"/order/{order['order_id']}/check").json()
        assert waiting["outcome"] == "waiting"
        assert waiting["status"] == "pending"

        explorer.pay(order["payment_address"], "0.5")
        confirmed = client.post(f"/order/{order['order_id']}/check").json()
        assert confirmed["outcome"] == "confirmed"
        assert confirmed["status"] == "confirmed"
        assert confirmed["settlement_ends_at"] is not None
        assert "30 days" in confirmed["message"]
        assert confirmed["tx_url"] == f"https://basescan.org/tx/{confirmed['tx_hash']}"
        assert waiting["tx_url"] == ""

        again = client.post(f"/order/{order['order_id']}/check").json()
        assert again["outcome"] == "already_processed"
        assert len(executor.calls) == 1

    def test_ledger_outage_is_503(self, wired):
        client, explorer, _ = wired
        order = client.post("/order", json={"plan_id": "day"}).json()
        explorer.error = LedgerUnavailable("explorer HTTP 502")
        assert client.post(f"/order/{order['order_id']}/check").status_code == 503

    def test_health(self, wired):
        client, _, _ = wired
        client.post("/order", json={"plan_id": "day"})
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["pending_orders"] == 1


class TestRenderOutcome:

    @pytest.mark.parametrize("kind", list(OutcomeKind))
    def test_every_outcome_has_text(self, kind):
        text = render_outcome(CheckOutcome(kind, "ord_x", amount=Decimal("0.3"), duration=86400))
        assert text

    def test_fatal_mentions_support_and_order(self):
        text = render_outcome(CheckOutcome(OutcomeKind.FATAL, "ord_abc", reason="boom"))
        assert "support" in text
        assert "ord_abc" in text

    def test_insufficient_mentions_amount(self):
        text = render_outcome(CheckOutcome(OutcomeKind.REFUNDED_INSUFFICIENT, "o", amount=Decimal("0.3")), "BNB")
        assert "0.3 BNB" in text
