"""
tests/test_poller.py

Background re-polling goes through the same check() path, and the
stale-order expiry only runs when explicitly enabled.
"""

import asyncio

from fakes import CREATED_AT, GAS_FLOOR, MASTER_WALLET, WINDOW, make_order
from paywatch.coordinator import Coordinator
from paywatch.ledger import LedgerObserver
from paywatch.orders import OrderStatus
from paywatch.poller import PendingOrderPoller


def _poller(store, explorer, executor, clock, expire_unpaid=False):
    coordinator = Coordinator(
        store=store,
        observer=LedgerObserver(explorer),
        executor=executor,
        master_wallet=MASTER_WALLET,
        payment_window=WINDOW,
        gas_floor=GAS_FLOOR,
        clock=clock,
    )
    return PendingOrderPoller(store, coordinator, interval_seconds=1, expire_unpaid=expire_unpaid)


class TestPendingOrderPoller:

    def test_settles_paid_orders_and_leaves_unpaid(self, store, explorer, executor, clock):
        clock.now = CREATED_AT + WINDOW + 10

        async def run():
            paid = await make_order(store, created_at=clock.now - 60)
            unpaid = await make_order(store)
            explorer.pay(paid.payment_address, "0.5")
            tally = await _poller(store, explorer, executor, clock).run_once()
            return tally, await store.get(paid.id), await store.get(unpaid.id)

        tally, paid, unpaid = asyncio.run(run())
        assert tally["confirmed"] == 1
        assert tally["payment_not_detected"] == 1
        assert paid.status == OrderStatus.CONFIRMED
        assert unpaid.status == OrderStatus.PENDING

    def test_expire_unpaid_when_enabled(self, store, explorer, executor, clock):
        clock.now = CREATED_AT + WINDOW + 10

        async def run():
            order = await make_order(store)
            await _poller(store, explorer, executor, clock, expire_unpaid=True).run_once()
            return await store.get(order.id)

        assert asyncio.run(run()).status == OrderStatus.EXPIRED
        assert executor.calls == []

    def test_second_pass_skips_settled_orders(self, store, explorer, executor, clock):
        clock.now = CREATED_AT + 60

        async def run():
            order = await make_order(store)
            explorer.pay(order.payment_address, "0.5")
            poller = _poller(store, explorer, executor, clock)
            await poller.run_once()
            return await poller.run_once(), poller.ticks

        second, ticks = asyncio.run(run())
        assert sum(second.values()) == 0
        assert ticks == 2
        assert len(executor.calls) == 1

    def test_start_stop(self, store, explorer, executor, clock):
        async def run():
            poller = _poller(store, explorer, executor, clock)
            poller.start()
            await asyncio.sleep(0.05)
            await poller.stop()
            return poller.ticks

        assert asyncio.run(run()) >= 1

    def test_disabled_interval_never_starts(self, store, explorer, executor, clock):
        async def run():
            poller = _poller(store, explorer, executor, clock)
            poller._interval = 0
            poller.start()
            await asyncio.sleep(0)
            return poller.ticks

        assert asyncio.run(run()) == 0

    def test_loop_survives_store_errors(self, store, explorer, executor, clock, monkeypatch, caplog):
        real_list = store.list_by_status
        failures = []

        async def flaky_list(status):
            if not failures:
                failures.append(status)
                raise RuntimeError("store offline")
            return await real_list(status)

        monkeypatch.setattr(store, "list_by_status", flaky_list)

        async def run():
            poller = _poller(store, explorer, executor, clock)
            poller._interval = 0.01
            poller.start()
            await asyncio.sleep(0.1)
            alive = not poller._task.done()
            await poller.stop()
            return alive, poller.ticks

        alive, ticks = asyncio.run(run())
        assert alive
        assert ticks >= 2
        assert failures == [OrderStatus.PENDING]
        assert "Poller pass failed: store offline" in caplog.text
