"""
Pending Order Poller - optional background re-polling.

Users normally trigger check() themselves. With POLL_INTERVAL_SECONDS > 0
this loop also calls check() for every PENDING order each tick, going
through the same compare-and-set as user-triggered checks.

With EXPIRE_UNPAID_ORDERS=true it additionally expires PENDING orders
whose payment window elapsed without any transfer. Off by default: the
engine's default policy is to wait for payment indefinitely.
"""

import asyncio
import logging
from collections import Counter
from typing import Optional

from .coordinator import Coordinator, OutcomeKind
from .orders import OrderStatus
from .store import OrderStore

logger = logging.getLogger("paywatch.poller")


class PendingOrderPoller:

    def __init__(self, store: OrderStore, coordinator: Coordinator,
                 interval_seconds: int, expire_unpaid: bool = False):
        self._store = store
        self._coordinator = coordinator
        self._interval = interval_seconds
        self._expire_unpaid = expire_unpaid
        self._task: Optional[asyncio.Task] = None
        self._running: bool = False      # overlap guard
        self.ticks: int = 0

    async def run_once(self) -> Counter:
        """One pass over PENDING orders. Returns a count per outcome kind."""
        tally: Counter = Counter()
        if self._running:
            logger.warning("Poller: previous pass still running - skipping this tick")
            return tally

        self._running = True
        try:
            pending = await self._store.list_by_status(OrderStatus.PENDING)
            for order in pending:
                try:
                    outcome = await self._coordinator.check(order.id)
                    if outcome.kind == OutcomeKind.PAYMENT_NOT_DETECTED and self._expire_unpaid:
                        outcome = await self._coordinator.expire_unpaid(order.id)
                except Exception as e:
                    logger.error(f"Poller: check failed for {order.id}: {e}", exc_info=True)
                    tally["error"] += 1
                    continue
                tally[outcome.kind.value] += 1
        finally:
            self._running = False
            self.ticks += 1

        if pending:
            logger.info(f"Poller pass: {len(pending)} pending | {dict(tally)}")
        return tally

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Poller pass failed: {e}", exc_info=True)
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._interval <= 0:
            logger.info("Background polling disabled (POLL_INTERVAL_SECONDS=0)")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info(
                f"Background polling every {self._interval}s "
                f"(expire_unpaid={self._expire_unpaid})"
            )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
