"""
Order State Store

The coordinator only needs a narrow interface: read by id/address,
compare-and-set on status, and plain patches once the lock is held.

MemoryOrderStore keeps orders in process memory and guards every write
with one asyncio.Lock, which makes conditional_update() a true
compare-and-set for everything running in this event loop. When a state
path is set, each mutation is followed by an atomic JSON snapshot
(temp file + os.replace) so orders survive restarts.

Status patches are checked against the order graph; a patch that moves
status backward, or writes anything on a terminal order, raises
InvalidTransition.
"""

import asyncio
import json
import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .errors import InvalidTransition
from .orders import Order, OrderStatus, can_transition

logger = logging.getLogger("paywatch.store")


class OrderStore(ABC):
    """Interface consumed by OrderIntake and Coordinator."""

    @abstractmethod
    async def create(self, order: Order) -> None:
        ...

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def get_by_address(self, address: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def conditional_update(self, address: str, expected_status: OrderStatus,
                                 patch: dict) -> bool:
        """Apply patch only if the stored status equals expected_status."""
        ...

    @abstractmethod
    async def update(self, address: str, patch: dict) -> Order:
        ...

    @abstractmethod
    async def list_by_status(self, status: OrderStatus) -> list[Order]:
        ...


def _check_patch(order: Order, patch: dict) -> None:
    if order.status.is_terminal:
        raise InvalidTransition(
            f"Order {order.id} is {order.status.value}; terminal orders are immutable"
        )
    if "status" in patch:
        target = OrderStatus(patch["status"])
        if target != order.status and not can_transition(order.status, target):
            raise InvalidTransition(
                f"Order {order.id}: {order.status.value} -> {target.value} not allowed"
            )


class MemoryOrderStore(OrderStore):

    def __init__(self, state_path: Optional[str] = None):
        self._orders: dict[str, Order] = {}
        self._by_address: dict[str, str] = {}     # address.lower() -> order id
        self._lock = asyncio.Lock()
        self._state_path = Path(state_path) if state_path else None

    @staticmethod
    def _addr_key(address: str) -> str:
        return address.lower()

    def _copy(self, order: Order) -> Order:
        # Callers get snapshots; only the store mutates stored records
        return Order.from_dict(order.to_dict(include_secret=True))

    async def create(self, order: Order) -> None:
        async with self._lock:
            key = self._addr_key(order.payment_address)
            if order.id in self._orders:
                raise ValueError(f"Duplicate order id {order.id}")
            if key in self._by_address:
                raise ValueError(f"Payment address {order.payment_address} already issued")
            self._orders[order.id] = self._copy(order)
            self._by_address[key] = order.id
            try:
                self._save_locked()
            except Exception:
                del self._orders[order.id]
                del self._by_address[key]
                raise

    async def get(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return self._copy(order) if order else None

    async def get_by_address(self, address: str) -> Optional[Order]:
        order_id = self._by_address.get(self._addr_key(address))
        return await self.get(order_id) if order_id else None

    async def conditional_update(self, address: str, expected_status: OrderStatus,
                                 patch: dict) -> bool:
        async with self._lock:
            order = self._lookup(address)
            if order.status != expected_status:
                logger.info(
                    f"CAS rejected for {order.id}: expected {expected_status.value}, "
                    f"found {order.status.value}"
                )
                return False
            _check_patch(order, patch)
            self._commit(order, patch)
            return True

    async def update(self, address: str, patch: dict) -> Order:
        async with self._lock:
            order = self._lookup(address)
            _check_patch(order, patch)
            return self._copy(self._commit(order, patch))

    def _commit(self, order: Order, patch: dict) -> Order:
        """
        Patch a copy, swap it in and persist. If the snapshot write fails
        the previous record is restored and the error propagates.
        """
        updated = self._copy(order)
        updated.apply(patch)
        self._orders[order.id] = updated
        try:
            self._save_locked()
        except Exception:
            self._orders[order.id] = order
            raise
        return updated

    async def list_by_status(self, status: OrderStatus) -> list[Order]:
        return [self._copy(o) for o in self._orders.values() if o.status == status]

    def _lookup(self, address: str) -> Order:
        order_id = self._by_address.get(self._addr_key(address))
        if order_id is None:
            raise KeyError(f"No order for address {address}")
        return self._orders[order_id]

    # ============================================================
    # STATE PERSISTENCE
    # ============================================================

    def _save_locked(self) -> None:
        if self._state_path:
            self.save_state()

    def save_state(self) -> None:
        """Write an atomic snapshot of every order, key material included."""
        if not self._state_path:
            return
        p = self._state_path
        p.parent.mkdir(parents=True, exist_ok=True)
        state = {
            "orders": [o.to_dict(include_secret=True) for o in self._orders.values()],
            "saved_at": time.time(),
        }
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(p.parent), suffix=".tmp", prefix="orders_state_"
        )
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(state, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, str(p))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def load_state(self) -> bool:
        """
        Restore orders from the snapshot.
        Returns False when there is nothing to load.
        """
        if not self._state_path or not self._state_path.exists():
            logger.info("No order state file found - starting fresh")
            return False

        with open(self._state_path, "r", encoding="utf-8") as f:
            state = json.load(f)

        self._orders.clear()
        self._by_address.clear()
        for raw in state.get("orders", []):
            order = Order.from_dict(raw)
            self._orders[order.id] = order
            self._by_address[self._addr_key(order.payment_address)] = order.id

        stuck = [o.id for o in self._orders.values() if o.status == OrderStatus.PROCESSING]
        if stuck:
            # A crash mid-settlement leaves these locked; they need a human
            logger.error(f"Orders left PROCESSING by a previous run (manual review): {stuck}")

        logger.info(f"Loaded {len(self._orders)} orders from {self._state_path}")
        return True
