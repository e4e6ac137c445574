"""
Orders - the unit of work.

An order owns exactly one ephemeral payment address for its whole life.
Status only moves forward:

    PENDING -> PROCESSING -> CONFIRMED | EXPIRED

CONFIRMED and EXPIRED are terminal. Orders are never deleted; the record
doubles as the audit trail of what the engine observed and did.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field, fields
from decimal import Decimal
from enum import Enum
from typing import Optional

from .rules import get_plan
from .wallet import KeyCipher, WalletProvisioner

logger = logging.getLogger("paywatch.orders")


# ============================================================
# STATUS GRAPH
# ============================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.CONFIRMED, OrderStatus.EXPIRED)


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.CONFIRMED, OrderStatus.EXPIRED}),
    OrderStatus.CONFIRMED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# ============================================================
# ORDER RECORD
# ============================================================

_DECIMAL_FIELDS = ("required_amount", "observed_amount")


@dataclass
class Order:
    id: str
    payment_address: str
    payment_private_key: str          # sealed by KeyCipher when encryption is on
    required_amount: Decimal
    purchased_duration: int           # seconds
    chain: str = "base"
    status: OrderStatus = OrderStatus.PENDING
    created_at: float = field(default_factory=time.time)
    updated_at: float = 0.0
    metadata: dict = field(default_factory=dict)

    # Set only on CONFIRMED
    settlement_started_at: Optional[float] = None
    settlement_ends_at: Optional[float] = None

    # Settlement results - at most one side is populated
    settlement_tx_hash: Optional[str] = None
    refund_tx_hash: Optional[str] = None
    refund_destination: Optional[str] = None

    # What the engine saw when it decided
    verdict: Optional[str] = None
    observed_amount: Optional[Decimal] = None
    payer_address: Optional[str] = None
    payment_tx_hash: Optional[str] = None
    failure_reason: Optional[str] = None

    def apply(self, patch: dict) -> None:
        """Apply a field patch in place. Unknown fields are rejected."""
        known = {f.name for f in fields(self)}
        for key, value in patch.items():
            if key not in known:
                raise KeyError(f"Unknown order field: {key}")
            if key == "status":
                value = OrderStatus(value)
            setattr(self, key, value)
        self.updated_at = time.time()

    def to_dict(self, include_secret: bool = False) -> dict:
        """
        Serialize the order.

        include_secret=False is the public form (API responses, logs);
        only the store snapshot writes the key material.
        """
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "payment_private_key" and not include_secret:
                continue
            if isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, OrderStatus):
                value = value.value
            elif isinstance(value, dict):
                value = dict(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Order":
        kwargs = dict(data)
        kwargs["status"] = OrderStatus(kwargs.get("status", OrderStatus.PENDING.value))
        for name in _DECIMAL_FIELDS:
            if kwargs.get(name) is not None:
                kwargs[name] = Decimal(kwargs[name])
        return cls(**kwargs)


# ============================================================
# ORDER INTAKE
# ============================================================

class OrderIntake:
    """
    Creates PENDING orders with a fresh payment address.

    The presentation layer calls create_order_for_plan(); create_order()
    is the raw form for callers with their own price source.
    """

    def __init__(self, store, provisioner: Optional[WalletProvisioner] = None,
                 cipher: Optional[KeyCipher] = None, chain: str = "base"):
        self._store = store
        self._provisioner = provisioner or WalletProvisioner()
        self._cipher = cipher or KeyCipher()
        self._chain = chain

    async def create_order(self, required_amount: Decimal, purchased_duration: int,
                           metadata: Optional[dict] = None) -> Order:
        required_amount = Decimal(required_amount)
        if required_amount <= 0:
            raise ValueError("required_amount must be positive")
        if purchased_duration <= 0:
            raise ValueError("purchased_duration must be positive")

        wallet = self._provisioner.generate()
        order = Order(
            id=f"ord_{uuid.uuid4().hex[:12]}",
            payment_address=wallet.address,
            payment_private_key=self._cipher.seal(wallet.private_key),
            required_amount=required_amount,
            purchased_duration=int(purchased_duration),
            chain=self._chain,
            metadata=dict(metadata or {}),
        )
        await self._store.create(order)

        logger.info(
            f"ORDER CREATED: {order.id} | {required_amount} | "
            f"pay to {order.payment_address[:10]}... | duration={purchased_duration}s"
        )
        return order

    async def create_order_for_plan(self, plan_id: str, metadata: Optional[dict] = None) -> Order:
        plan = get_plan(plan_id)
        meta = {"plan_id": plan.plan_id, **(metadata or {})}
        return await self.create_order(plan.price, plan.duration_seconds, meta)
