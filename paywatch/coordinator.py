"""
Coordinator - the settlement state machine.

    PENDING --(verdict needs action, CAS wins)--> PROCESSING --> CONFIRMED
                                                      |
                                                      +--------> EXPIRED

check(order_id) is the only entry point the presentation layer uses.
It is safe to call any number of times, concurrently:

- Non-PENDING orders short-circuit with ALREADY_PROCESSED.
- Ledger query failures return LEDGER_UNAVAILABLE; status is untouched.
- WAIT leaves the order PENDING (no expiry without an observed transfer).
- Every other verdict first claims the order with a compare-and-set
  PENDING -> PROCESSING. Only the winner of that CAS reaches the
  settlement step, so a sweep runs at most once per order.
- A failed sweep is terminal: the order becomes EXPIRED and the outcome
  is FATAL so a human can step in. Nothing is retried automatically.
- A store write that fails before the sweep leaves the order PENDING, so
  the next check() starts over. One that fails after the sweep leaves it
  PROCESSING and is logged with the tx hash for manual review.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from .classifier import Verdict, classify, classify_unpaid
from .errors import LedgerUnavailable
from .ledger import LedgerObserver, Transfer
from .orders import Order, OrderStatus
from .settlement import SettlementExecutor, SweepFailure, SweepResult
from .store import OrderStore
from .wallet import KeyCipher

logger = logging.getLogger("paywatch.coordinator")


# ============================================================
# OUTCOMES
# ============================================================

class OutcomeKind(str, Enum):
    WAITING = "waiting"
    PAYMENT_NOT_DETECTED = "payment_not_detected"
    CONFIRMED = "confirmed"
    REFUNDED_INSUFFICIENT = "refunded_insufficient"
    REFUNDED_EXPIRED = "refunded_expired"
    TOO_SMALL_TO_REFUND = "too_small_to_refund"
    ALREADY_PROCESSED = "already_processed"
    NOT_FOUND = "not_found"
    LEDGER_UNAVAILABLE = "ledger_unavailable"
    FATAL = "fatal"


@dataclass
class CheckOutcome:
    kind: OutcomeKind
    order_id: str
    amount: Optional[Decimal] = None      # observed payment
    duration: Optional[int] = None        # seconds purchased (CONFIRMED only)
    ends_at: Optional[float] = None
    tx_hash: str = ""
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "order_id": self.order_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "duration": self.duration,
            "ends_at": self.ends_at,
            "tx_hash": self.tx_hash,
            "reason": self.reason,
        }


_REFUND_OUTCOMES = {
    Verdict.REFUND_INSUFFICIENT: OutcomeKind.REFUNDED_INSUFFICIENT,
    Verdict.REFUND_EXPIRED_WITH_PAYMENT: OutcomeKind.REFUNDED_EXPIRED,
}


# ============================================================
# COORDINATOR
# ============================================================

class Coordinator:

    def __init__(
        self,
        store: OrderStore,
        observer: LedgerObserver,
        executor: SettlementExecutor,
        master_wallet: str,
        payment_window: float,
        gas_floor: Decimal,
        cipher: Optional[KeyCipher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._observer = observer
        self._executor = executor
        self._master_wallet = master_wallet
        self._payment_window = payment_window
        self._gas_floor = gas_floor
        self._cipher = cipher or KeyCipher()
        self._clock = clock

    async def check(self, order_id: str) -> CheckOutcome:
        order = await self._store.get(order_id)
        if order is None:
            return CheckOutcome(OutcomeKind.NOT_FOUND, order_id)

        if order.status != OrderStatus.PENDING:
            return CheckOutcome(OutcomeKind.ALREADY_PROCESSED, order_id)

        try:
            transfer = await self._observer.latest_incoming_transfer(order.payment_address)
        except LedgerUnavailable as e:
            logger.warning(f"Ledger unavailable while checking {order_id}: {e}")
            return CheckOutcome(OutcomeKind.LEDGER_UNAVAILABLE, order_id, reason=str(e))

        elapsed = self._clock() - order.created_at
        verdict = classify(
            transfer, order.required_amount, elapsed, self._payment_window, self._gas_floor
        )

        if verdict == Verdict.WAIT:
            if elapsed > self._payment_window:
                return CheckOutcome(OutcomeKind.PAYMENT_NOT_DETECTED, order_id)
            return CheckOutcome(OutcomeKind.WAITING, order_id)

        claimed = await self._store.conditional_update(
            order.payment_address,
            OrderStatus.PENDING,
            {
                "status": OrderStatus.PROCESSING,
                "verdict": verdict.value,
                "observed_amount": transfer.amount,
                "payer_address": transfer.sender,
                "payment_tx_hash": transfer.tx_hash,
            },
        )
        if not claimed:
            return CheckOutcome(OutcomeKind.ALREADY_PROCESSED, order_id)

        logger.info(f"Order {order_id} claimed: verdict={verdict.value} amount={transfer.amount}")
        return await self._settle(order, transfer, verdict)

    async def expire_unpaid(self, order_id: str) -> CheckOutcome:
        """
        Expire a PENDING order that never received a transfer.

        Only the opt-in stale-order sweeper calls this; check() never
        expires an order on its own.
        """
        order = await self._store.get(order_id)
        if order is None:
            return CheckOutcome(OutcomeKind.NOT_FOUND, order_id)
        if order.status != OrderStatus.PENDING:
            return CheckOutcome(OutcomeKind.ALREADY_PROCESSED, order_id)

        try:
            transfer = await self._observer.latest_incoming_transfer(order.payment_address)
        except LedgerUnavailable as e:
            return CheckOutcome(OutcomeKind.LEDGER_UNAVAILABLE, order_id, reason=str(e))
        if transfer is not None:
            # A payment arrived after all; settle it through the normal path
            return await self.check(order_id)

        verdict = classify_unpaid(self._clock() - order.created_at, self._payment_window)
        if verdict == Verdict.WAIT:
            return CheckOutcome(OutcomeKind.WAITING, order_id)

        claimed = await self._store.conditional_update(
            order.payment_address,
            OrderStatus.PENDING,
            {"status": OrderStatus.PROCESSING, "verdict": verdict.value},
        )
        if not claimed:
            return CheckOutcome(OutcomeKind.ALREADY_PROCESSED, order_id)

        await self._record(order, {"status": OrderStatus.EXPIRED})
        logger.info(f"Order {order_id} expired unpaid after the payment window")
        return CheckOutcome(OutcomeKind.PAYMENT_NOT_DETECTED, order_id)

    # ============================================================
    # SETTLEMENT (runs only after the CAS succeeded)
    # ============================================================

    async def _settle(self, order: Order, transfer: Transfer, verdict: Verdict) -> CheckOutcome:
        if not verdict.needs_ledger_action:
            # REFUND_TOO_SMALL: a refund would fail for gas, just close the order
            await self._record(order, {"status": OrderStatus.EXPIRED})
            logger.info(
                f"Order {order.id}: {transfer.amount} at or below gas floor "
                f"{self._gas_floor} - no refund sent"
            )
            return CheckOutcome(OutcomeKind.TOO_SMALL_TO_REFUND, order.id, amount=transfer.amount)

        destination = transfer.sender if verdict.sends_refund else self._master_wallet

        result = await self._run_sweep(order, destination)
        if not result.success:
            return await self._fail_settlement(order, verdict, result)

        if verdict == Verdict.FORWARD:
            started = self._clock()
            ends = started + order.purchased_duration
            await self._record(
                order,
                {
                    "status": OrderStatus.CONFIRMED,
                    "settlement_tx_hash": result.tx_hash,
                    "settlement_started_at": started,
                    "settlement_ends_at": ends,
                },
                tx_hash=result.tx_hash,
            )
            logger.info(
                f"ORDER CONFIRMED: {order.id} | paid {transfer.amount} | "
                f"forwarded {result.amount} | tx={result.tx_hash[:16]}..."
            )
            return CheckOutcome(
                OutcomeKind.CONFIRMED,
                order.id,
                amount=transfer.amount,
                duration=order.purchased_duration,
                ends_at=ends,
                tx_hash=result.tx_hash,
            )

        await self._record(
            order,
            {
                "status": OrderStatus.EXPIRED,
                "refund_tx_hash": result.tx_hash,
                "refund_destination": destination,
            },
            tx_hash=result.tx_hash,
        )
        logger.info(
            f"ORDER REFUNDED ({verdict.value}): {order.id} | {result.amount} "
            f"-> {destination[:10]}... | tx={result.tx_hash[:16]}..."
        )
        return CheckOutcome(
            _REFUND_OUTCOMES[verdict],
            order.id,
            amount=transfer.amount,
            tx_hash=result.tx_hash,
        )

    async def _run_sweep(self, order: Order, destination: str) -> SweepResult:
        try:
            private_key = self._cipher.open(order.payment_private_key)
            return await self._executor.sweep(private_key, destination)
        except Exception as e:
            # Bad key material or an executor bug: still a settlement failure
            logger.exception(f"Sweep for {order.id} raised")
            return SweepResult(
                success=False,
                destination=destination,
                failure=SweepFailure.RPC_ERROR,
                error=f"{type(e).__name__}: {e}",
            )

    async def _fail_settlement(self, order: Order, verdict: Verdict,
                               result: SweepResult) -> CheckOutcome:
        kind = result.failure.value if result.failure else "unknown"
        reason = f"{verdict.value} sweep failed ({kind}): {result.error}"
        if result.tx_hash:
            reason += f" [tx {result.tx_hash}]"

        logger.error(f"SETTLEMENT FAILURE - manual intervention needed: order={order.id} | {reason}")
        await self._record(
            order,
            {"status": OrderStatus.EXPIRED, "failure_reason": reason},
            tx_hash=result.tx_hash,
        )
        return CheckOutcome(OutcomeKind.FATAL, order.id, tx_hash=result.tx_hash, reason=reason)

    async def _record(self, order: Order, patch: dict, tx_hash: str = "") -> None:
        """Write the post-claim result; on failure the order stays PROCESSING."""
        try:
            await self._store.update(order.payment_address, patch)
        except Exception:
            logger.error(
                f"SETTLEMENT NOT RECORDED - manual intervention needed: order={order.id} "
                f"left {OrderStatus.PROCESSING.value} | target={patch['status'].value} "
                f"| tx={tx_hash or 'none'}"
            )
            raise
