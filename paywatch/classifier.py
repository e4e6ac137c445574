"""
Payment classifier - pure decision table.

Maps (observed transfer, required price, elapsed time) to a verdict.
Rules are evaluated in order and the first match wins:

  1. transfer seen, window elapsed   -> REFUND_EXPIRED_WITH_PAYMENT
  2. no transfer                     -> WAIT
  3. amount <= gas floor             -> REFUND_TOO_SMALL (no refund tx)
  4. amount <  required              -> REFUND_INSUFFICIENT
  5. amount >= required              -> FORWARD

A late payment is refunded even when it covers the price. Without an
observed transfer nothing expires here; REFUND_EXPIRED_NO_PAYMENT only
comes from classify_unpaid(), used by the opt-in stale-order sweeper.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional

from .ledger import Transfer


class Verdict(str, Enum):
    WAIT = "wait"
    REFUND_EXPIRED_NO_PAYMENT = "refund_expired_no_payment"
    REFUND_TOO_SMALL = "refund_too_small"
    REFUND_INSUFFICIENT = "refund_insufficient"
    REFUND_EXPIRED_WITH_PAYMENT = "refund_expired_with_payment"
    FORWARD = "forward"

    @property
    def sends_refund(self) -> bool:
        return self in (Verdict.REFUND_INSUFFICIENT, Verdict.REFUND_EXPIRED_WITH_PAYMENT)

    @property
    def needs_ledger_action(self) -> bool:
        return self == Verdict.FORWARD or self.sends_refund


def classify(transfer: Optional[Transfer], required_amount: Decimal, elapsed: float,
             payment_window: float, gas_floor: Decimal) -> Verdict:
    if transfer is not None and elapsed > payment_window:
        return Verdict.REFUND_EXPIRED_WITH_PAYMENT
    if transfer is None:
        return Verdict.WAIT
    if transfer.amount <= gas_floor:
        return Verdict.REFUND_TOO_SMALL
    if transfer.amount < required_amount:
        return Verdict.REFUND_INSUFFICIENT
    return Verdict.FORWARD


def classify_unpaid(elapsed: float, payment_window: float) -> Verdict:
    """Verdict for an order with no transfer at all, used by the expiry sweeper."""
    if elapsed > payment_window:
        return Verdict.REFUND_EXPIRED_NO_PAYMENT
    return Verdict.WAIT
