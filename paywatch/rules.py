"""
Settlement rules - fixed protocol constants.

Everything an operator may tune per deployment lives in config.Settings.
The values here define how the ledger is read and what a plan costs;
changing them changes observable settlement behavior.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Final


# ============================================================
# SETTLEMENT RULES
# ============================================================

@dataclass(frozen=True)
class SettlementRules:
    """Frozen dataclass = immutable at runtime."""

    # --- LEDGER UNITS ---
    NATIVE_DECIMALS: Final[int] = 18                    # wei -> ETH/BNB
    NATIVE_TRANSFER_GAS: Final[int] = 21_000            # plain value transfer, no call data

    # --- PAYMENT WINDOW ---
    DEFAULT_PAYMENT_WINDOW_SECONDS: Final[int] = 30 * 60
    DEFAULT_GAS_FLOOR: Final[Decimal] = Decimal("0.0035")   # at or below: not worth a refund tx

    # --- LEDGER QUERIES ---
    EXPLORER_PAGE_SIZE: Final[int] = 25                 # newest-first rows fetched per check
    DEFAULT_LEDGER_TIMEOUT_SECONDS: Final[int] = 15
    DEFAULT_RECEIPT_TIMEOUT_SECONDS: Final[int] = 120

    @property
    def wei_per_native(self) -> Decimal:
        return Decimal(10) ** self.NATIVE_DECIMALS


SETTLEMENT_RULES = SettlementRules()


# ============================================================
# CHAIN DEFAULTS
# ============================================================

CHAIN_DEFAULTS = {
    "base": {
        "rpc": "https://mainnet.base.org",
        "chain_id": 8453,
        "explorer_api": "https://api.basescan.org/api",
        "explorer": "https://basescan.org",
        "native_symbol": "ETH",
    },
    "bsc": {
        "rpc": "https://bsc-dataseed.binance.org",
        "chain_id": 56,
        "explorer_api": "https://api.bscscan.com/api",
        "explorer": "https://bscscan.com",
        "native_symbol": "BNB",
    },
}


# ============================================================
# PLANS - price table used by order intake
# ============================================================

@dataclass(frozen=True)
class Plan:
    plan_id: str
    name: str
    price: Decimal            # native asset
    duration_seconds: int     # length of the purchased effect


PLANS: dict[str, Plan] = {
    p.plan_id: p
    for p in (
        Plan("day", "24 hours", Decimal("0.05"), 24 * 3600),
        Plan("week", "7 days", Decimal("0.25"), 7 * 24 * 3600),
        Plan("month", "30 days", Decimal("0.5"), 30 * 24 * 3600),
    )
}


def get_plan(plan_id: str) -> Plan:
    """Look up a plan. Raises KeyError for unknown ids."""
    return PLANS[plan_id]
