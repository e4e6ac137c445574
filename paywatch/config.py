"""
Runtime settings, read from the environment.

main.py calls load_dotenv() first, so a local .env works the same way as
real environment variables. Settings are validated once at startup.
"""

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from web3 import Web3

from .errors import ConfigError
from .rules import CHAIN_DEFAULTS, SETTLEMENT_RULES

logger = logging.getLogger("paywatch.config")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "")
    if not raw:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ConfigError(f"{name} must be a decimal amount, got {raw!r}")


@dataclass
class Settings:
    chain: str = "base"
    rpc_url: str = ""
    chain_id: int = 0
    explorer_api_url: str = ""
    explorer_api_key: str = ""
    master_wallet: str = ""
    payment_window_seconds: int = SETTLEMENT_RULES.DEFAULT_PAYMENT_WINDOW_SECONDS
    gas_floor: Decimal = SETTLEMENT_RULES.DEFAULT_GAS_FLOOR
    key_encryption_secret: str = ""
    order_state_path: Optional[str] = "data/orders_state.json"
    poll_interval_seconds: int = 0          # 0 = background polling disabled
    expire_unpaid_orders: bool = False
    ledger_timeout_seconds: int = SETTLEMENT_RULES.DEFAULT_LEDGER_TIMEOUT_SECONDS
    receipt_timeout_seconds: int = SETTLEMENT_RULES.DEFAULT_RECEIPT_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> "Settings":
        chain = os.getenv("CHAIN", "base").strip().lower()
        chain_cfg = CHAIN_DEFAULTS.get(chain)
        if not chain_cfg:
            raise ConfigError(
                f"Unsupported CHAIN {chain!r} (expected one of {sorted(CHAIN_DEFAULTS)})"
            )

        # Chain-specific override wins over the generic one
        rpc_url = os.getenv(f"{chain.upper()}_RPC_URL") or os.getenv("RPC_URL") or chain_cfg["rpc"]

        window_minutes = _env_int(
            "PAYMENT_WINDOW_MINUTES",
            SETTLEMENT_RULES.DEFAULT_PAYMENT_WINDOW_SECONDS // 60,
        )

        settings = cls(
            chain=chain,
            rpc_url=rpc_url,
            chain_id=chain_cfg["chain_id"],
            explorer_api_url=os.getenv("EXPLORER_API_URL", chain_cfg["explorer_api"]),
            explorer_api_key=os.getenv("EXPLORER_API_KEY", ""),
            master_wallet=os.getenv("MASTER_WALLET", "").strip(),
            payment_window_seconds=window_minutes * 60,
            gas_floor=_env_decimal("GAS_FLOOR", SETTLEMENT_RULES.DEFAULT_GAS_FLOOR),
            key_encryption_secret=os.getenv("KEY_ENCRYPTION_SECRET", ""),
            order_state_path=os.getenv("ORDER_STATE_PATH", "data/orders_state.json") or None,
            poll_interval_seconds=_env_int("POLL_INTERVAL_SECONDS", 0),
            expire_unpaid_orders=_env_bool("EXPIRE_UNPAID_ORDERS"),
            ledger_timeout_seconds=_env_int(
                "LEDGER_TIMEOUT_SECONDS", SETTLEMENT_RULES.DEFAULT_LEDGER_TIMEOUT_SECONDS
            ),
            receipt_timeout_seconds=_env_int(
                "RECEIPT_TIMEOUT_SECONDS", SETTLEMENT_RULES.DEFAULT_RECEIPT_TIMEOUT_SECONDS
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if not self.master_wallet:
            raise ConfigError("MASTER_WALLET is required (destination of forwarded payments)")
        if not Web3.is_address(self.master_wallet):
            raise ConfigError(f"MASTER_WALLET is not a valid address: {self.master_wallet!r}")
        if self.payment_window_seconds <= 0:
            raise ConfigError("PAYMENT_WINDOW_MINUTES must be positive")
        if self.gas_floor < 0:
            raise ConfigError("GAS_FLOOR cannot be negative")
        if self.poll_interval_seconds < 0:
            raise ConfigError("POLL_INTERVAL_SECONDS cannot be negative")
        if self.ledger_timeout_seconds <= 0 or self.receipt_timeout_seconds <= 0:
            raise ConfigError("Ledger and receipt timeouts must be positive")
        if not self.key_encryption_secret:
            logger.warning(
                "KEY_ENCRYPTION_SECRET not set - order private keys stored in plaintext"
            )

    @property
    def native_symbol(self) -> str:
        return CHAIN_DEFAULTS[self.chain]["native_symbol"]

    @property
    def explorer_url(self) -> str:
        return CHAIN_DEFAULTS[self.chain]["explorer"]
