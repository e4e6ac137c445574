"""
tests/test_config.py

Settings loading from the environment.
"""

from decimal import Decimal

import pytest

from paywatch.config import Settings
from paywatch.errors import ConfigError

MASTER = "0x" + "11" * 20


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "CHAIN", "RPC_URL", "BASE_RPC_URL", "BSC_RPC_URL", "EXPLORER_API_URL", "MASTER_WALLET",
        "PAYMENT_WINDOW_MINUTES", "GAS_FLOOR", "POLL_INTERVAL_SECONDS", "EXPIRE_UNPAID_ORDERS",
        "ORDER_STATE_PATH", "KEY_ENCRYPTION_SECRET",
    ):
        monkeypatch.delenv(name, raising=False)


class TestSettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("MASTER_WALLET", MASTER)
        s = Settings.from_env()
        assert s.chain == "base"
        assert s.chain_id == 8453
        assert s.payment_window_seconds == 1800
        assert s.gas_floor == Decimal("0.0035")
        assert s.poll_interval_seconds == 0
        assert s.expire_unpaid_orders is False
        assert s.native_symbol == "ETH"

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("MASTER_WALLET", MASTER)
        monkeypatch.setenv("CHAIN", "bsc")
        monkeypatch.setenv("BSC_RPC_URL", "http://localhost:8545")
        monkeypatch.setenv("PAYMENT_WINDOW_MINUTES", "15")
        monkeypatch.setenv("GAS_FLOOR", "0.001")
        monkeypatch.setenv("EXPIRE_UNPAID_ORDERS", "true")
        s = Settings.from_env()
        assert s.chain_id == 56
        assert s.rpc_url == "http://localhost:8545"
        assert s.explorer_api_url == "https://api.bscscan.com/api"
        assert s.payment_window_seconds == 900
        assert s.gas_floor == Decimal("0.001")
        assert s.expire_unpaid_orders is True
        assert s.native_symbol == "BNB"

    def test_master_wallet_required(self):
        with pytest.raises(ConfigError, match="MASTER_WALLET"):
            Settings.from_env()

    def test_master_wallet_must_be_address(self, monkeypatch):
        monkeypatch.setenv("MASTER_WALLET", "alice")
        with pytest.raises(ConfigError):
            Settings.from_env()

    def test_unknown_chain(self, monkeypatch):
        monkeypatch.setenv("MASTER_WALLET", MASTER)
        monkeypatch.setenv("CHAIN", "dogecoin")
        with pytest.raises(ConfigError, match="Unsupported CHAIN"):
            Settings.from_env()

    @pytest.mark.parametrize("name,value", [
        ("PAYMENT_WINDOW_MINUTES", "soon"),
        ("PAYMENT_WINDOW_MINUTES", "0"),
        ("GAS_FLOOR", "cheap"),
        ("GAS_FLOOR", "-1"),
    ])
    def test_bad_values(self, monkeypatch, name, value):
        monkeypatch.setenv("MASTER_WALLET", MASTER)
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigError):
            Settings.from_env()
