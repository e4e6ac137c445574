"""
tests/test_wallet.py

Ephemeral wallet generation, key sealing, and order intake.
"""

import asyncio
from decimal import Decimal

import pytest
from eth_account import Account

from paywatch.orders import OrderIntake, OrderStatus
from paywatch.wallet import KeyCipher, WalletProvisioner


class TestWalletProvisioner:

    def test_key_controls_address(self):
        wallet = WalletProvisioner().generate()
        assert Account.from_key(wallet.private_key).address == wallet.address

    def test_wallets_are_fresh(self):
        provisioner = WalletProvisioner()
        addresses = {provisioner.generate().address for _ in range(20)}
        assert len(addresses) == 20
        assert provisioner.issued == 20

    def test_repr_hides_key(self):
        wallet = WalletProvisioner().generate()
        assert wallet.private_key not in repr(wallet)


class TestKeyCipher:

    def test_passthrough_without_secret(self):
        cipher = KeyCipher("")
        assert not cipher.enabled
        assert cipher.seal("0xabc") == "0xabc"
        assert cipher.open("0xabc") == "0xabc"

    def test_sealed_key_is_not_plaintext(self):
        key = WalletProvisioner().generate().private_key
        cipher = KeyCipher("s3cret")
        sealed = cipher.seal(key)
        assert key not in sealed
        assert cipher.open(sealed) == key

    def test_wrong_secret_fails(self):
        sealed = KeyCipher("right").seal("0xabc")
        with pytest.raises(ValueError, match="decrypt"):
            KeyCipher("wrong").open(sealed)

    def test_sealed_key_without_secret_fails(self):
        sealed = KeyCipher("right").seal("0xabc")
        with pytest.raises(ValueError, match="KEY_ENCRYPTION_SECRET"):
            KeyCipher("").open(sealed)


class TestOrderIntake:

    def test_create_order_is_pending_with_fresh_address(self, store):
        intake = OrderIntake(store, cipher=KeyCipher("s3cret"))

        async def run():
            a = await intake.create_order(Decimal("0.5"), 3600, {"customer_ref": "u1"})
            b = await intake.create_order(Decimal("0.5"), 3600)
            return a, b, await store.get(a.id)

        a, b, stored = asyncio.run(run())
        assert a.status == OrderStatus.PENDING
        assert a.payment_address != b.payment_address
        assert stored.metadata == {"customer_ref": "u1"}
        assert stored.payment_private_key.startswith("fernet:")
        assert stored.settlement_started_at is None

    def test_plan_sets_price_and_duration(self, store):
        order = asyncio.run(OrderIntake(store).create_order_for_plan("month"))
        assert order.required_amount == Decimal("0.5")
        assert order.purchased_duration == 30 * 24 * 3600
        assert order.metadata["plan_id"] == "month"

    def test_unknown_plan(self, store):
        with pytest.raises(KeyError):
            asyncio.run(OrderIntake(store).create_order_for_plan("forever"))

    def test_rejects_non_positive_amount(self, store):
        with pytest.raises(ValueError):
            asyncio.run(OrderIntake(store).create_order(Decimal("0"), 3600))

    def test_public_dict_omits_key(self, store):
        order = asyncio.run(OrderIntake(store).create_order(Decimal("0.25"), 60))
        public = order.to_dict()
        assert "payment_private_key" not in public
        assert public["required_amount"] == "0.25"
        assert public["status"] == "pending"
