"""
Ephemeral wallets - one keypair per order.

WalletProvisioner issues a fresh account for every order. The key is
generated from the OS CSPRNG by eth_account and never relates to any
prior order; a failure there aborts order creation.

KeyCipher encrypts the key material at rest. The Fernet key is derived
from KEY_ENCRYPTION_SECRET via HMAC-SHA256, so the secret itself stays
outside the order store. With no secret configured, keys pass through
unchanged (a warning is logged at startup).
"""

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass

from cryptography.fernet import Fernet, InvalidToken
from eth_account import Account
from web3 import Web3

logger = logging.getLogger("paywatch.wallet")

_SEALED_PREFIX = "fernet:"


@dataclass(frozen=True)
class Wallet:
    address: str
    private_key: str

    def __repr__(self) -> str:
        # Never let the key reach a log line via repr()
        return f"Wallet(address={self.address!r}, private_key='***')"


class WalletProvisioner:
    """Generates a fresh ephemeral wallet per order."""

    def __init__(self):
        self.issued: int = 0

    def generate(self) -> Wallet:
        account = Account.create()
        self.issued += 1
        logger.debug(f"Issued ephemeral wallet {account.address[:10]}...")
        return Wallet(address=account.address, private_key=Web3.to_hex(account.key))


class KeyCipher:
    """Seals/opens private key material for storage."""

    def __init__(self, secret: str = ""):
        self._fernet = None
        if secret:
            derived = hmac.new(
                secret.encode(),
                b"order-key-encryption",
                hashlib.sha256,
            ).digest()
            self._fernet = Fernet(base64.urlsafe_b64encode(derived))

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def seal(self, private_key: str) -> str:
        if not self._fernet:
            return private_key
        token = self._fernet.encrypt(private_key.encode()).decode()
        return _SEALED_PREFIX + token

    def open(self, sealed: str) -> str:
        if not sealed.startswith(_SEALED_PREFIX):
            return sealed
        if not self._fernet:
            raise ValueError("Key material is encrypted but no KEY_ENCRYPTION_SECRET is configured")
        try:
            return self._fernet.decrypt(sealed[len(_SEALED_PREFIX):].encode()).decode()
        except InvalidToken:
            raise ValueError("Cannot decrypt key material (wrong KEY_ENCRYPTION_SECRET?)")
