"""
Settlement Executor - sweeps an ephemeral wallet.

Forwarding to the operator and refunding the payer are the same
operation with a different destination: move the ENTIRE current
balance of the order address, not just the price. The gas for the
sweep is paid from that balance, so the address ends at zero:

    value = balance - NATIVE_TRANSFER_GAS * gas_price

Design (same pattern as every other web3 call in this codebase):
- Sync Web3 calls wrapped in run_in_executor() (web3.py async is fragile)
- Legacy gasPrice transaction, nonce from chain, signed locally
- Waits for the receipt with a bounded timeout
- Never raises for chain failures: returns a SweepResult with a
  failure kind. The engine does not retry; the caller decides.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted

from .ledger import wei_to_native
from .rules import SETTLEMENT_RULES

logger = logging.getLogger("paywatch.settlement")


class SweepFailure(str, Enum):
    INSUFFICIENT_GAS = "insufficient_gas"       # balance cannot cover the sweep's own fee
    BROADCAST_REJECTED = "broadcast_rejected"   # node refused it, or it reverted
    TIMEOUT = "timeout"                         # sent, no receipt in time
    RPC_ERROR = "rpc_error"                     # could not read balance / nonce / gas price


@dataclass
class SweepResult:
    """Result of one sweep attempt."""
    success: bool
    tx_hash: str = ""
    amount: Decimal = Decimal(0)      # native units actually moved
    destination: str = ""
    failure: Optional[SweepFailure] = None
    error: str = ""
    gas_cost: Decimal = Decimal(0)


class SettlementExecutor:
    """
    Usage:
        executor = SettlementExecutor.connect(rpc_url, chain_id=8453)
        result = await executor.sweep(order_private_key, "0xMaster...")
        if result.success: ...
    """

    def __init__(self, w3, chain_id: int,
                 receipt_timeout: int = SETTLEMENT_RULES.DEFAULT_RECEIPT_TIMEOUT_SECONDS):
        self._w3 = w3
        self._chain_id = chain_id
        self._receipt_timeout = receipt_timeout
        self.sweep_count: int = 0
        self.last_error: str = ""

    @classmethod
    def connect(cls, rpc_url: str, chain_id: int, request_timeout: int = 30,
                receipt_timeout: int = SETTLEMENT_RULES.DEFAULT_RECEIPT_TIMEOUT_SECONDS):
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        logger.info(f"Settlement executor using {rpc_url} (chain_id={chain_id})")
        return cls(w3, chain_id, receipt_timeout=receipt_timeout)

    async def sweep(self, private_key: str, destination: str) -> SweepResult:
        if not Web3.is_address(destination):
            return SweepResult(
                success=False,
                destination=destination,
                failure=SweepFailure.BROADCAST_REJECTED,
                error=f"invalid destination address: {destination!r}",
            )
        destination = Web3.to_checksum_address(destination)
        return await asyncio.get_running_loop().run_in_executor(
            None, self._sweep_sync, private_key, destination
        )

    def _sweep_sync(self, private_key: str, destination: str) -> SweepResult:
        w3 = self._w3
        account = Account.from_key(private_key)
        source = account.address

        # ---- READ STATE ----
        try:
            balance = w3.eth.get_balance(source)
            gas_price = w3.eth.gas_price
            nonce = w3.eth.get_transaction_count(source)
        except Exception as e:
            return self._fail(SweepFailure.RPC_ERROR, destination, f"{type(e).__name__}: {e}")

        gas_limit = SETTLEMENT_RULES.NATIVE_TRANSFER_GAS
        fee = gas_limit * gas_price
        if balance <= fee:
            return self._fail(
                SweepFailure.INSUFFICIENT_GAS,
                destination,
                f"balance {wei_to_native(balance)} does not cover gas {wei_to_native(fee)}",
            )

        value = balance - fee
        tx = {
            "to": destination,
            "value": value,
            "gas": gas_limit,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": self._chain_id,
        }

        # ---- SIGN + BROADCAST ----
        try:
            signed = Account.sign_transaction(tx, private_key)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            # ValueError / Web3RPCError from the node, or a transport error
            return self._fail(SweepFailure.BROADCAST_REJECTED, destination, f"{type(e).__name__}: {e}")

        tx_hash_hex = Web3.to_hex(tx_hash)

        # ---- WAIT FOR RECEIPT ----
        # Already broadcast: every failure from here on keeps tx_hash_hex
        try:
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
        except TimeExhausted:
            result = self._fail(
                SweepFailure.TIMEOUT,
                destination,
                f"no receipt after {self._receipt_timeout}s",
            )
            result.tx_hash = tx_hash_hex
            return result
        except Exception as e:
            result = self._fail(
                SweepFailure.TIMEOUT,
                destination,
                f"receipt unknown after broadcast: {type(e).__name__}: {e}",
            )
            result.tx_hash = tx_hash_hex
            return result

        if receipt["status"] != 1:
            result = self._fail(SweepFailure.BROADCAST_REJECTED, destination, f"TX reverted: {tx_hash_hex}")
            result.tx_hash = tx_hash_hex
            return result

        self.sweep_count += 1
        gas_used = receipt.get("gasUsed", gas_limit)
        gas_cost = wei_to_native(gas_used * gas_price)
        logger.info(
            f"SWEEP OK: {source[:10]}... -> {destination[:10]}... | "
            f"{wei_to_native(value)} | tx={tx_hash_hex[:16]}... | gas={gas_cost}"
        )
        return SweepResult(
            success=True,
            tx_hash=tx_hash_hex,
            amount=wei_to_native(value),
            destination=destination,
            gas_cost=gas_cost,
        )

    def _fail(self, kind: SweepFailure, destination: str, error: str) -> SweepResult:
        self.last_error = error
        logger.warning(f"SWEEP FAILED ({kind.value}) -> {destination[:10]}...: {error}")
        return SweepResult(success=False, destination=destination, failure=kind, error=error)
