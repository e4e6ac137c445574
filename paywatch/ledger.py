"""
Ledger Observer - reads incoming payments from the chain.

The transfer history comes from an Etherscan-compatible explorer API
(BaseScan, BscScan): `module=account&action=txlist&sort=desc` returns
the address's transactions newest-first, which a plain JSON-RPC node
cannot do. `txlistinternal` covers value sent by contract wallets,
which never shows up in txlist.

Design:
- ExplorerClient is the raw query (aiohttp, bounded timeout, one session)
- LedgerObserver filters rows down to the latest qualifying transfer
- "No transactions found" is the normal answer while waiting for payment
- Anything else that goes wrong (network, HTTP status, rate limit,
  malformed payload, timeout) raises LedgerUnavailable. The coordinator
  never advances an order on that error.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import aiohttp

from .errors import LedgerUnavailable
from .rules import SETTLEMENT_RULES

logger = logging.getLogger("paywatch.ledger")

# Explorer replies with status "0" for both "empty" and real errors;
# only these messages mean "no rows yet".
_EMPTY_RESULT_MESSAGES = ("no transactions found", "no records found")


@dataclass(frozen=True)
class Transfer:
    """A native-asset payment credited to an order address."""
    sender: str
    amount: Decimal           # native units (ETH/BNB), not wei
    tx_hash: str
    timestamp: float = 0.0


def wei_to_native(value_wei: int) -> Decimal:
    return Decimal(value_wei) / SETTLEMENT_RULES.wei_per_native


# ============================================================
# EXPLORER CLIENT
# ============================================================

class ExplorerClient:
    """
    Thin async client for an Etherscan-compatible `txlist` endpoint.

    Usage:
        client = ExplorerClient("https://api.basescan.org/api", api_key)
        rows = await client.query_transfers_to("0xAbc...")
        await client.close()
    """

    def __init__(self, api_url: str, api_key: str = "",
                 timeout_seconds: int = SETTLEMENT_RULES.DEFAULT_LEDGER_TIMEOUT_SECONDS,
                 page_size: int = SETTLEMENT_RULES.EXPLORER_PAGE_SIZE):
        self._api_url = api_url
        self._api_key = api_key
        self._page_size = page_size
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def query_transfers_to(self, address: str) -> list[dict]:
        """Raw txlist rows for address, newest first."""
        return await self._query("txlist", address)

    async def query_internal_transfers_to(self, address: str) -> list[dict]:
        """Raw txlistinternal rows (value moved by contract calls), newest first."""
        return await self._query("txlistinternal", address)

    async def _query(self, action: str, address: str) -> list[dict]:
        params = {
            "module": "account",
            "action": action,
            "address": address,
            "startblock": "0",
            "endblock": "99999999",
            "page": "1",
            "offset": str(self._page_size),
            "sort": "desc",
        }
        if self._api_key:
            params["apikey"] = self._api_key

        try:
            session = await self._get_session()
            async with session.get(self._api_url, params=params) as resp:
                if resp.status != 200:
                    raise LedgerUnavailable(f"explorer HTTP {resp.status}")
                payload = await resp.json(content_type=None)
        except LedgerUnavailable:
            raise
        except asyncio.TimeoutError:
            raise LedgerUnavailable(f"explorer timeout after {self._timeout.total}s")
        except (aiohttp.ClientError, ValueError) as e:
            raise LedgerUnavailable(f"{type(e).__name__}: {e}")

        return parse_txlist_response(payload)


def parse_txlist_response(payload) -> list[dict]:
    """Unwrap an explorer txlist payload, raising LedgerUnavailable on errors."""
    if not isinstance(payload, dict):
        raise LedgerUnavailable("malformed explorer response")

    result = payload.get("result")
    if str(payload.get("status")) == "1" and isinstance(result, list):
        return result

    message = str(payload.get("message", "")).lower()
    if isinstance(result, list) and not result and message in _EMPTY_RESULT_MESSAGES:
        return []

    # e.g. {"status":"0","message":"NOTOK","result":"Max rate limit reached"}
    detail = result if isinstance(result, str) else payload.get("message", "")
    raise LedgerUnavailable(f"explorer error: {detail}")


# ============================================================
# LEDGER OBSERVER
# ============================================================

class LedgerObserver:
    """Finds the most recent qualifying inbound transfer for an address."""

    def __init__(self, client):
        self._client = client

    async def latest_incoming_transfer(self, address: str) -> Optional[Transfer]:
        """
        Newest native credit to address, from plain transactions or from
        internal transfers (payments sent by contract wallets).
        A plain transaction wins a timestamp tie.
        """
        target = address.lower()
        direct = self._first_transfer(await self._client.query_transfers_to(address), target)
        internal = self._first_transfer(
            await self._client.query_internal_transfers_to(address), target
        )

        transfer = direct
        if internal is not None and (direct is None or internal.timestamp > direct.timestamp):
            transfer = internal

        if transfer is not None:
            logger.info(
                f"Transfer observed to {address[:10]}...: {transfer.amount} "
                f"from {transfer.sender[:10]}... tx={transfer.tx_hash[:16]}..."
            )
        return transfer

    def _first_transfer(self, rows: list, target: str) -> Optional[Transfer]:
        for row in rows:
            transfer = self._to_transfer(row, target)
            if transfer is not None:
                return transfer
        return None

    @staticmethod
    def _to_transfer(row: dict, target: str) -> Optional[Transfer]:
        """Row -> Transfer, or None if it does not credit native value to target."""
        if not isinstance(row, dict):
            raise LedgerUnavailable("malformed explorer row")

        # Token transfers are addressed to the token contract, so they fail here.
        # Call data alone does not disqualify a row: a memo still credits value.
        if str(row.get("to", "")).lower() != target:
            return None
        if str(row.get("isError", "0")) != "0":
            return None
        if str(row.get("txreceipt_status", "1")) == "0":
            return None

        try:
            value_wei = int(row.get("value", "0"))
            timestamp = float(row.get("timeStamp", 0) or 0)
        except (TypeError, ValueError):
            raise LedgerUnavailable(f"malformed explorer row: {row.get('hash', '?')}")

        if value_wei <= 0:
            return None

        return Transfer(
            sender=row.get("from", ""),
            amount=wei_to_native(value_wei),
            tx_hash=row.get("hash", ""),
            timestamp=timestamp,
        )
