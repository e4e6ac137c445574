"""
paywatch - main entry point

Loads settings, wires the settlement engine, starts the server.
One file to understand how everything connects.

Usage:
    python main.py              # Start paywatch
    uvicorn main:app            # Or via any ASGI server
"""

import os
import re
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("paywatch.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from paywatch.config import Settings
from paywatch.coordinator import Coordinator
from paywatch.ledger import ExplorerClient, LedgerObserver
from paywatch.orders import OrderIntake
from paywatch.poller import PendingOrderPoller
from paywatch.settlement import SettlementExecutor
from paywatch.store import MemoryOrderStore
from paywatch.wallet import KeyCipher, WalletProvisioner
from api.server import create_app


# ============================================================
# WIRING
# ============================================================

settings = Settings.from_env()

store = MemoryOrderStore(settings.order_state_path)
cipher = KeyCipher(settings.key_encryption_secret)
intake = OrderIntake(store, WalletProvisioner(), cipher, chain=settings.chain)
explorer = ExplorerClient(
    settings.explorer_api_url,
    settings.explorer_api_key,
    timeout_seconds=settings.ledger_timeout_seconds,
)
executor = SettlementExecutor.connect(
    settings.rpc_url,
    settings.chain_id,
    request_timeout=settings.ledger_timeout_seconds,
    receipt_timeout=settings.receipt_timeout_seconds,
)
coordinator = Coordinator(
    store=store,
    observer=LedgerObserver(explorer),
    executor=executor,
    master_wallet=settings.master_wallet,
    payment_window=settings.payment_window_seconds,
    gas_floor=settings.gas_floor,
    cipher=cipher,
)
poller = PendingOrderPoller(
    store,
    coordinator,
    interval_seconds=settings.poll_interval_seconds,
    expire_unpaid=settings.expire_unpaid_orders,
)


@asynccontextmanager
async def lifespan(app):
    """Startup and shutdown."""
    logger.info("=" * 60)
    logger.info(f"paywatch starting on {settings.chain} (chain_id={settings.chain_id})")
    logger.info(f"Master wallet: {settings.master_wallet[:10]}...")
    logger.info(
        f"Payment window: {settings.payment_window_seconds // 60} min | "
        f"gas floor: {settings.gas_floor} {settings.native_symbol}"
    )
    logger.info("=" * 60)

    store.load_state()
    poller.start()

    yield

    logger.info("paywatch shutting down...")
    await poller.stop()
    await explorer.close()
    store.save_state()
    logger.info("Goodbye.")


def create_paywatch_app():
    """Create the fully wired FastAPI app."""
    app = create_app(
        coordinator=coordinator,
        intake=intake,
        store=store,
        settings=settings,
    )
    app.router.lifespan_context = lifespan
    return app


# ============================================================
# ENTRY POINT
# ============================================================

app = create_paywatch_app()

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")

    logger.info(f"Starting server on {host}:{port} (reload={reload})")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
