"""
paywatch API Server - FastAPI presentation layer

Endpoints:
- GET  /plans               Price table
- POST /order               Create order + get its one-time payment address
- GET  /order/{id}          Order status (public fields only)
- POST /order/{id}/check    Look for the payment and settle it
- GET  /health              Heartbeat

The server holds no settlement logic. It turns requests into intake /
coordinator calls and turns CheckOutcome values into text.
"""

import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from paywatch.coordinator import CheckOutcome, OutcomeKind
from paywatch.rules import PLANS

logger = logging.getLogger("paywatch.api")


# ============================================================
# MODELS
# ============================================================

class OrderRequest(BaseModel):
    plan_id: str = Field(..., max_length=64)
    customer_ref: str = Field("", max_length=200)   # opaque id from the caller (chat user, account)


class OrderResponse(BaseModel):
    order_id: str
    plan_id: str
    amount: str
    payment_address: str
    payment_asset: str
    chain: str
    expires_minutes: int


class CheckResponse(BaseModel):
    order_id: str
    outcome: str
    message: str
    status: str
    tx_hash: str = ""
    tx_url: str = ""                # block explorer link for tx_hash
    settlement_ends_at: Optional[float] = None


# ============================================================
# OUTCOME TEXT
# ============================================================

def _format_duration(seconds: int) -> str:
    days, rem = divmod(int(seconds), 86400)
    hours = rem // 3600
    if days and hours:
        return f"{days}d {hours}h"
    if days:
        return f"{days} day" + ("s" if days != 1 else "")
    return f"{hours} hour" + ("s" if hours != 1 else "")


def render_outcome(outcome: CheckOutcome, asset: str = "ETH") -> str:
    """User-facing text for each outcome kind."""
    kind = outcome.kind
    if kind == OutcomeKind.WAITING:
        return "Payment not received yet. Please wait a moment and check again."
    if kind == OutcomeKind.PAYMENT_NOT_DETECTED:
        return "No payment detected for this order. If you already sent it, check again shortly."
    if kind == OutcomeKind.CONFIRMED:
        ends = ""
        if outcome.ends_at:
            ends = datetime.fromtimestamp(outcome.ends_at, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
            ends = f" Active until {ends}."
        return (
            f"Payment of {outcome.amount} {asset} confirmed. "
            f"Your {_format_duration(outcome.duration or 0)} plan is now active.{ends}"
        )
    if kind == OutcomeKind.REFUNDED_INSUFFICIENT:
        return (
            f"Received {outcome.amount} {asset}, which is less than the price. "
            f"The full balance has been refunded to the sending address."
        )
    if kind == OutcomeKind.REFUNDED_EXPIRED:
        return (
            "Payment arrived after the payment window closed and has been refunded "
            "to the sending address. Please create a new order."
        )
    if kind == OutcomeKind.TOO_SMALL_TO_REFUND:
        return (
            f"Received {outcome.amount} {asset}, which is too small to cover a refund "
            f"transaction. The order has been closed."
        )
    if kind == OutcomeKind.ALREADY_PROCESSED:
        return "This order has already been processed."
    if kind == OutcomeKind.NOT_FOUND:
        return "Order not found."
    if kind == OutcomeKind.LEDGER_UNAVAILABLE:
        return "Could not reach the blockchain right now. Please try again in a minute."
    return (
        "Something went wrong while settling your payment. "
        f"Please contact support with order id {outcome.order_id}."
    )


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(coordinator, intake, store, settings) -> FastAPI:
    """
    Create FastAPI app wired to the settlement engine.

    coordinator: paywatch.coordinator.Coordinator
    intake: paywatch.orders.OrderIntake
    store: paywatch.store.OrderStore
    settings: paywatch.config.Settings
    """
    app = FastAPI(
        title="paywatch",
        description="One-time payment addresses with on-chain settlement.",
        version="0.1.0",
    )

    # CORS: allow all in dev, restrict in production via CORS_ORIGINS env var
    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    asset = settings.native_symbol

    # ============================================================
    # ROUTES
    # ============================================================

    @app.get("/plans")
    async def plans():
        return {
            "asset": asset,
            "chain": settings.chain,
            "plans": [
                {
                    "id": p.plan_id,
                    "name": p.name,
                    "price": str(p.price),
                    "duration_seconds": p.duration_seconds,
                }
                for p in PLANS.values()
            ],
        }

    @app.post("/order", response_model=OrderResponse)
    async def create_order(req: OrderRequest):
        if req.plan_id not in PLANS:
            raise HTTPException(404, f"Unknown plan: {req.plan_id}")

        metadata = {"customer_ref": req.customer_ref} if req.customer_ref else {}
        order = await intake.create_order_for_plan(req.plan_id, metadata)

        return OrderResponse(
            order_id=order.id,
            plan_id=req.plan_id,
            amount=str(order.required_amount),
            payment_address=order.payment_address,
            payment_asset=asset,
            chain=order.chain,
            expires_minutes=settings.payment_window_seconds // 60,
        )

    @app.get("/order/{order_id}")
    async def get_order(order_id: str):
        order = await store.get(order_id)
        if order is None:
            raise HTTPException(404, "Order not found")
        return order.to_dict()

    @app.post("/order/{order_id}/check", response_model=CheckResponse)
    async def check_order(order_id: str):
        outcome = await coordinator.check(order_id)
        if outcome.kind == OutcomeKind.NOT_FOUND:
            raise HTTPException(404, render_outcome(outcome, asset))
        if outcome.kind == OutcomeKind.LEDGER_UNAVAILABLE:
            raise HTTPException(503, render_outcome(outcome, asset))

        order = await store.get(order_id)
        return CheckResponse(
            order_id=order_id,
            outcome=outcome.kind.value,
            message=render_outcome(outcome, asset),
            status=order.status.value if order else "",
            tx_hash=outcome.tx_hash,
            tx_url=f"{settings.explorer_url}/tx/{outcome.tx_hash}" if outcome.tx_hash else "",
            settlement_ends_at=order.settlement_ends_at if order else None,
        )

    @app.get("/health")
    async def health():
        from paywatch.orders import OrderStatus
        pending = await store.list_by_status(OrderStatus.PENDING)
        return {
            "status": "ok",
            "timestamp": time.time(),
            "chain": settings.chain,
            "pending_orders": len(pending),
        }

    return app
