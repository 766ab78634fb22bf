"""Orchestrator webhook payloads (position lifecycle events)"""

from typing import Literal, Optional

from pydantic import BaseModel


class PositionOpenedPayload(BaseModel):
    order_id: str
    symbol: str
    side: Literal["BUY", "SELL"]
    avg_price: float
    filled_qty: float
    timestamp: str
    exchange: Optional[str] = None
    final_signal_id: Optional[str] = None
    portfolio_id: Optional[str] = None


class PositionUpdatedPayload(BaseModel):
    position_id: str
    update_type: Literal["partial_tp", "trailing_sl", "manual_update"]
    current_price: float
    unrealized_pnl: float
    quantity_remaining: Optional[float] = None
    timestamp: str
    notes: Optional[str] = None


class PositionClosedPayload(BaseModel):
    position_id: str
    exit_price: float
    realized_pnl: float
    close_reason: Literal["sl_hit", "tp_full", "manual_close", "liquidation"]
    timestamp: str
    policy_version: Optional[str] = None
    exit_qty: Optional[float] = None


class OrderCancelledPayload(BaseModel):
    order_id: str
    symbol: str
    side: Literal["BUY", "SELL"]
    cancel_reason: Literal["stale_order", "manual_cancel", "insufficient_balance", "system"]
    age_minutes: Optional[float] = None
    timestamp: str
    exchange: Optional[str] = None
    user_id: Optional[str] = None
