"""SLTP trigger Pydantic schemas"""

from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


class TriggerType(str, Enum):
    TP1_HIT = "TP1_HIT"
    TP2_HIT = "TP2_HIT"
    SL_HIT = "SL_HIT"
    TRAIL_HIT = "TRAIL_HIT"
    TIME_EXIT = "TIME_EXIT"

    @property
    def is_take_profit(self) -> bool:
        return self in (TriggerType.TP1_HIT, TriggerType.TP2_HIT)


class TriggerRequest(BaseModel):
    """Inbound trigger from the signal source (POST /sltp-webhook).

    Range checks live in TriggerExecutor.validate() so that a bad
    quantity_pct or trigger_type gets a structured rejection, not a 422.
    """
    symbol: str  # "BTCUSDT"
    trigger_type: str  # TriggerType value
    quantity_pct: float  # 0.5 for TP1 (50%), 1.0 for full exit
    trigger_price: Optional[float] = None  # 0/None means MARKET
    timestamp: Optional[str] = None  # ISO timestamp when the trigger fired
    webhook_secret: Optional[str] = None
    position_id: Optional[str] = None  # Orchestrator position id
    exchange: Optional[str] = None  # Restrict fan-out to one exchange


class ExecutionResult(BaseModel):
    """Outcome of one tenant's dispatch"""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    exchange: str
    success: bool
    order_id: Optional[Union[str, int]] = Field(default=None, alias="orderId")
    error: Optional[str] = None
    executed_qty: Optional[str] = Field(default=None, alias="quantity")
    executed_price: Optional[float] = Field(default=None, alias="price")
    reason: Optional[str] = None  # Why an unsold tenant was skipped: warmup_period, quarantined, ...


class TriggerResponse(BaseModel):
    success: bool
    trigger_type: str
    symbol: str
    users_processed: int = 0
    users_sold: int = 0
    users_failed: int = 0
    message: str
    execution_details: List[ExecutionResult] = []

    # HTTP status for the router; 401 only for secret mismatch
    _status_code: int = PrivateAttr(default=200)

    @property
    def status_code(self) -> int:
        return self._status_code

    def to_wire(self) -> dict:
        """Serialize with the camelCase detail keys the signal source expects."""
        return self.model_dump(by_alias=True, exclude_none=True)
