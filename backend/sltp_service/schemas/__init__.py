"""Centralized Pydantic schemas for API requests/responses"""

from .credentials import ActiveTradingCredential, CredentialSummary, DecryptedCredential
from .trigger import ExecutionResult, TriggerRequest, TriggerResponse, TriggerType
from .webhook import (
    OrderCancelledPayload,
    PositionClosedPayload,
    PositionOpenedPayload,
    PositionUpdatedPayload,
)

__all__ = [
    # Credential schemas
    "DecryptedCredential",
    "ActiveTradingCredential",
    "CredentialSummary",
    # Trigger schemas
    "TriggerType",
    "TriggerRequest",
    "ExecutionResult",
    "TriggerResponse",
    # Webhook payloads
    "PositionOpenedPayload",
    "PositionUpdatedPayload",
    "PositionClosedPayload",
    "OrderCancelledPayload",
]
