"""
SLTP webhook routes

Receives stop-loss / take-profit triggers from the signal source and fans
each one out to every tenant holding the symbol.

Every well-formed request gets a 200 with the aggregated TriggerResponse,
including validation rejections and partial failures. A secret mismatch
gets the same body shape with a 401.
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from sltp_service.schemas.trigger import TriggerRequest
from sltp_service.services.trigger_executor import TriggerExecutor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sltp-webhook", tags=["sltp-webhook"])


# Dependency - will be injected from main.py
def get_trigger_executor() -> TriggerExecutor:
    """Get trigger executor - will be overridden in main.py"""
    raise NotImplementedError("Must override trigger executor dependency")


@router.post("")
async def handle_sltp_trigger(
    trigger: TriggerRequest,
    executor: TriggerExecutor = Depends(get_trigger_executor),
):
    """Execute an SLTP trigger for all holders of the symbol"""
    result = await executor.process_trigger(trigger)
    return JSONResponse(status_code=result.status_code, content=result.to_wire())


@router.post("/health")
async def sltp_webhook_health():
    return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}
