"""
Webhook Notifier

Pushes position lifecycle events to the position-tracking orchestrator:
- Position opened (entry order filled)
- Position updated (partial take profit, trailing stop moved)
- Position closed (stop loss, final take profit, manual close)
- Order cancelled

Every POST carries X-Webhook-Signature, a hex HMAC-SHA256 of the exact
request body keyed by WEBHOOK_SECRET. Failed deliveries are retried with
exponential backoff; after the last retry the event is logged and dropped.
Delivery is best-effort and never raises into the caller.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, Optional, Set, Union

import httpx
from pydantic import BaseModel

from sltp_service.config import settings
from sltp_service.schemas.webhook import (
    OrderCancelledPayload,
    PositionClosedPayload,
    PositionOpenedPayload,
    PositionUpdatedPayload,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"

Payload = Union[BaseModel, Dict[str, Any]]


@dataclass
class RetryPolicy:
    """Retry budget for one delivery: max_retries after the first attempt."""
    max_retries: int = 3
    backoff_base: float = 1.0  # seconds

    def delay(self, retry_index: int) -> float:
        """Backoff before retry N (0-based): base, 2*base, 4*base, ..."""
        return self.backoff_base * (2 ** retry_index)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.webhook_max_retries,
            backoff_base=settings.webhook_backoff_base_seconds,
        )


def _as_dict(payload: Payload) -> Dict[str, Any]:
    if isinstance(payload, BaseModel):
        return payload.model_dump(exclude_none=True)
    return {k: v for k, v in payload.items() if v is not None}


def canonical_json(payload: Payload) -> bytes:
    """Serialized form that is both signed and sent."""
    return json.dumps(_as_dict(payload), sort_keys=True, separators=(",", ":")).encode("utf-8")


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """Receiver-side check of X-Webhook-Signature."""
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature)


def _utc_timestamp(ts: Optional[datetime] = None) -> str:
    ts = ts or datetime.now(timezone.utc)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


class WebhookNotifier:
    """
    Signed, retried webhook client for the orchestrator.

    Each instance owns its retry policy and its set of background delivery
    tasks, so independent notifiers do not share any state.

    Usage:
        notifier = WebhookNotifier()
        ok = await notifier.position_closed("position:BTCUSDT", 105000.0, 42.5, "tp_full")

        # From request handlers, without waiting on delivery
        notifier.notify_in_background(notifier.position_updated(...))
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        secret: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        default_exchange: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.get_orchestrator_url()).rstrip("/")
        self.webhook_url = f"{self.base_url}/webhook"
        self._secret = secret if secret is not None else settings.webhook_secret
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.timeout = timeout if timeout is not None else settings.webhook_timeout_seconds
        self.default_exchange = (default_exchange or settings.default_exchange).upper()
        self._transport = transport
        self._tasks: Set[asyncio.Task] = set()

        logger.info(f"🔗 Webhook notifier initialized: {self.webhook_url}")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def sign(self, payload: Payload) -> str:
        """Hex HMAC-SHA256 of the canonical payload."""
        return compute_signature(canonical_json(payload), self._secret)

    async def send(self, endpoint: str, payload: Payload) -> bool:
        """
        POST a payload with retries and exponential backoff.

        Args:
            endpoint: Path under /webhook (e.g., '/position/opened')
            payload: Pydantic payload or plain dict

        Returns:
            True once the orchestrator answers 2xx, False after the retry
            budget is exhausted
        """
        url = f"{self.webhook_url}{endpoint}"
        body = canonical_json(payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: compute_signature(body, self._secret),
        }
        label = _as_dict(payload).get("symbol") or _as_dict(payload).get("position_id") or ""
        attempts = self.retry_policy.max_retries + 1

        async with self._client() as client:
            for attempt in range(attempts):
                if attempt > 0:
                    delay = self.retry_policy.delay(attempt - 1)
                    logger.info(f"⏳ Retrying webhook {endpoint} in {delay}s (retry {attempt}/{self.retry_policy.max_retries})")
                    await asyncio.sleep(delay)

                try:
                    response = await client.post(url, content=body, headers=headers)
                except httpx.HTTPError as e:
                    logger.error(f"❌ Webhook failed: {endpoint} - {type(e).__name__}: {e}")
                    continue

                if 200 <= response.status_code < 300:
                    logger.info(f"✅ Webhook delivered: {endpoint} ({label})")
                    return True

                logger.warning(f"⚠️ Webhook returned status {response.status_code}: {endpoint}")

        logger.error(f"💥 Webhook failed after {self.retry_policy.max_retries} retries: {endpoint} ({label})")
        return False

    # =========================================================================
    # Event wrappers
    # =========================================================================

    async def position_opened(
        self,
        order_id: str,
        symbol: str,
        side: str,
        avg_price: float,
        filled_qty: float,
        timestamp: Optional[datetime] = None,
        exchange: Optional[str] = None,
        final_signal_id: Optional[str] = None,
        portfolio_id: Optional[str] = None,
    ) -> bool:
        """Notify that an entry order filled and a position exists."""
        payload = PositionOpenedPayload(
            order_id=str(order_id),
            symbol=symbol,
            side=side.upper(),
            avg_price=avg_price,
            filled_qty=filled_qty,
            timestamp=_utc_timestamp(timestamp),
            exchange=(exchange or self.default_exchange).upper(),
            final_signal_id=final_signal_id,
            portfolio_id=portfolio_id or "Portfolio:default",
        )
        return await self.send("/position/opened", payload)

    async def position_updated(
        self,
        position_id: str,
        update_type: str,
        current_price: float,
        unrealized_pnl: float,
        quantity_remaining: Optional[float] = None,
        timestamp: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> bool:
        """Notify a partial take profit, trailing stop move, or manual update."""
        payload = PositionUpdatedPayload(
            position_id=position_id,
            update_type=update_type,
            current_price=current_price,
            unrealized_pnl=unrealized_pnl,
            quantity_remaining=quantity_remaining,
            timestamp=_utc_timestamp(timestamp),
            notes=notes,
        )
        return await self.send("/position/updated", payload)

    async def position_closed(
        self,
        position_id: str,
        exit_price: float,
        realized_pnl: float,
        close_reason: str,
        timestamp: Optional[datetime] = None,
        policy_version: Optional[str] = None,
        exit_qty: Optional[float] = None,
    ) -> bool:
        """Notify that a position is fully closed."""
        payload = PositionClosedPayload(
            position_id=position_id,
            exit_price=exit_price,
            realized_pnl=realized_pnl,
            close_reason=close_reason,
            timestamp=_utc_timestamp(timestamp),
            policy_version=policy_version or "v1",
            exit_qty=exit_qty,
        )
        return await self.send("/position/closed", payload)

    async def order_cancelled(
        self,
        order_id: str,
        symbol: str,
        side: str,
        cancel_reason: str,
        age_minutes: Optional[float] = None,
        timestamp: Optional[datetime] = None,
        exchange: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        """Notify that an order was cancelled (stale, manual, balance, system)."""
        payload = OrderCancelledPayload(
            order_id=str(order_id),
            symbol=symbol,
            side=side.upper(),
            cancel_reason=cancel_reason,
            age_minutes=age_minutes,
            timestamp=_utc_timestamp(timestamp),
            exchange=(exchange or self.default_exchange).upper(),
            user_id=user_id,
        )
        return await self.send("/order/cancelled", payload)

    # =========================================================================
    # Diagnostics and background delivery
    # =========================================================================

    async def health_check(self) -> bool:
        """Check whether the orchestrator answers GET /health. Diagnostic only."""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            logger.warning("⚠️ Webhook server health check failed")
            return False

    def notify_in_background(self, delivery: Awaitable[bool]) -> asyncio.Task:
        """Run a delivery coroutine detached from the caller's request."""
        task = asyncio.ensure_future(delivery)
        self._tasks.add(task)
        task.add_done_callback(self._on_delivery_done)
        return task

    def _on_delivery_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"❌ Background webhook delivery crashed: {task.exception()}")

    @property
    def pending_deliveries(self) -> int:
        return len(self._tasks)

    async def aclose(self, timeout: float = 10.0):
        """Wait for in-flight deliveries, cancelling whatever is left after timeout."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            for task in still_pending:
                task.cancel()
            await asyncio.gather(*still_pending, return_exceptions=True)
            logger.warning(f"⚠️ Cancelled {len(still_pending)} undelivered webhook(s) on shutdown")
