"""
Trigger Executor

Turns one inbound SLTP trigger into a sell for every tenant holding the
symbol:

    RECEIVED -> VALIDATING -> RESOLVING_USERS -> DISPATCHING -> AGGREGATING -> RESPONDED

Tenants are dispatched concurrently through a bounded worker pool. Each
tenant runs under its own (user, exchange, symbol) lock with a timeout on
its exchange calls, and whatever goes wrong for one tenant ends up in that
tenant's ExecutionResult. It never reaches the other tenants or the
response. The one exception is a vault that cannot decrypt anything at
all, which fails the whole trigger with InternalError.

Sell orders are never retried. Re-sending a sell after an unknown outcome
could sell twice.
"""

import asyncio
import hmac
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional, Union

from sltp_service.config import settings
from sltp_service.exceptions import (
    AppError,
    AuthenticationError,
    CredentialError,
    InternalError,
    TransportError,
    ValidationError,
)
from sltp_service.exchange_clients import OrderGateway, OrderResult, OrderType
from sltp_service.exchange_clients.factory import create_order_gateway
from sltp_service.precision import compute_sell_quantity, floor_to_step, format_amount
from sltp_service.schemas.credentials import DecryptedCredential
from sltp_service.schemas.trigger import ExecutionResult, TriggerRequest, TriggerResponse, TriggerType
from sltp_service.services.credential_health import CredentialHealthTracker
from sltp_service.services.credential_vault import CredentialVault
from sltp_service.services.position_store import QUANTITY_EPSILON, Holding, PositionStore
from sltp_service.services.trigger_guards import DispatchLocks, TriggerCooldown
from sltp_service.services.webhook_notifier import WebhookNotifier

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[str, DecryptedCredential], OrderGateway]


class TriggerState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATING = "VALIDATING"
    RESOLVING_USERS = "RESOLVING_USERS"
    DISPATCHING = "DISPATCHING"
    AGGREGATING = "AGGREGATING"
    RESPONDED = "RESPONDED"


def _user_label(user_id: str, exchange: str) -> str:
    return f"[User {user_id[:8]}...][{exchange.upper()}]"


def _skipped(holding: Holding, error: str, reason: str) -> ExecutionResult:
    """A tenant that was not sold for, without anything having gone wrong."""
    return ExecutionResult(
        user_id=holding.user_id,
        exchange=holding.exchange,
        success=False,
        error=error,
        reason=reason,
    )


@dataclass
class _Sale:
    """A placed sell order waiting to be booked."""
    holding: Holding
    order: OrderResult
    quantity: Decimal
    exit_price: float
    dust: float


class TriggerExecutor:
    """
    Fans an SLTP trigger out to every active-trading tenant holding the symbol.

    Usage:
        executor = TriggerExecutor(CredentialVault(), DatabasePositionStore(), WebhookNotifier())
        response = await executor.execute(TriggerRequest(...))
    """

    def __init__(
        self,
        vault: CredentialVault,
        position_store: PositionStore,
        notifier: Optional[WebhookNotifier] = None,
        gateway_factory: Optional[GatewayFactory] = None,
        max_concurrency: Optional[int] = None,
        dispatch_timeout: Optional[float] = None,
        cooldown: Optional[TriggerCooldown] = None,
        dispatch_locks: Optional[DispatchLocks] = None,
        verify_secret: Optional[bool] = None,
        webhook_secret: Optional[str] = None,
        warmup_seconds: Optional[float] = None,
        credential_health: Optional[CredentialHealthTracker] = None,
    ):
        self.vault = vault
        self.position_store = position_store
        self.notifier = notifier
        self.gateway_factory = gateway_factory or create_order_gateway
        self.max_concurrency = max(1, max_concurrency or settings.max_concurrent_dispatches)
        self.dispatch_timeout = dispatch_timeout if dispatch_timeout is not None else settings.dispatch_timeout_seconds
        self.cooldown = cooldown or TriggerCooldown(settings.trigger_dedup_cooldown_seconds)
        self.dispatch_locks = dispatch_locks or DispatchLocks()
        self.verify_secret = settings.sltp_verify_secret if verify_secret is None else verify_secret
        self._webhook_secret = settings.sltp_webhook_secret if webhook_secret is None else webhook_secret
        self.warmup_seconds = settings.entry_warmup_seconds if warmup_seconds is None else warmup_seconds
        self.credential_health = credential_health or vault.health

    def _transition(self, trigger: TriggerRequest, state: TriggerState):
        logger.debug(f"Trigger {trigger.symbol}:{trigger.trigger_type} -> {state.value}")

    # =========================================================================
    # Pipeline stages
    # =========================================================================

    def validate(self, trigger: TriggerRequest) -> TriggerType:
        """
        Check a trigger before anything touches an exchange.

        Returns:
            The parsed TriggerType

        Raises:
            AuthenticationError: Secret verification is on and the secret is missing or wrong
            ValidationError: Blank symbol, unknown trigger type, or quantity_pct outside (0, 1]
        """
        if self.verify_secret:
            if not self._webhook_secret:
                logger.error("❌ SLTP secret verification enabled but SLTP_WEBHOOK_SECRET is not set")
                raise AuthenticationError("Webhook secret not configured")
            if not trigger.webhook_secret or not hmac.compare_digest(
                trigger.webhook_secret.encode("utf-8"), self._webhook_secret.encode("utf-8")
            ):
                raise AuthenticationError("Invalid webhook secret")

        if not trigger.symbol or not trigger.symbol.strip():
            raise ValidationError("Symbol is required")

        try:
            trigger_type = TriggerType(trigger.trigger_type)
        except ValueError:
            raise ValidationError(f"Unknown trigger type: {trigger.trigger_type}")

        # NaN fails this check too
        if not (0 < trigger.quantity_pct <= 1):
            raise ValidationError(f"quantity_pct must be in (0, 1], got {trigger.quantity_pct}")

        return trigger_type

    async def resolve_users(self, symbol: str, exchange: Optional[str] = None) -> List[Holding]:
        """Holders of symbol that have an active-trading credential for their exchange."""
        holders = await self.position_store.get_holders(symbol, exchange)
        eligible = await self.vault.active_trading_keys()

        resolved: List[Holding] = []
        seen = set()
        for holding in holders:
            key = (holding.user_id, holding.exchange)
            if key in seen:
                continue
            seen.add(key)
            if key not in eligible:
                logger.info(f"Skipping {_user_label(*key)}: active trading disabled or no credential")
                continue
            resolved.append(holding)
        return resolved

    async def dispatch(
        self,
        holders: List[Holding],
        trigger: TriggerRequest,
        trigger_type: TriggerType,
    ) -> List[ExecutionResult]:
        """Dispatch to every holder concurrently. Results keep the order of holders."""
        semaphore = asyncio.Semaphore(self.max_concurrency)
        return list(
            await asyncio.gather(
                *(self._guarded_dispatch(semaphore, holding, trigger, trigger_type) for holding in holders)
            )
        )

    def aggregate(
        self,
        trigger: TriggerRequest,
        trigger_type: TriggerType,
        results: List[ExecutionResult],
        elapsed_ms: int,
    ) -> TriggerResponse:
        users_sold = sum(1 for r in results if r.success)
        return TriggerResponse(
            success=users_sold > 0,
            trigger_type=trigger_type.value,
            symbol=trigger.symbol,
            users_processed=len(results),
            users_sold=users_sold,
            users_failed=len(results) - users_sold,
            message=f"SLTP {trigger_type.value} processed in {elapsed_ms}ms",
            execution_details=results,
        )

    async def execute(self, trigger: TriggerRequest) -> TriggerResponse:
        """
        Run one trigger through the whole pipeline.

        Validation failures and duplicates come back as responses with
        users_processed=0. Per-tenant failures are in execution_details.

        Raises:
            InternalError: The encryption key ring is missing or misconfigured
        """
        start = time.monotonic()
        self._transition(trigger, TriggerState.RECEIVED)

        self._transition(trigger, TriggerState.VALIDATING)
        try:
            trigger_type = self.validate(trigger)
        except ValidationError as e:
            logger.warning(f"⚠️ Rejected SLTP trigger {trigger.symbol}:{trigger.trigger_type} - {e.message}")
            return self._rejection(trigger, e)

        trigger.symbol = trigger.symbol.strip().upper()
        logger.info(
            f"🚨 SLTP trigger received: {trigger.symbol} {trigger_type.value} "
            f"({trigger.quantity_pct * 100:.0f}% at {trigger.trigger_price})"
        )

        elapsed = self.cooldown.seconds_since(trigger.symbol, trigger_type.value)
        if elapsed is not None:
            logger.info(f"⏭️ Duplicate trigger {trigger.symbol}:{trigger_type.value} ({int(elapsed)}s ago), skipping")
            self._transition(trigger, TriggerState.RESPONDED)
            return TriggerResponse(
                success=True,
                trigger_type=trigger_type.value,
                symbol=trigger.symbol,
                message=f"Duplicate trigger: {trigger_type.value} already processed {int(elapsed)}s ago",
            )

        self._transition(trigger, TriggerState.RESOLVING_USERS)
        holders = await self.resolve_users(trigger.symbol, trigger.exchange)
        if not holders:
            logger.info(f"No active holders for {trigger.symbol}")
            self._transition(trigger, TriggerState.RESPONDED)
            return TriggerResponse(
                success=False,
                trigger_type=trigger_type.value,
                symbol=trigger.symbol,
                message=f"No active holders for {trigger.symbol}",
            )

        logger.info(f"Found {len(holders)} holder(s) of {trigger.symbol}")

        self._transition(trigger, TriggerState.DISPATCHING)
        try:
            self.vault.check_key_ring()
        except InternalError as e:
            logger.error(f"❌ Credential vault misconfigured, no tenant can trade {trigger.symbol}: {e.message}")
            raise

        results = await self.dispatch(holders, trigger, trigger_type)

        self._transition(trigger, TriggerState.AGGREGATING)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        response = self.aggregate(trigger, trigger_type, results, elapsed_ms)

        if response.users_sold > 0:
            self.cooldown.record(trigger.symbol, trigger_type.value)
            await self._mark_credentials_used(results)

        logger.info(
            f"✅ SLTP {trigger_type.value} complete: {response.users_sold} sold, "
            f"{response.users_failed} failed in {elapsed_ms}ms"
        )
        self._transition(trigger, TriggerState.RESPONDED)
        return response

    # Alias used by the webhook router
    process_trigger = execute

    # =========================================================================
    # Per-tenant dispatch
    # =========================================================================

    async def _guarded_dispatch(
        self,
        semaphore: asyncio.Semaphore,
        holding: Holding,
        trigger: TriggerRequest,
        trigger_type: TriggerType,
    ) -> ExecutionResult:
        """Run one tenant's dispatch and convert every failure into a result."""
        user_id, exchange = holding.user_id, holding.exchange
        label = _user_label(user_id, exchange)
        async with semaphore:
            try:
                result = await self._dispatch_one(holding, trigger, trigger_type)
            except AppError as e:
                error = e.message
            except Exception as e:
                error = str(e) or type(e).__name__
            else:
                if result.success:
                    self.credential_health.record_success(user_id, exchange)
                return result

        logger.error(f"❌ {label} SLTP sell failed for {trigger.symbol}: {error}")
        self.credential_health.record_failure(user_id, exchange, error)
        return ExecutionResult(
            user_id=user_id,
            exchange=exchange,
            success=False,
            error=error,
        )

    async def _dispatch_one(
        self,
        holding: Holding,
        trigger: TriggerRequest,
        trigger_type: TriggerType,
    ) -> ExecutionResult:
        """
        Sell for one tenant under its (user, exchange, symbol) lock.

        The timeout covers the holding re-read and the exchange calls. Once
        the order is placed the sale is booked and reported as a success no
        matter how long booking takes, so a slow database can never turn a
        filled sell into a retryable failure.
        """
        user_id, exchange, symbol = holding.user_id, holding.exchange, trigger.symbol
        label = _user_label(user_id, exchange)

        async with self.dispatch_locks.hold(user_id, exchange, symbol):
            try:
                outcome = await asyncio.wait_for(
                    self._sell(holding, trigger, trigger_type),
                    timeout=self.dispatch_timeout,
                )
            except asyncio.TimeoutError:
                raise TransportError(f"Dispatch timed out after {self.dispatch_timeout}s")

            if isinstance(outcome, ExecutionResult):
                return outcome

            remaining: Optional[float] = None
            try:
                remaining = await self.position_store.record_exit(
                    user_id, exchange, symbol, float(outcome.quantity), dust=outcome.dust
                )
            except Exception as e:
                logger.error(f"❌ {label} Sold but could not book exit for {symbol}: {e}")

        self._notify_orchestrator(
            outcome.holding, trigger, trigger_type, outcome.exit_price, float(outcome.quantity), remaining
        )

        return ExecutionResult(
            user_id=user_id,
            exchange=exchange,
            success=True,
            order_id=outcome.order.order_id,
            executed_qty=format_amount(outcome.quantity),
            executed_price=outcome.exit_price,
        )

    async def _sell(
        self,
        holding: Holding,
        trigger: TriggerRequest,
        trigger_type: TriggerType,
    ) -> Union[_Sale, ExecutionResult]:
        """Everything up to and including the sell order. Skips come back as results."""
        user_id, exchange, symbol = holding.user_id, holding.exchange, trigger.symbol
        label = _user_label(user_id, exchange)

        # Re-read under the lock: an overlapping trigger may have sold already
        current = await self.position_store.get_holding(user_id, exchange, symbol)
        if current is None or not current.is_open:
            logger.info(f"{label} No remaining {symbol} position, nothing to sell")
            return _skipped(holding, "No remaining position", "position_already_closed")

        age = self._position_age(current)
        if age is not None and age < self.warmup_seconds:
            wait_min = math.ceil((self.warmup_seconds - age) / 60)
            logger.info(
                f"{label} ⏰ WARMUP PERIOD: {symbol} opened {int(age // 60)} min ago, "
                f"skipping {trigger_type.value} (need {wait_min} more min)"
            )
            return _skipped(holding, f"Position opened {int(age)}s ago, inside entry warm-up", "warmup_period")

        if not self.credential_health.is_healthy(user_id, exchange):
            health = self.credential_health.get_health(user_id, exchange)
            reason = health.quarantine_reason if health else "quarantined"
            logger.warning(f"⏭️ {label} Credential quarantined ({reason}), skipping {symbol}")
            return _skipped(holding, f"Credential quarantined: {reason}", "quarantined")

        credential = await self.vault.get_decrypted_credential(user_id, exchange, require_active_trading=True)
        if credential is None:
            raise CredentialError(f"No active trading credential for {exchange}")

        gateway = self.gateway_factory(exchange, credential)
        del credential

        try:
            try:
                cancelled = await gateway.cancel_open_orders(symbol)
                if cancelled:
                    logger.info(f"{label} Cancelled {cancelled} open order(s) on {symbol}")
            except Exception as e:
                logger.warning(f"{label} Could not cancel open orders on {symbol}: {e}")

            filters = await gateway.get_symbol_filters(symbol)
            sell_qty = compute_sell_quantity(current.quantity, trigger.quantity_pct, filters.step_size)
            if sell_qty <= 0 or sell_qty < filters.min_qty:
                error = (
                    f"Sell quantity {format_amount(sell_qty)} below minimum lot size "
                    f"(step {filters.step_size}, min {filters.min_qty})"
                )
                logger.warning(f"{label} {error}")
                return _skipped(holding, error, "below_min_lot")

            order = await self._place_sell(gateway, symbol, sell_qty, trigger, trigger_type, filters.tick_size)
        finally:
            await gateway.close()

        executed_qty = order.executed_qty if order.executed_qty and order.executed_qty > 0 else sell_qty
        exit_price = order.fill_price if order.fill_price and order.fill_price > 0 else (trigger.trigger_price or 0.0)
        logger.info(
            f"✅ {label} Sold {format_amount(executed_qty)} {symbol} "
            f"(order {order.order_id}, status {order.status})"
        )
        return _Sale(
            holding=current,
            order=order,
            quantity=executed_qty,
            exit_price=exit_price,
            dust=float(filters.min_sellable),
        )

    def _position_age(self, holding: Holding) -> Optional[float]:
        """Seconds since the position was opened, or None when warm-up does not apply."""
        if self.warmup_seconds <= 0 or holding.opened_at is None:
            return None
        return max(0.0, (datetime.utcnow() - holding.opened_at).total_seconds())

    async def _place_sell(
        self,
        gateway: OrderGateway,
        symbol: str,
        quantity: Decimal,
        trigger: TriggerRequest,
        trigger_type: TriggerType,
        tick_size: Decimal,
    ) -> OrderResult:
        """LIMIT at the tick-floored trigger price for take profits, MARKET otherwise."""
        if trigger_type.is_take_profit and trigger.trigger_price and trigger.trigger_price > 0:
            price = floor_to_step(trigger.trigger_price, tick_size)
            return await gateway.place_sell_order(symbol, quantity, OrderType.LIMIT, price)
        return await gateway.place_sell_order(symbol, quantity, OrderType.MARKET)

    # =========================================================================
    # Orchestrator notification
    # =========================================================================

    def _notify_orchestrator(
        self,
        holding: Holding,
        trigger: TriggerRequest,
        trigger_type: TriggerType,
        exit_price: float,
        exit_qty: float,
        remaining: Optional[float],
    ):
        if self.notifier is None:
            return

        position_id = trigger.position_id or holding.position_id or f"position:{trigger.symbol}"
        entry_price = holding.avg_entry_price or exit_price
        pnl = (exit_price - entry_price) * exit_qty

        stop_exit = trigger_type in (TriggerType.SL_HIT, TriggerType.TRAIL_HIT)
        fully_closed = remaining is not None and remaining <= QUANTITY_EPSILON

        if stop_exit or fully_closed:
            if stop_exit:
                reason = "sl_hit"
            elif trigger_type.is_take_profit:
                reason = "tp_full"
            else:
                reason = "manual_close"
            delivery = self.notifier.position_closed(
                position_id=position_id,
                exit_price=exit_price,
                realized_pnl=pnl,
                close_reason=reason,
                exit_qty=exit_qty,
            )
        else:
            delivery = self.notifier.position_updated(
                position_id=position_id,
                update_type="partial_tp" if trigger_type.is_take_profit else "manual_update",
                current_price=exit_price,
                unrealized_pnl=pnl,
                quantity_remaining=remaining,
                notes=f"{trigger_type.value} sold {exit_qty}",
            )
        self.notifier.notify_in_background(delivery)

    async def _mark_credentials_used(self, results: List[ExecutionResult]):
        try:
            await self.vault.mark_used((r.user_id, r.exchange) for r in results if r.success)
        except Exception as e:
            logger.warning(f"Could not stamp last_used_at after SLTP dispatch: {e}")

    def _rejection(self, trigger: TriggerRequest, error: ValidationError) -> TriggerResponse:
        response = TriggerResponse(
            success=False,
            trigger_type=trigger.trigger_type,
            symbol=trigger.symbol,
            message=error.message,
        )
        response._status_code = error.status_code
        return response
