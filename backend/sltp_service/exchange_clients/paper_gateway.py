"""
Paper Trading Order Gateway

Simulates sell execution without hitting real exchanges. Used for every
exchange while PAPER_TRADING is enabled, and as the reference
implementation of the OrderGateway contract.
"""

import logging
import uuid
from decimal import Decimal
from typing import Dict, List, Optional

from sltp_service.exceptions import CredentialError, ExchangeRejectionError
from sltp_service.exchange_clients.base import OrderGateway, OrderResult, OrderType, SymbolFilters
from sltp_service.schemas.credentials import DecryptedCredential

logger = logging.getLogger(__name__)

DEFAULT_FILTERS = SymbolFilters(
    step_size=Decimal("0.00001"),
    tick_size=Decimal("0.01"),
    min_qty=Decimal("0.00001"),
)


class PaperOrderGateway(OrderGateway):
    """
    Simulated order gateway for paper trading.

    Orders fill immediately. MARKET fills report fill_price 0.0 (no live
    price feed), LIMIT fills report the limit price.
    """

    def __init__(
        self,
        exchange: str,
        credential: DecryptedCredential,
        symbol_filters: Optional[Dict[str, SymbolFilters]] = None,
    ):
        if not credential.api_key or not credential.secret_key:
            raise CredentialError("Paper gateway requires an API key and secret")
        self.exchange = exchange
        self._symbol_filters = symbol_filters or {}
        self.orders: List[Dict] = []
        self.closed = False

    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        return self._symbol_filters.get(symbol, DEFAULT_FILTERS)

    async def cancel_open_orders(self, symbol: str) -> int:
        # Paper orders fill instantly, nothing ever rests on the book
        return 0

    async def place_sell_order(
        self,
        symbol: str,
        quantity: Decimal,
        order_type: OrderType = OrderType.MARKET,
        price: Optional[Decimal] = None,
    ) -> OrderResult:
        if quantity <= 0:
            raise ExchangeRejectionError(f"Invalid quantity {quantity} for {symbol}")
        if order_type == OrderType.LIMIT and (price is None or price <= 0):
            raise ExchangeRejectionError(f"LIMIT order on {symbol} requires a positive price")

        order_id = f"paper-{uuid.uuid4().hex[:16]}"
        fill_price = float(price) if order_type == OrderType.LIMIT else 0.0
        self.orders.append({
            "order_id": order_id,
            "symbol": symbol,
            "side": "SELL",
            "type": order_type.value,
            "quantity": str(quantity),
            "price": fill_price,
        })
        logger.info(f"📝 PAPER {order_type.value} SELL {symbol} qty={quantity} on {self.exchange} → {order_id}")
        return OrderResult(order_id=order_id, executed_qty=quantity, fill_price=fill_price)

    async def close(self):
        self.closed = True
