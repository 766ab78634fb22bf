"""
OrderGateway Abstract Base Class

This module defines the interface the trigger executor uses to place sell
orders on a tenant's exchange account. Each gateway instance is bound to one
tenant's decrypted credential and is closed as soon as that tenant's
dispatch finishes.

Exchange-specific wire formats live behind this interface; the executor
only sees SymbolFilters and OrderResult.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Union


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


@dataclass(frozen=True)
class SymbolFilters:
    """Lot-size and price constraints for one symbol."""
    step_size: Decimal
    tick_size: Decimal
    min_qty: Decimal = Decimal("0")

    @property
    def min_sellable(self) -> Decimal:
        """Smallest quantity an order can carry; anything less is dust."""
        return max(self.step_size, self.min_qty)


@dataclass
class OrderResult:
    """Normalized result of a placed sell order."""
    order_id: Union[str, int]
    executed_qty: Decimal
    fill_price: float  # 0.0 when the exchange did not report a fill yet
    status: str = "FILLED"


class OrderGateway(ABC):
    """
    Abstract base class for per-tenant order placement.

    Design Philosophy:
    - Quantities are Decimals already floored to the symbol's step size
    - Exchange refusals raise ExchangeRejectionError
    - Network failures and timeouts raise TransportError
    - Nothing here retries; a failed sell is reported, never re-sent
    """

    exchange: str = ""

    @abstractmethod
    async def get_symbol_filters(self, symbol: str) -> SymbolFilters:
        """Get LOT_SIZE / PRICE_FILTER data for a symbol."""
        pass

    @abstractmethod
    async def cancel_open_orders(self, symbol: str) -> int:
        """
        Cancel resting orders on a symbol so locked balance can be sold.

        Returns:
            Number of orders cancelled
        """
        pass

    @abstractmethod
    async def place_sell_order(
        self,
        symbol: str,
        quantity: Decimal,
        order_type: OrderType = OrderType.MARKET,
        price: Optional[Decimal] = None,
    ) -> OrderResult:
        """
        Place a SELL order.

        Args:
            symbol: Trading pair (e.g., "BTCUSDT")
            quantity: Base quantity, already floored to the step size
            order_type: MARKET or LIMIT
            price: Limit price (LIMIT only), already floored to the tick size

        Returns:
            OrderResult
        """
        pass

    async def close(self):
        """Release connections held by the gateway."""
        return None
