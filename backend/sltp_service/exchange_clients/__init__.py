"""
Order Gateway Abstraction Layer

Every exchange the trigger executor sells on is reached through an
OrderGateway bound to one tenant's credential.

Usage:
    from sltp_service.exchange_clients.factory import create_order_gateway

    gateway = create_order_gateway("binance", credential)
    try:
        filters = await gateway.get_symbol_filters("BTCUSDT")
        result = await gateway.place_sell_order("BTCUSDT", Decimal("0.5"))
    finally:
        await gateway.close()
"""

from sltp_service.exchange_clients.base import OrderGateway, OrderResult, OrderType, SymbolFilters

__all__ = ["OrderGateway", "OrderResult", "OrderType", "SymbolFilters"]
