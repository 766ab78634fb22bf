"""
Order Gateway Factory

Maps exchange names to OrderGateway implementations and builds one gateway
per tenant dispatch from that tenant's decrypted credential.

Live exchange adapters register themselves with register_gateway(); while
PAPER_TRADING is enabled every known exchange falls back to the paper
gateway.
"""

from typing import Callable, Dict

from sltp_service.config import settings
from sltp_service.exceptions import ExchangeRejectionError
from sltp_service.exchange_clients.base import OrderGateway
from sltp_service.exchange_clients.paper_gateway import PaperOrderGateway
from sltp_service.models.credentials import ExchangeType
from sltp_service.schemas.credentials import DecryptedCredential

GatewayBuilder = Callable[[str, DecryptedCredential], OrderGateway]

_gateway_registry: Dict[str, GatewayBuilder] = {}


def register_gateway(exchange: str, builder: GatewayBuilder):
    """Register a gateway builder for an exchange name."""
    _gateway_registry[exchange.lower()] = builder


def unregister_gateway(exchange: str):
    _gateway_registry.pop(exchange.lower(), None)


def create_order_gateway(exchange: str, credential: DecryptedCredential) -> OrderGateway:
    """
    Factory function to create the order gateway for one tenant.

    Args:
        exchange: Exchange name ("binance", "bitget", ...)
        credential: Decrypted credential, used only for the gateway's lifetime

    Returns:
        OrderGateway instance

    Raises:
        ExchangeRejectionError: No gateway is available for the exchange
    """
    name = exchange.lower()
    builder = _gateway_registry.get(name)
    if builder is None and settings.paper_trading and name in {e.value for e in ExchangeType}:
        builder = PaperOrderGateway
    if builder is None:
        raise ExchangeRejectionError(f"Unsupported exchange: {exchange}")
    return builder(name, credential)
