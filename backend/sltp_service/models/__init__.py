"""
Database Models: domain-organized package.

All model classes are re-exported here:
    from sltp_service.models import ExchangeCredential, PositionHolding
"""

from sltp_service.database import Base  # noqa: F401 - re-exported for tests/conftest.py
from sltp_service.models.credentials import ExchangeType, ExchangeCredential
from sltp_service.models.trading import PositionHolding

__all__ = [
    "Base",
    # Credentials
    "ExchangeType", "ExchangeCredential",
    # Trading
    "PositionHolding",
]
