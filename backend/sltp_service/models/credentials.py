"""Credential models: per-user, per-exchange encrypted API keys."""

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from sltp_service.database import Base


class ExchangeType(str, enum.Enum):
    BINANCE = "binance"
    BITGET = "bitget"
    GATEIO = "gateio"
    MEXC = "mexc"


class ExchangeCredential(Base):
    """
    Exchange API credential for one user on one exchange.

    The unique constraint on (user_id, exchange) is the source of truth for
    "one credential per exchange per user"; reconnects overwrite the row.

    Secrets are only ever stored as Fernet tokens. key_version records which
    configured key produced them so older rows stay readable across rotations.
    """
    __tablename__ = "exchange_credentials"
    __table_args__ = (
        UniqueConstraint("user_id", "exchange", name="uq_exchange_credentials_user_exchange"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    exchange = Column(String, nullable=False)  # ExchangeType value

    # Encrypted fields
    encrypted_api_key = Column(Text, nullable=False)
    encrypted_secret_key = Column(Text, nullable=False)
    encrypted_passphrase = Column(Text, nullable=True)  # Bitget-style exchanges only
    key_version = Column(Integer, nullable=False, default=1)

    is_active = Column(Boolean, default=True, nullable=False)  # Can be disabled without deletion
    active_trading = Column(Boolean, default=False, nullable=False)  # Eligible for trigger dispatch
    label = Column(String(100), nullable=True)  # "My Binance Main"

    # Metadata
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_used_at = Column(DateTime, nullable=True)

    def get_user_label(self) -> str:
        """Log-safe tenant label"""
        return f"[User {self.user_id[:8]}...][{self.exchange.upper()}]"
