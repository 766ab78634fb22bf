"""Trading models: open position holdings per tenant."""

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
)

from sltp_service.database import Base


class PositionHolding(Base):
    """
    Quantity of a symbol a tenant currently holds on one exchange.

    Written by order-fill handlers when entries fill and decremented
    when SLTP exits execute. A row with quantity 0 is a closed position;
    opened_at is reset when a closed row is reopened.
    """
    __tablename__ = "position_holdings"
    __table_args__ = (
        UniqueConstraint("user_id", "exchange", "symbol", name="uq_position_holdings_user_exchange_symbol"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    exchange = Column(String, nullable=False)
    symbol = Column(String, nullable=False, index=True)  # "BTCUSDT"
    quantity = Column(Float, nullable=False, default=0.0)
    avg_entry_price = Column(Float, nullable=True)
    position_id = Column(String, nullable=True)  # Orchestrator position id, if known
    opened_at = Column(DateTime, nullable=True)  # When the current position was entered

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
