"""
Position Store

Answers "who holds this symbol, and how much?" for the trigger executor,
and books SLTP exits against the holdings so a second trigger cannot sell
quantity that is already gone.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from sltp_service.database import async_session_maker
from sltp_service.models import PositionHolding

logger = logging.getLogger(__name__)

# Float residue left by subtracting equal quantities
QUANTITY_EPSILON = 1e-12


@dataclass(frozen=True)
class Holding:
    user_id: str
    exchange: str
    symbol: str
    quantity: float
    avg_entry_price: Optional[float] = None
    position_id: Optional[str] = None
    opened_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.quantity > QUANTITY_EPSILON


def _to_holding(row: PositionHolding) -> Holding:
    return Holding(
        user_id=row.user_id,
        exchange=row.exchange,
        symbol=row.symbol,
        quantity=row.quantity or 0.0,
        avg_entry_price=row.avg_entry_price,
        position_id=row.position_id,
        opened_at=row.opened_at,
    )


class PositionStore(ABC):
    """Read side of open positions used by the trigger executor."""

    @abstractmethod
    async def get_holders(self, symbol: str, exchange: Optional[str] = None) -> List[Holding]:
        """Distinct tenants with a nonzero position in symbol."""
        pass

    @abstractmethod
    async def get_holding(self, user_id: str, exchange: str, symbol: str) -> Optional[Holding]:
        pass

    @abstractmethod
    async def record_exit(
        self, user_id: str, exchange: str, symbol: str, quantity: float, dust: float = 0.0
    ) -> float:
        """
        Book a sell against a holding.

        Args:
            dust: Remaining quantity below this is unsellable (the symbol's
                minimum lot) and closes the position

        Returns:
            Remaining quantity after the exit
        """
        pass


class DatabasePositionStore(PositionStore):
    """PositionStore over the position_holdings table."""

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        self._session_maker = session_maker or async_session_maker

    async def get_holders(self, symbol: str, exchange: Optional[str] = None) -> List[Holding]:
        async with self._session_maker() as db:
            query = select(PositionHolding).where(
                PositionHolding.symbol == symbol,
                PositionHolding.quantity > 0,
            )
            if exchange:
                query = query.where(PositionHolding.exchange == exchange.lower())
            result = await db.execute(query.order_by(PositionHolding.id))
            return [_to_holding(row) for row in result.scalars().all()]

    async def get_holding(self, user_id: str, exchange: str, symbol: str) -> Optional[Holding]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(PositionHolding).where(
                    PositionHolding.user_id == user_id,
                    PositionHolding.exchange == exchange.lower(),
                    PositionHolding.symbol == symbol,
                )
            )
            row = result.scalar_one_or_none()
            return _to_holding(row) if row else None

    async def record_exit(
        self, user_id: str, exchange: str, symbol: str, quantity: float, dust: float = 0.0
    ) -> float:
        async with self._session_maker() as db:
            result = await db.execute(
                select(PositionHolding).where(
                    PositionHolding.user_id == user_id,
                    PositionHolding.exchange == exchange.lower(),
                    PositionHolding.symbol == symbol,
                )
            )
            row = result.scalar_one_or_none()
            if not row:
                logger.warning(f"No holding to book exit against: {user_id[:8]}.../{exchange}/{symbol}")
                return 0.0

            remaining = max(0.0, (row.quantity or 0.0) - quantity)
            if remaining < dust or remaining <= QUANTITY_EPSILON:
                remaining = 0.0
            row.quantity = remaining
            row.updated_at = datetime.utcnow()
            await db.commit()
            return remaining

    async def upsert_holding(
        self,
        user_id: str,
        exchange: str,
        symbol: str,
        quantity: float,
        avg_entry_price: Optional[float] = None,
        position_id: Optional[str] = None,
        opened_at: Optional[datetime] = None,
    ) -> Holding:
        """
        Set a tenant's holding (used by order-fill handlers and seeding).

        opened_at defaults to now when the row is new or was closed, and is
        left alone when an open position is resized.
        """
        async with self._session_maker() as db:
            result = await db.execute(
                select(PositionHolding).where(
                    PositionHolding.user_id == user_id,
                    PositionHolding.exchange == exchange.lower(),
                    PositionHolding.symbol == symbol,
                )
            )
            row = result.scalar_one_or_none()
            now = datetime.utcnow()
            if row is None:
                row = PositionHolding(user_id=user_id, exchange=exchange.lower(), symbol=symbol)
                db.add(row)
            if opened_at is not None:
                row.opened_at = opened_at
            elif quantity > QUANTITY_EPSILON and (row.opened_at is None or (row.quantity or 0.0) <= QUANTITY_EPSILON):
                row.opened_at = now
            row.quantity = quantity
            if avg_entry_price is not None:
                row.avg_entry_price = avg_entry_price
            if position_id is not None:
                row.position_id = position_id
            row.updated_at = now
            await db.commit()
            await db.refresh(row)
            return _to_holding(row)
