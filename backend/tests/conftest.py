"""
Shared test fixtures for the SLTP service tests.

Provides reusable fixtures for:
- Fernet key ring configured on settings
- Async database sessions (throwaway SQLite file)
- Vault / position store bound to the test database
- Recording order gateways
"""

from decimal import Decimal

import pytest
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import sltp_service.encryption as enc_module
from sltp_service.config import settings
from sltp_service.database import build_engine
from sltp_service.exchange_clients import OrderGateway, OrderResult, OrderType, SymbolFilters

# ---------------------------------------------------------------------------
# Encryption keys
# ---------------------------------------------------------------------------


@pytest.fixture
def fernet_key():
    return Fernet.generate_key().decode()


@pytest.fixture
def encryption_settings(monkeypatch, fernet_key):
    """Configure a single version-1 key and reset the cached key ring."""
    monkeypatch.setattr(settings, "encryption_keys", f"1:{fernet_key}")
    monkeypatch.setattr(settings, "encryption_key", "")
    monkeypatch.setattr(settings, "active_encryption_key_version", 0)
    enc_module.reset_key_ring()
    yield settings
    enc_module.reset_key_ring()


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def async_engine(tmp_path):
    """Create a throwaway SQLite database for testing.

    File-backed: concurrent dispatches each open their own connection.
    """
    from sltp_service.models import Base

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'sltp_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_maker):
    """Provide an async database session for direct assertions."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def vault(session_maker, encryption_settings):
    from sltp_service.services.credential_vault import CredentialVault

    return CredentialVault(session_maker=session_maker)


@pytest.fixture
def position_store(session_maker):
    from sltp_service.services.position_store import DatabasePositionStore

    return DatabasePositionStore(session_maker=session_maker)


# ---------------------------------------------------------------------------
# Order gateways
# ---------------------------------------------------------------------------


class RecordingGateway(OrderGateway):
    """In-memory OrderGateway that records every call.

    fail_with: exception raised from place_sell_order
    order_id: id reported for successful orders
    fill_price: reported fill price (0.0 = not reported)
    """

    def __init__(
        self,
        exchange="binance",
        credential=None,
        filters=None,
        fail_with=None,
        order_id="ord-1",
        fill_price=0.0,
        cancel_error=None,
    ):
        self.exchange = exchange
        self.credential = credential
        self.filters = filters or SymbolFilters(
            step_size=Decimal("0.001"), tick_size=Decimal("0.01"), min_qty=Decimal("0.001")
        )
        self.fail_with = fail_with
        self.order_id = order_id
        self.fill_price = fill_price
        self.cancel_error = cancel_error
        self.orders = []
        self.cancel_calls = []
        self.closed = False

    async def get_symbol_filters(self, symbol):
        return self.filters

    async def cancel_open_orders(self, symbol):
        self.cancel_calls.append(symbol)
        if self.cancel_error:
            raise self.cancel_error
        return 0

    async def place_sell_order(self, symbol, quantity, order_type=OrderType.MARKET, price=None):
        self.orders.append({"symbol": symbol, "quantity": quantity, "type": order_type, "price": price})
        if self.fail_with:
            raise self.fail_with
        return OrderResult(order_id=self.order_id, executed_qty=quantity, fill_price=self.fill_price)

    async def close(self):
        self.closed = True


@pytest.fixture
def recording_gateway_cls():
    return RecordingGateway
