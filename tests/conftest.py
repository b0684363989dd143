"""
Pytest configuration and fixtures.

Tests run against an in-memory SQLite database through aiosqlite. A single
shared connection (StaticPool) keeps the schema alive for the whole test, so
only one session may have a transaction open at a time.
"""
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Tuple
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from impact_settlement.config import Settings
from impact_settlement.core.config_store import ConfigStore
from impact_settlement.core.settlement import SettlementEngine
from impact_settlement.core.users import RegistrationData
from impact_settlement.core.wallets import WalletTotals
from impact_settlement.database.models import SKU, Base, Merchant, PaymentMode, Transaction, User
from impact_settlement.integrations.stripe_client import GatewayIntent, StripeGateway

TEST_WEBHOOK_SECRET = "whsec_test_fake_secret"


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=TEST_WEBHOOK_SECRET,
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url=None,
        gateway_timeout_seconds=2.0,
        app_name="impact-settlement-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, Any]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest correctly on SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@dataclass
class Seed:
    skus: Dict[str, SKU]
    merchant: Merchant
    unconnected_merchant: Merchant


@pytest_asyncio.fixture
async def seed(test_db: AsyncSession) -> Seed:
    """Default config, one SKU per payment mode and two merchants."""
    await ConfigStore().ensure_defaults(test_db)

    skus = {
        "CLAIM-01": SKU(
            code="CLAIM-01", name="Claimed bottle", payment_mode=PaymentMode.CLAIM.value,
            price=Decimal("5.00"), impact_multiplier=Decimal("1"),
        ),
        "PAY-01": SKU(
            code="PAY-01", name="Paid removal", payment_mode=PaymentMode.PAY.value,
            price=Decimal("10.00"), impact_multiplier=Decimal("1"),
        ),
        "GIFT-01": SKU(
            code="GIFT-01", name="Gift card", payment_mode=PaymentMode.GIFT_CARD.value,
            price=Decimal("2.50"), impact_multiplier=Decimal("1"), requires_validation=True,
        ),
        "ALLOC-01": SKU(
            code="ALLOC-01", name="Partner allocation", payment_mode=PaymentMode.ALLOCATION.value,
            price=Decimal("0"), impact_multiplier=Decimal("1"),
        ),
        "ALLOC-LOW": SKU(
            code="ALLOC-LOW", name="Low threshold allocation",
            payment_mode=PaymentMode.ALLOCATION.value, price=Decimal("0"),
            impact_multiplier=Decimal("2"), corsair_threshold=Decimal("1.00"),
        ),
        "ECOM-SPLIT-01": SKU(
            code="ECOM-SPLIT-01", name="E-commerce plastic fee",
            payment_mode=PaymentMode.ALLOCATION.value, price=Decimal("0"),
            impact_multiplier=Decimal("1"),
        ),
        "OLD-01": SKU(
            code="OLD-01", name="Retired", payment_mode=PaymentMode.CLAIM.value,
            price=Decimal("1.00"), impact_multiplier=Decimal("1"), is_active=False,
        ),
    }
    merchant = Merchant(
        name="Green Shop",
        email="shop@example.com",
        stripe_account_id="acct_test_123",
        stripe_charges_enabled=True,
    )
    unconnected = Merchant(name="Offline Shop", email="offline@example.com")

    test_db.add_all([*skus.values(), merchant, unconnected])
    await test_db.commit()
    return Seed(skus=skus, merchant=merchant, unconnected_merchant=unconnected)


@pytest.fixture
def make_registration() -> Callable[..., RegistrationData]:
    """Factory for registration data at a given completeness."""

    def _make(email: str = "a@x.com", level: str = "full", **overrides: Any) -> RegistrationData:
        data: Dict[str, Any] = {"email": email}
        if level in ("standard", "full"):
            data.update(first_name="Ada", last_name="Lovelace", terms_accepted=True)
        if level == "full":
            data.update(
                date_of_birth=date(1990, 5, 17),
                street="1 Harbour Road",
                city="Genoa",
                postal_code="16121",
                country="IT",
            )
        data.update(overrides)
        return RegistrationData(**data)

    return _make


class RecordingDispatcher:
    """Side-effect dispatcher that remembers every notification."""

    def __init__(self) -> None:
        self.confirmed: List[Tuple[uuid.UUID, uuid.UUID, bool]] = []
        self.threshold: List[Tuple[uuid.UUID, WalletTotals, uuid.UUID]] = []

    async def notify_transaction_confirmed(
        self, transaction: Transaction, user: User, certificate_eligible: bool
    ) -> None:
        self.confirmed.append((transaction.id, user.id, certificate_eligible))

    async def notify_threshold_achieved(
        self, user: User, totals: WalletTotals, transaction: Transaction
    ) -> None:
        self.threshold.append((user.id, totals, transaction.id))


@pytest.fixture
def recorder() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def mock_gateway() -> AsyncMock:
    gateway = AsyncMock(spec=StripeGateway)
    gateway.create_payment_intent.return_value = GatewayIntent(
        id="pi_test_123", client_secret="pi_test_123_secret_abc"
    )
    gateway.create_checkout_session.return_value = GatewayIntent(
        id="cs_test_123", url="https://checkout.stripe.com/c/pay/cs_test_123"
    )
    return gateway


@pytest.fixture
def engine(
    test_settings: Settings, mock_gateway: AsyncMock, recorder: RecordingDispatcher
) -> SettlementEngine:
    return SettlementEngine(gateway=mock_gateway, side_effects=recorder, settings=test_settings)
