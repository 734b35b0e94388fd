import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from parking_settlement import models  # noqa: F401
from parking_settlement.config import SettlementServiceCFG
from parking_settlement.database import Base
from parking_settlement.errors import ProviderError
from parking_settlement.models import (
    BillingUnit, ParkingSession, ParkingSpot, SpotState, TariffRule
)
from parking_settlement.orchestrator import ExitOrchestrator, RetryPolicy
from parking_settlement.overstay import ReservationOverstayAdjuster
from parking_settlement.services import ProviderReference, ProviderStatus
from parking_settlement.tariffs import TariffCatalogCache

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
PARKING_ID = 1
TEMPLATE_ID = 10


class FrozenClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeGateway:
    def __init__(self):
        self.created = []
        self.cancelled = []
        self.statuses = {}
        self.failures = 0

    async def create_qr_or_link(self, amount, plate_number, method):
        if self.failures:
            self.failures -= 1
            raise ProviderError("provider unavailable")
        reference = f"pref-{len(self.created) + 1}"
        self.created.append((reference, amount, plate_number, method))
        return ProviderReference(
            reference=reference,
            checkout_url=f"https://pay.example/checkout/{reference}",
            qr_data=f"qr:{reference}",
        )

    async def poll_status(self, external_reference):
        return self.statuses.get(external_reference, ProviderStatus.PENDING)

    async def cancel(self, external_reference):
        self.cancelled.append(external_reference)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as db:
        yield db


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def config():
    cfg = SettlementServiceCFG()
    cfg.provider_url = "https://pay.example"
    cfg.provider_token = "test-token"
    cfg.transfer_alias = "parking.lot.alias"
    cfg.transfer_bank = "Banco Test"
    return cfg


@pytest.fixture
def orchestrator(gateway, clock, config):
    return ExitOrchestrator(
        gateway=gateway,
        tariff_cache=TariffCatalogCache(ttl_seconds=0),
        adjuster=ReservationOverstayAdjuster(Decimal("200")),
        retry_policy=RetryPolicy(max_attempts=3),
        config=config,
        clock=clock,
    )


@pytest.fixture
async def parking(db_session):
    """Spot 1 uses template 10; spot 2 has no template. Car tariffs for both paths."""
    spot = ParkingSpot(parking_id=PARKING_ID, number=1, template_id=TEMPLATE_ID, state=SpotState.OCCUPIED)
    bare_spot = ParkingSpot(parking_id=PARKING_ID, number=2, template_id=None, state=SpotState.OCCUPIED)
    db_session.add_all([spot, bare_spot])
    db_session.add_all([
        TariffRule(parking_id=PARKING_ID, template_id=TEMPLATE_ID, vehicle_category="car",
                   billing_unit=BillingUnit.HOURLY, base_price=Decimal("200"), incremental_price=Decimal("150"),
                   effective_from=NOW - timedelta(days=30)),
        TariffRule(parking_id=PARKING_ID, template_id=TEMPLATE_ID, vehicle_category="car",
                   billing_unit=BillingUnit.DAILY, base_price=Decimal("1500"), incremental_price=Decimal("0"),
                   effective_from=NOW - timedelta(days=30)),
    ])
    await db_session.commit()
    return {"spot": spot, "bare_spot": bare_spot}


async def open_session(db, plate="AB123CD", spot_id=None, entered=timedelta(hours=3, minutes=10),
                       billing_unit=BillingUnit.HOURLY, agreed_price=Decimal("0"), category="car",
                       now=NOW):
    session = ParkingSession(
        parking_id=PARKING_ID,
        license_plate=plate,
        spot_id=spot_id,
        vehicle_category=category,
        entry_timestamp=now - entered,
        billing_unit=billing_unit,
        agreed_price=agreed_price,
    )
    db.add(session)
    await db.commit()
    await db.refresh(session)
    return session


async def count(db, model):
    result = await db.execute(select(func.count()).select_from(model))
    return result.scalar_one()


@pytest.fixture
async def client(session_factory, orchestrator, config):
    from parking_settlement.main import app, get_config, get_db, get_orchestrator

    async def override_get_db():
        async with session_factory() as db:
            yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_config] = lambda: config

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()
