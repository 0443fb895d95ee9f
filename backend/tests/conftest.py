import os
import tempfile
from datetime import datetime, timezone
from decimal import Decimal

# graindesk.config reads the environment at import time.
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), "test_graindesk.db")
os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///{_TEST_DB_PATH}"
os.environ["ENVIRONMENT"] = "test"
os.environ["API_V1_STR"] = "/api"
os.environ["SCHEDULER_ENABLED"] = "false"

import pytest
from sqlalchemy.orm import sessionmaker

from graindesk import models
from graindesk.database import Base, get_db, engine as app_engine
from graindesk.main import app
from graindesk.services.events import bus

TEST_ENGINE = app_engine

AS_OF = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=TEST_ENGINE, future=True
)


def override_get_db():
    """Test database session that uses the test engine."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(scope="function", autouse=True)
def setup_test_database():
    """
    Fresh tables and a clean event bus for every test.
    Also restores dependency overrides so test-specific ones don't leak.
    """
    original_overrides = dict(app.dependency_overrides)

    Base.metadata.drop_all(bind=TEST_ENGINE)
    Base.metadata.create_all(bind=TEST_ENGINE)
    bus.clear()

    yield

    bus.clear()
    app.dependency_overrides.clear()
    app.dependency_overrides.update(original_overrides)
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def published():
    """Collects every event published on the bus during the test."""
    events = []
    bus.subscribe(events.append)
    return events


@pytest.fixture
def desk(db_session):
    """Minimal book: an admin, two clients, a corn vessel and a 1000 t prime sale.

    Reference ZCN5 is quoted at 450 cts/bu.
    """
    admin = models.Client(name="Desk Admin", email="admin@desk.test", role=models.ClientRole.admin)
    seller = models.Client(name="Agri Trade", email="seller@desk.test")
    buyer = models.Client(name="Feed Mill", email="buyer@desk.test")
    db_session.add_all([admin, seller, buyer])
    db_session.flush()

    vessel = models.Vessel(
        name="MV Santos Star",
        product=models.ProductType.corn,
        total_quantity=Decimal("5000"),
        purchase_pricing_mode=models.PricingMode.prime,
        purchase_premium=Decimal("10"),
        purchase_reference="ZCN5",
        commercial_term=models.CommercialTerm.CFR,
    )
    db_session.add(vessel)
    db_session.flush()

    sale = models.Sale(
        client_id=seller.id,
        vessel_id=vessel.id,
        pricing_mode=models.PricingMode.prime,
        volume=Decimal("1000"),
        premium=Decimal("20"),
        reference="ZCN5",
    )
    db_session.add(sale)
    db_session.add(
        models.ReferencePrice(
            instrument="ZCN5",
            price=Decimal("450"),
            as_of=AS_OF,
            source="test",
        )
    )
    db_session.commit()
    for row in (admin, seller, buyer, vessel, sale):
        db_session.refresh(row)
    return {"admin": admin, "seller": seller, "buyer": buyer, "vessel": vessel, "sale": sale}


@pytest.fixture
def session_factory():
    """Session factory for code that opens its own sessions (scheduled jobs)."""
    return TestingSessionLocal
