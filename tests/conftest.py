"""
Shared fixtures.

Every test gets its own SQLite file (WAL, busy_timeout) so concurrent
sessions really contend for the write lock the way they would in
production.
"""

from decimal import Decimal

import pytest

from hypehaus.gateway import MockGateway
from hypehaus.infra.sql import make_database
from hypehaus.model import ledger
from hypehaus.model.domain import TicketTier
from hypehaus.model.issuer import Issuer
from hypehaus.model.payments import PaymentBridge

FEE_RATE = Decimal("0.02")
TAX_RATE = Decimal("0.18")


def make_tier(tier_id="ga", *, price=10000, total=10, event_id="evt_1"):
    return TicketTier(
        id=tier_id,
        event_id=event_id,
        name=tier_id.upper(),
        price_minor_units=price,
        currency="INR",
        total_quantity=total,
    )


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path}/hypehaus-test.db"


@pytest.fixture
async def database(database_url):
    database = make_database(database_url)
    await database.create_schema()
    yield database
    await database.dispose()


@pytest.fixture
async def db(database):
    async with database.connect() as session:
        yield session


@pytest.fixture
async def tier(db):
    """10 x 100.00 INR general admission."""
    return await ledger.create_tier(db, make_tier())


@pytest.fixture
async def free_tier(db):
    return await ledger.create_tier(db, make_tier("free", price=0, total=5))


@pytest.fixture
def gateway():
    return MockGateway("rzp_test_key", "test-key-secret", "test-hook-secret")


@pytest.fixture
def bridge(gateway):
    return PaymentBridge(gateway, fee_rate=FEE_RATE, tax_rate=TAX_RATE)


@pytest.fixture
def issuer():
    return Issuer(fee_rate=FEE_RATE, tax_rate=TAX_RATE)
