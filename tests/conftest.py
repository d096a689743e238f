import os
import tempfile

# rafflepay.server reads its configuration at import time
_TMP = tempfile.mkdtemp(prefix="rafflepay-test-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/server.db")
os.environ.setdefault("PAYMENT_PROVIDER", "mock")
os.environ.setdefault("PAYSESSION_BACKEND", "sql")
os.environ.setdefault("INVENTORY_SIZE", "100")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from rafflepay.errors import PaymentProviderError  # noqa: E402
from rafflepay.infra.sql import make_async_engine  # noqa: E402
from rafflepay.model.inventory import InventoryStore  # noqa: E402
from rafflepay.model.paymentsession._sql import create_schema  # noqa: E402
from rafflepay.model.unit import Base  # noqa: E402
from rafflepay.payments import MockPay  # noqa: E402
from rafflepay.reclaimer import ExpiryReclaimer  # noqa: E402
from rafflepay.reconciliation import ReconciliationHandler  # noqa: E402
from rafflepay.reservations import (  # noqa: E402
    Buyer, PaymentCorrelator, ReservationEngine
)

INVENTORY = 10
UNIT_PRICE = 300
T0 = 1_760_000_000.0


class FakeClock:
    def __init__(self, t: float = T0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> float:
        self.t += seconds
        return self.t


class FailingCreatePay(MockPay):
    """Provider that is down for payment creation."""

    async def create_payment(self, **kw):
        raise PaymentProviderError("provider unavailable", status_code=503)


class FailingLookupPay(MockPay):
    """Provider that creates payments but cannot be queried."""

    async def get_payment(self, payment_id):
        raise PaymentProviderError("timeout talking to provider")


@pytest_asyncio.fixture
async def db(tmp_path):
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/units.db"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await create_schema(conn)
    yield engine, SessionAsync, gated
    await engine.dispose()


@pytest_asyncio.fixture
async def store(db):
    _, SessionAsync, gated = db
    s = InventoryStore(session_factory=SessionAsync, gated=gated)
    await s.initialize(INVENTORY)
    return s


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return MockPay()


def make_engine(store, provider, clock):
    correlator = PaymentCorrelator(
        store, provider,
        unit_price=UNIT_PRICE,
        currency="brl",
        payer_email="pagamentos@example.com",
        payer_document="00000000191",
    )
    return ReservationEngine(store, correlator, capacity=INVENTORY,
                             clock=clock)


@pytest.fixture
def engine(store, provider, clock):
    return make_engine(store, provider, clock)


@pytest.fixture
def reconciler(store, provider):
    return ReconciliationHandler(store, provider)


@pytest.fixture
def reclaimer(store, clock):
    return ExpiryReclaimer(store, timeout_seconds=3600, period_seconds=300,
                           clock=clock)


@pytest.fixture
def buyer():
    return Buyer(name="Maria Silva", phone="11999990000",
                 document="123.456.789-09")


@pytest.fixture
def other_buyer():
    return Buyer(name="Joao Souza", phone="21988887777")
