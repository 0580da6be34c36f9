import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from loguru import logger

from ticketgate.infra.sql import make_async_engine
from ticketgate.model.schema import create_schema
from ticketgate.model.store import TicketStore
from ticketgate.model.webhookseen._sql import WebhookSeenStore
from ticketgate.notify import Notifier
from ticketgate.payments import MockPay, mock_event
from ticketgate.services.reconciler import Reconciler
from ticketgate.services.reservation import ReservationService

DAY = 24 * 3600
T0 = 4_000_000_000.0

MOCK_SECRET = "test-mock-secret"
CODE_SECRET = "test-code-secret"
RESERVATION_TTL = 30 * 60


class FakeClock:
    def __init__(self, t: float = T0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def log_records():
    """Everything loguru emits during the test, as record dicts."""
    records = []
    sink_id = logger.add(lambda m: records.append(m.record), level="DEBUG")
    yield records
    logger.remove(sink_id)


@pytest_asyncio.fixture
async def database(tmp_path):
    # a file, not :memory:, so that concurrent sessions see one database
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'ticketgate.db'}"
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    yield SessionAsync, gated
    await engine.dispose()


@pytest_asyncio.fixture
async def new_store(database):
    """Factory: one TicketStore per call, each on its own session."""
    SessionAsync, gated = database
    sessions = []

    def _make() -> TicketStore:
        session = SessionAsync()
        sessions.append(session)
        return TicketStore(db=session, gated=gated)

    yield _make
    for s in sessions:
        await s.close()


@pytest.fixture
def store(new_store):
    return new_store()


@pytest.fixture
def seen(store):
    return WebhookSeenStore(db=store.db, gated=store.gated)


@pytest.fixture
def adapter():
    return MockPay(MOCK_SECRET)


@pytest.fixture
def notifier():
    return AsyncMock(spec=Notifier)


@pytest.fixture
def seed(store, clock):
    """Create an event with one ticket template."""
    async def _seed(*, quantity=10, price=5000, starts_in=30 * DAY,
                    duration=4 * 3600, tier="free", organizer_id="org-1",
                    sale_start=None, sale_end=None, currency="eur"):
        ev = await store.create_event(
            organizer_id=organizer_id,
            name="Night Show",
            starts_at=clock() + starts_in,
            ends_at=clock() + starts_in + duration,
            organizer_tier=tier,
            now=clock(),
        )
        tpl = await store.create_template(
            event_id=ev.id,
            name="General Admission",
            type="general",
            price=price,
            quantity=quantity,
            currency=currency,
            sale_start=sale_start,
            sale_end=sale_end,
            now=clock(),
        )
        return ev, tpl
    return _seed


@pytest.fixture
def reservations(store, clock):
    return ReservationService(store, ttl_seconds=RESERVATION_TTL, clock=clock)


@pytest.fixture
def reserve(reservations):
    async def _reserve(tpl, buyer_id="buyer-1", session_ref=None):
        return await reservations.reserve(
            template_id=tpl.id,
            buyer_id=buyer_id,
            holder_name="Ada Lovelace",
            holder_email="ada@example.com",
            checkout_session_ref=session_ref or f"cs_{buyer_id}_{tpl.id}",
        )
    return _reserve


@pytest.fixture
def reconciler(store, adapter, seen, notifier, clock):
    return Reconciler(
        store, adapter, seen, notifier,
        code_secret=CODE_SECRET, code_prefix="ENX", clock=clock,
    )


@pytest.fixture
def deliver(adapter, reconciler):
    """Sign a processor notification for `ticket` and reconcile it."""
    async def _deliver(kind, ticket, **overrides):
        fields = dict(
            session_ref=ticket.checkout_session_ref,
            buyer_id=ticket.buyer_id,
            event_id=ticket.event_id,
            amount=ticket.price_paid,
        )
        fields.update(overrides)
        payload = json.dumps(mock_event(kind, **fields)).encode()
        return await reconciler.reconcile(payload, adapter.sign(payload))
    return _deliver
