# BoxOffice test suite - shared fixtures
#
# Every test gets:
# - a fresh SQLite database file under tmp_path
# - payment sessions in SQL (no redis needed)
# - the MockPay provider
# - an in-memory notification sink that records what would have been sent

from dataclasses import dataclass
from typing import List

import pytest

from boxoffice.admin import AdminService
from boxoffice.checkout import CheckoutService, CustomerDetails
from boxoffice.door import DoorValidationService
from boxoffice.infra.sql import Database, make_async_engine
from boxoffice.model import inventory
from boxoffice.model.inventory import InventoryLedger
from boxoffice.model.orders import OrderStore
from boxoffice.model.orm import Base
from boxoffice.model.paymentsession import new_store
from boxoffice.model.paymentsession._postgres import create_schema
from boxoffice.notify import (
    Notification,
    NotificationDispatcher,
    NotificationSink,
)
from boxoffice.payments import MockPay
from boxoffice.settings import Settings


class RecordingSink(NotificationSink):
    def __init__(self) -> None:
        self.sent: List[Notification] = []
        self.fail = False

    async def send(self, n: Notification) -> None:
        if self.fail:
            raise RuntimeError("mail relay down")
        self.sent.append(n)


@dataclass
class Services:
    settings: Settings
    db: Database
    ledger: InventoryLedger
    orders: OrderStore
    sessions: object
    dispatcher: NotificationDispatcher
    sink: RecordingSink
    checkout: CheckoutService
    admin: AdminService
    door: DoorValidationService


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'boxoffice.db'}",
        paysession_backend="pg",
        payment_provider="mock",
        mock_webhook_url="",
        session_secret="test-secret",
        reaper_interval_seconds=0,
    )


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def customer() -> CustomerDetails:
    return CustomerDetails(
        name="Ada Lovelace", email="ada@example.com", phone="+65 8123 4567"
    )


@pytest.fixture
async def db(settings):
    database = make_async_engine(settings.database_url)
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await inventory.create_schema(conn, settings.ticket_types)
        await create_schema(conn)
    yield database
    await database.dispose()


def build_services(settings, db, sink, provider=None) -> Services:
    ledger = InventoryLedger(db)
    orders = OrderStore(db)
    sessions = new_store(
        "pg", db=db, ttl_seconds=settings.reservation_ttl_seconds
    )
    dispatcher = NotificationDispatcher(sink)
    checkout = CheckoutService(
        settings, ledger, orders, sessions,
        provider or MockPay(settings.mock_secret), dispatcher,
    )
    return Services(
        settings=settings,
        db=db,
        ledger=ledger,
        orders=orders,
        sessions=sessions,
        dispatcher=dispatcher,
        sink=sink,
        checkout=checkout,
        admin=AdminService(settings, ledger, orders, dispatcher),
        door=DoorValidationService(orders),
    )


@pytest.fixture
async def services(settings, db, sink) -> Services:
    svc = build_services(settings, db, sink)
    yield svc
    await svc.dispatcher.drain()


@pytest.fixture
def make_services(settings, db, sink):
    """Services wired to a different payment provider."""
    def _make(provider=None) -> Services:
        return build_services(settings, db, sink, provider=provider)
    return _make


# a 1x1 PNG
PNG_BYTES = bytes.fromhex(
    "89504e470d0a1a0a0000000d4948445200000001000000010806000000"
    "1f15c4890000000d49444154789c6360000002000154a24f5d00000000"
    "49454e44ae426082"
)


@pytest.fixture
def png() -> bytes:
    return PNG_BYTES
