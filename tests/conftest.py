import pytest

from storefront.commands import OrderLifecycleController
from storefront.inventory import ReservationEngine
from storefront.memory import (
    MemoryOrderRepository,
    MemoryProductRepository,
    MemoryStore,
    MemoryTransactionContext,
)
from storefront.models import Actor, Role
from storefront.transaction import TransactionCoordinator


class RecordingPublisher:
    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)

    @property
    def event_types(self):
        return [type(e).__name__ for e in self.events]


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def products(store):
    return MemoryProductRepository(store)


@pytest.fixture()
def orders(store):
    return MemoryOrderRepository(store)


@pytest.fixture()
def coordinator(store):
    return TransactionCoordinator(MemoryTransactionContext(store))


@pytest.fixture()
def engine(products):
    return ReservationEngine(products)


@pytest.fixture()
def publisher():
    return RecordingPublisher()


@pytest.fixture()
def controller(orders, engine, coordinator, publisher):
    return OrderLifecycleController(orders, engine, coordinator, publisher)


@pytest.fixture()
def add_product(products):
    async def _add(name="Widget", price=1000, stock=10):
        return await products.create({"name": name, "price": price, "stock": stock})

    return _add


@pytest.fixture()
def customer():
    return Actor(user_id="user-1", role=Role.CUSTOMER)


@pytest.fixture()
def other_customer():
    return Actor(user_id="user-2", role=Role.CUSTOMER)


@pytest.fixture()
def admin():
    return Actor(user_id="admin-1", role=Role.ADMIN)
