"""SQL ledger tests. Require a disposable PostgreSQL database in TEST_DATABASE_URL."""

import asyncio
import os

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from storefront.commands import OrderLifecycleController
from storefront.errors import InsufficientStock, NotFound
from storefront.inventory import ReservationEngine
from storefront.models import Actor, OrderStatus, Role
from storefront.repositories import SqlOrderRepository, SqlProductRepository
from storefront.schema import create_schema, drop_schema
from storefront.transaction import SqlTransactionContext, TransactionCoordinator

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not TEST_DATABASE_URL, reason="TEST_DATABASE_URL not set"),
]

CUSTOMER = Actor(user_id="cust-1", role=Role.CUSTOMER)
ADMIN = Actor(user_id="admin-1", role=Role.ADMIN)


@pytest.fixture()
async def session_factory():
    engine = create_async_engine(TEST_DATABASE_URL)
    await drop_schema(engine)
    await create_schema(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await drop_schema(engine)
    await engine.dispose()


@pytest.fixture()
def products(session_factory):
    return SqlProductRepository(session_factory)


@pytest.fixture()
def orders(session_factory):
    return SqlOrderRepository(session_factory)


@pytest.fixture()
def coordinator(session_factory):
    return TransactionCoordinator(SqlTransactionContext(session_factory))


@pytest.fixture()
def controller(products, orders, coordinator):
    return OrderLifecycleController(orders, ReservationEngine(products), coordinator)


async def test_conditional_decrement_respects_stock(products, coordinator):
    product = await products.create({"name": "Widget", "price": 100, "stock": 2})

    async def take(txn):
        return (
            await products.conditional_decrement(product.id, 2, txn),
            await products.conditional_decrement(product.id, 1, txn),
        )

    first, second = await coordinator.with_transaction(take)

    assert first.stock == 0
    assert second is None
    assert (await products.find_by_id(product.id)).stock == 0


async def test_aborted_transaction_discards_decrement(products, coordinator):
    product = await products.create({"name": "Widget", "price": 100, "stock": 5})

    async def take_then_fail(txn):
        await products.conditional_decrement(product.id, 3, txn)
        raise InsufficientStock(product.id)

    with pytest.raises(InsufficientStock):
        await coordinator.with_transaction(take_then_fail)

    assert (await products.find_by_id(product.id)).stock == 5


async def test_order_round_trip_keeps_item_order(products, controller, orders):
    p1 = await products.create({"name": "P1", "price": 1000, "stock": 10})
    p2 = await products.create({"name": "P2", "price": 250, "stock": 10})

    order = await controller.create(CUSTOMER.user_id, [(p2.id, 4), (p1.id, 1)])
    loaded = await orders.find_by_id(order.id)

    assert [i.product_id for i in loaded.items] == [p2.id, p1.id]
    assert loaded.total == 2000
    assert [o.id for o in await orders.find_by_user_id(CUSTOMER.user_id)] == [order.id]
    assert len(await orders.find_all()) == 1


async def test_lifecycle_against_database(products, controller):
    product = await products.create({"name": "Widget", "price": 500, "stock": 3})

    order = await controller.create(CUSTOMER.user_id, [(product.id, 3)])
    assert (await products.find_by_id(product.id)).stock == 0

    paid = await controller.pay(order.id, CUSTOMER)
    assert paid.status == OrderStatus.PAID

    cancelled = await controller.cancel(order.id, ADMIN)
    assert cancelled.status == OrderStatus.CANCELLED
    assert (await products.find_by_id(product.id)).stock == 3


async def test_expected_status_guards_update(products, controller, orders):
    product = await products.create({"name": "Widget", "price": 500, "stock": 3})
    order = await controller.create(CUSTOMER.user_id, [(product.id, 1)])

    stale = await orders.update(
        order.id, {"status": OrderStatus.PAID}, expected_status=OrderStatus.CANCELLED
    )

    assert stale is None
    assert (await orders.find_by_id(order.id)).status == OrderStatus.CREATED


async def test_missing_product(controller):
    with pytest.raises(NotFound):
        await controller.create(CUSTOMER.user_id, [("missing", 1)])


async def test_concurrent_creates_sell_last_unit_once(products, controller, orders):
    product = await products.create({"name": "Last One", "price": 700, "stock": 1})

    results = await asyncio.gather(
        controller.create("cust-a", [(product.id, 1)]),
        controller.create("cust-b", [(product.id, 1)]),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(succeeded) == 1
    assert len(failed) == 1
    assert isinstance(failed[0], InsufficientStock)
    assert (await products.find_by_id(product.id)).stock == 0
    assert len(await orders.find_all()) == 1
