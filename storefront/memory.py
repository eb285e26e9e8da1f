"""
Storefront — インメモリ台帳

SQL 実装と同じ Protocol を満たすインメモリ実装。
テストと STORE_BACKEND=memory（DB なしでの起動）で使う。

書き込みは即座にストアへ反映し、トランザクションは取り消し操作
（undo ログ）を積む。abort 時は undo を逆順に実行する。
在庫の取り消しは差分（減算の逆は加算）で行うため、並行する別の
トランザクションの書き込みを上書きしない。

各 I/O 境界で asyncio.sleep(0) によりイベントループへ制御を戻し、
並行実行時の割り込み（事前チェックと条件付き減算の間など）を再現する。
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
from uuid import uuid4

from .models import Order, OrderStatus, Product


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryTransaction:
    def __init__(self) -> None:
        self.undo: list[Callable[[], None]] = []

    def on_abort(self, action: Callable[[], None]) -> None:
        self.undo.append(action)


class MemoryStore:
    def __init__(self) -> None:
        self.products: dict[str, Product] = {}
        self.orders: dict[str, Order] = {}
        # 台帳への書き込み回数（冪等操作が書き込みを行わないことの確認用）
        self.writes = 0

    def record(self, txn: MemoryTransaction | None, undo: Callable[[], None]) -> None:
        self.writes += 1
        if txn is not None:
            txn.on_abort(undo)


class MemoryTransactionContext:
    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    async def begin(self) -> MemoryTransaction:
        await asyncio.sleep(0)
        return MemoryTransaction()

    async def commit(self, handle: MemoryTransaction) -> None:
        await asyncio.sleep(0)
        handle.undo.clear()

    async def abort(self, handle: MemoryTransaction) -> None:
        while handle.undo:
            handle.undo.pop()()


class MemoryProductRepository:
    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    async def find_by_id(
        self, product_id: str, txn: MemoryTransaction | None = None
    ) -> Product | None:
        await asyncio.sleep(0)
        return self.store.products.get(product_id)

    async def find_by_name(self, name: str) -> Product | None:
        await asyncio.sleep(0)
        for product in self.store.products.values():
            if product.name == name:
                return product
        return None

    def _adjust(self, product_id: str, delta: int) -> Product | None:
        product = self.store.products.get(product_id)
        if product is None:
            return None
        updated = product.model_copy(
            update={"stock": product.stock + delta, "updated_at": _now()}
        )
        self.store.products[product_id] = updated
        return updated

    async def conditional_decrement(
        self, product_id: str, quantity: int, txn: MemoryTransaction
    ) -> Product | None:
        await asyncio.sleep(0)
        # 条件判定と減算の間に await を挟まない（書き込みの原子性）
        product = self.store.products.get(product_id)
        if product is None or product.stock < quantity:
            return None
        updated = self._adjust(product_id, -quantity)
        self.store.record(txn, lambda: self._adjust(product_id, quantity))
        return updated

    async def increment(
        self, product_id: str, quantity: int, txn: MemoryTransaction
    ) -> Product | None:
        await asyncio.sleep(0)
        updated = self._adjust(product_id, quantity)
        if updated is not None:
            self.store.record(txn, lambda: self._adjust(product_id, -quantity))
        return updated

    async def create(self, data: dict, txn: MemoryTransaction | None = None) -> Product:
        await asyncio.sleep(0)
        now = _now()
        product = Product(
            id=data.get("id") or str(uuid4()),
            name=data["name"],
            price=data["price"],
            stock=data["stock"],
            created_at=now,
            updated_at=now,
        )
        self.store.products[product.id] = product
        self.store.record(txn, lambda: self.store.products.pop(product.id, None))
        return product

    async def update(
        self, product_id: str, patch: dict, txn: MemoryTransaction | None = None
    ) -> Product | None:
        await asyncio.sleep(0)
        product = self.store.products.get(product_id)
        if product is None:
            return None
        updated = Product(**{**product.model_dump(), **patch, "updated_at": _now()})
        self.store.products[product_id] = updated
        self.store.record(
            txn, lambda: self.store.products.__setitem__(product_id, product)
        )
        return updated


class MemoryOrderRepository:
    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    async def create(self, data: dict, txn: MemoryTransaction) -> Order:
        await asyncio.sleep(0)
        now = _now()
        order = Order(
            id=str(uuid4()),
            user_id=data["user_id"],
            items=data["items"],
            total=data["total"],
            status=data.get("status", OrderStatus.CREATED),
            created_at=now,
            updated_at=now,
        )
        self.store.orders[order.id] = order
        self.store.record(txn, lambda: self.store.orders.pop(order.id, None))
        return order

    async def find_by_id(
        self, order_id: str, txn: MemoryTransaction | None = None
    ) -> Order | None:
        await asyncio.sleep(0)
        return self.store.orders.get(order_id)

    async def update(
        self,
        order_id: str,
        patch: dict,
        txn: MemoryTransaction | None = None,
        expected_status: OrderStatus | None = None,
    ) -> Order | None:
        await asyncio.sleep(0)
        order = self.store.orders.get(order_id)
        if order is None:
            return None
        if expected_status is not None and order.status != expected_status:
            return None
        updated = order.model_copy(update={**patch, "updated_at": _now()})
        self.store.orders[order_id] = updated
        self.store.record(
            txn, lambda: self.store.orders.__setitem__(order_id, order)
        )
        return updated

    async def find_all(self) -> list[Order]:
        await asyncio.sleep(0)
        return sorted(
            self.store.orders.values(), key=lambda o: o.created_at, reverse=True
        )

    async def find_by_user_id(self, user_id: str) -> list[Order]:
        orders = await self.find_all()
        return [order for order in orders if order.user_id == user_id]
