"""
Storefront — リポジトリ（商品台帳・注文台帳）

コアはここで定義する Protocol にのみ依存する。
SQL 実装は SQLAlchemy の text() で素の SQL を発行する。

txn 引数にはトランザクションハンドル（SQL 実装では AsyncSession）を渡す。
None の場合は呼び出しごとに独立したセッションを開き、即座にコミットする。
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import Order, OrderItem, OrderStatus, Product


class ProductRepository(Protocol):
    async def find_by_id(self, product_id: str, txn: Any = None) -> Product | None: ...

    async def find_by_name(self, name: str) -> Product | None: ...

    async def conditional_decrement(
        self, product_id: str, quantity: int, txn: Any
    ) -> Product | None: ...

    async def increment(
        self, product_id: str, quantity: int, txn: Any
    ) -> Product | None: ...

    async def create(self, data: dict, txn: Any = None) -> Product: ...

    async def update(
        self, product_id: str, patch: dict, txn: Any = None
    ) -> Product | None: ...


class OrderRepository(Protocol):
    async def create(self, data: dict, txn: Any) -> Order: ...

    async def find_by_id(self, order_id: str, txn: Any = None) -> Order | None: ...

    async def update(
        self,
        order_id: str,
        patch: dict,
        txn: Any = None,
        expected_status: OrderStatus | None = None,
    ) -> Order | None: ...

    async def find_all(self) -> list[Order]: ...

    async def find_by_user_id(self, user_id: str) -> list[Order]: ...


PRODUCT_COLUMNS = "id, name, price, stock, created_at, updated_at"
PRODUCT_MUTABLE = ("name", "price", "stock")
ORDER_MUTABLE = ("status",)


def _product_from_row(row) -> Product:
    return Product(
        id=str(row.id),
        name=row.name,
        price=row.price,
        stock=row.stock,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _set_clause(patch: dict, allowed: tuple[str, ...]) -> str:
    unknown = set(patch) - set(allowed)
    if unknown:
        raise ValueError(f"Unsupported fields: {sorted(unknown)}")
    return ", ".join(f"{column} = :{column}" for column in patch)


class _SqlRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self, txn: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        if txn is not None:
            yield txn
            return
        async with self.session_factory() as session:
            yield session
            await session.commit()


class SqlProductRepository(_SqlRepository):
    async def find_by_id(
        self, product_id: str, txn: AsyncSession | None = None
    ) -> Product | None:
        async with self._session(txn) as session:
            result = await session.execute(
                text(f"SELECT {PRODUCT_COLUMNS} FROM products WHERE id = :id"),
                {"id": product_id},
            )
            row = result.fetchone()
        return _product_from_row(row) if row else None

    async def find_by_name(self, name: str) -> Product | None:
        async with self._session(None) as session:
            result = await session.execute(
                text(f"SELECT {PRODUCT_COLUMNS} FROM products WHERE name = :name"),
                {"name": name},
            )
            row = result.fetchone()
        return _product_from_row(row) if row else None

    async def conditional_decrement(
        self, product_id: str, quantity: int, txn: AsyncSession
    ) -> Product | None:
        """
        stock >= quantity が書き込み時点で成り立つ場合のみ減算する。
        条件が崩れていれば (同時実行の引き当てに先を越された) None を返す。
        """
        result = await txn.execute(
            text(f"""
                UPDATE products
                SET stock = stock - :qty, updated_at = :now
                WHERE id = :id AND stock >= :qty
                RETURNING {PRODUCT_COLUMNS}
            """),
            {"id": product_id, "qty": quantity, "now": datetime.now(timezone.utc)},
        )
        row = result.fetchone()
        return _product_from_row(row) if row else None

    async def increment(
        self, product_id: str, quantity: int, txn: AsyncSession
    ) -> Product | None:
        result = await txn.execute(
            text(f"""
                UPDATE products
                SET stock = stock + :qty, updated_at = :now
                WHERE id = :id
                RETURNING {PRODUCT_COLUMNS}
            """),
            {"id": product_id, "qty": quantity, "now": datetime.now(timezone.utc)},
        )
        row = result.fetchone()
        return _product_from_row(row) if row else None

    async def create(self, data: dict, txn: AsyncSession | None = None) -> Product:
        now = datetime.now(timezone.utc)
        async with self._session(txn) as session:
            result = await session.execute(
                text(f"""
                    INSERT INTO products (id, name, price, stock, created_at, updated_at)
                    VALUES (:id, :name, :price, :stock, :now, :now)
                    RETURNING {PRODUCT_COLUMNS}
                """),
                {
                    "id": data.get("id") or str(uuid4()),
                    "name": data["name"],
                    "price": data["price"],
                    "stock": data["stock"],
                    "now": now,
                },
            )
            row = result.fetchone()
        return _product_from_row(row)

    async def update(
        self, product_id: str, patch: dict, txn: AsyncSession | None = None
    ) -> Product | None:
        if not patch:
            return await self.find_by_id(product_id, txn)
        assignments = _set_clause(patch, PRODUCT_MUTABLE)
        async with self._session(txn) as session:
            result = await session.execute(
                text(f"""
                    UPDATE products
                    SET {assignments}, updated_at = :now
                    WHERE id = :id
                    RETURNING {PRODUCT_COLUMNS}
                """),
                {**patch, "id": product_id, "now": datetime.now(timezone.utc)},
            )
            row = result.fetchone()
        return _product_from_row(row) if row else None


ORDER_SELECT = """
    SELECT o.id, o.user_id, o.total, o.status, o.created_at, o.updated_at,
           i.product_id, i.quantity, i.unit_price
    FROM orders o
    JOIN order_items i ON i.order_id = o.id
"""


def _orders_from_rows(rows) -> list[Order]:
    """JOIN の結果（1 明細 1 行）を注文ごとにまとめる。行の並び順を保つ。"""
    grouped: dict[str, dict] = {}
    for row in rows:
        order_id = str(row.id)
        if order_id not in grouped:
            grouped[order_id] = {
                "id": order_id,
                "user_id": row.user_id,
                "total": row.total,
                "status": OrderStatus(row.status),
                "created_at": row.created_at,
                "updated_at": row.updated_at,
                "items": [],
            }
        grouped[order_id]["items"].append(
            OrderItem(
                product_id=str(row.product_id),
                quantity=row.quantity,
                unit_price=row.unit_price,
            )
        )
    return [Order(**data) for data in grouped.values()]


class SqlOrderRepository(_SqlRepository):
    async def create(self, data: dict, txn: AsyncSession) -> Order:
        now = datetime.now(timezone.utc)
        order = Order(
            id=str(uuid4()),
            user_id=data["user_id"],
            items=data["items"],
            total=data["total"],
            status=data.get("status", OrderStatus.CREATED),
            created_at=now,
            updated_at=now,
        )
        await txn.execute(
            text("""
                INSERT INTO orders (id, user_id, total, status, created_at, updated_at)
                VALUES (:id, :user_id, :total, :status, :now, :now)
            """),
            {
                "id": order.id,
                "user_id": order.user_id,
                "total": order.total,
                "status": order.status.value,
                "now": now,
            },
        )
        await txn.execute(
            text("""
                INSERT INTO order_items (order_id, position, product_id, quantity, unit_price)
                VALUES (:order_id, :position, :product_id, :quantity, :unit_price)
            """),
            [
                {
                    "order_id": order.id,
                    "position": position,
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                }
                for position, item in enumerate(order.items)
            ],
        )
        return order

    async def _load(self, session: AsyncSession, order_id: str) -> Order | None:
        result = await session.execute(
            text(ORDER_SELECT + " WHERE o.id = :id ORDER BY i.position"),
            {"id": order_id},
        )
        orders = _orders_from_rows(result.fetchall())
        return orders[0] if orders else None

    async def find_by_id(
        self, order_id: str, txn: AsyncSession | None = None
    ) -> Order | None:
        async with self._session(txn) as session:
            return await self._load(session, order_id)

    async def update(
        self,
        order_id: str,
        patch: dict,
        txn: AsyncSession | None = None,
        expected_status: OrderStatus | None = None,
    ) -> Order | None:
        """
        expected_status を指定すると、現在のステータスが一致する場合のみ更新する
        （読み取り後に他のトランザクションが状態を変えていれば None）。
        """
        assignments = _set_clause(patch, ORDER_MUTABLE)
        params = {
            key: value.value if isinstance(value, OrderStatus) else value
            for key, value in patch.items()
        }
        params.update({"id": order_id, "now": datetime.now(timezone.utc)})
        condition = "id = :id"
        if expected_status is not None:
            condition += " AND status = :expected_status"
            params["expected_status"] = expected_status.value

        async with self._session(txn) as session:
            result = await session.execute(
                text(f"""
                    UPDATE orders
                    SET {assignments}, updated_at = :now
                    WHERE {condition}
                    RETURNING id
                """),
                params,
            )
            if result.fetchone() is None:
                return None
            return await self._load(session, order_id)

    async def find_all(self) -> list[Order]:
        async with self._session(None) as session:
            result = await session.execute(
                text(ORDER_SELECT + " ORDER BY o.created_at DESC, o.id, i.position"),
            )
            return _orders_from_rows(result.fetchall())

    async def find_by_user_id(self, user_id: str) -> list[Order]:
        async with self._session(None) as session:
            result = await session.execute(
                text(
                    ORDER_SELECT
                    + " WHERE o.user_id = :user_id"
                    + " ORDER BY o.created_at DESC, o.id, i.position"
                ),
                {"user_id": user_id},
            )
            return _orders_from_rows(result.fetchall())
