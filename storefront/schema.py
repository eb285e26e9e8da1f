"""
Storefront — テーブル定義

products.stock の CHECK 制約は最後の砦。通常は条件付き減算
（WHERE stock >= :qty）によって負にならないことが保証される。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

DDL = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL UNIQUE,
        price       INTEGER NOT NULL CHECK (price >= 0),
        stock       INTEGER NOT NULL CHECK (stock >= 0),
        created_at  TIMESTAMPTZ NOT NULL,
        updated_at  TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id          TEXT PRIMARY KEY,
        user_id     TEXT NOT NULL,
        total       INTEGER NOT NULL CHECK (total >= 0),
        status      TEXT NOT NULL CHECK (status IN ('created', 'paid', 'cancelled')),
        created_at  TIMESTAMPTZ NOT NULL,
        updated_at  TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_user_id ON orders (user_id)",
    """
    CREATE TABLE IF NOT EXISTS order_items (
        order_id    TEXT NOT NULL REFERENCES orders (id),
        position    INTEGER NOT NULL,
        product_id  TEXT NOT NULL REFERENCES products (id),
        quantity    INTEGER NOT NULL CHECK (quantity >= 1),
        unit_price  INTEGER NOT NULL CHECK (unit_price >= 0),
        PRIMARY KEY (order_id, position)
    )
    """,
]


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in DDL:
            await conn.execute(text(statement))


async def drop_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for table in ("order_items", "orders", "products"):
            await conn.execute(text(f"DROP TABLE IF EXISTS {table}"))
