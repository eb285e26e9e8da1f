"""
Storefront — シードスクリプト

テーブルを作成し、デモ用の商品を登録する。既に同名の商品があれば飛ばす。

    python -m storefront.seed
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import create_async_engine

from . import config
from .errors import Conflict
from .main import build_sql_services
from .schema import create_schema

logger = logging.getLogger(__name__)

PRODUCTS = [
    {"name": "Laptop", "price": 99999, "stock": 10},
    {"name": "Mouse", "price": 2500, "stock": 50},
    {"name": "Keyboard", "price": 7500, "stock": 30},
    {"name": "Monitor", "price": 29999, "stock": 15},
    {"name": "USB-C Cable", "price": 1299, "stock": 100},
]


async def seed() -> None:
    engine = create_async_engine(config.DATABASE_URL, echo=False)
    try:
        await create_schema(engine)
        services = build_sql_services(engine)
        for data in PRODUCTS:
            try:
                product = await services.catalog.create_product(**data)
            except Conflict:
                logger.info("Skipping existing product: %s", data["name"])
                continue
            logger.info("Seeded %s (%s)", product.name, product.id)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL)
    asyncio.run(seed())
