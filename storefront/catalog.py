"""
Storefront — 商品カタログ管理（admin 用）

商品の登録と更新。名前の重複は Conflict。
在庫の増減は引き当て / キャンセル経由が原則で、ここでの stock 更新は
入荷などの棚卸し補正として扱う。
"""

import logging

from .errors import Conflict, NotFound
from .models import Product
from .repositories import ProductRepository

logger = logging.getLogger(__name__)


class CatalogService:
    def __init__(self, products: ProductRepository) -> None:
        self.products = products

    async def get_product(self, product_id: str) -> Product:
        product = await self.products.find_by_id(product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found")
        return product

    async def create_product(self, name: str, price: int, stock: int) -> Product:
        if await self.products.find_by_name(name):
            raise Conflict(f'Product with name "{name}" already exists')
        product = await self.products.create(
            {"name": name, "price": price, "stock": stock}
        )
        logger.info("Product created: id=%s name=%s", product.id, name)
        return product

    async def update_product(self, product_id: str, patch: dict) -> Product:
        if "name" in patch:
            existing = await self.products.find_by_name(patch["name"])
            if existing and existing.id != product_id:
                raise Conflict(f'Product with name "{patch["name"]}" already exists')
        product = await self.products.update(product_id, patch)
        if product is None:
            raise NotFound(f"Product {product_id} not found")
        logger.info("Product updated: id=%s fields=%s", product_id, sorted(patch))
        return product
