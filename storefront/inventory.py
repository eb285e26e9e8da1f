"""
Storefront — 在庫引き当てエンジン (Inventory Reservation Engine)

明細ごとに入力順で:
  1. 商品を読み取り、価格と在庫を確認（存在しない → NotFound、
     在庫不足 → InsufficientStock。安価な事前チェック）
  2. 条件付き減算「書き込み時点で stock >= quantity なら減算」を試みる
     - 拒否された場合は事前チェック後に他の引き当てに在庫を取られた
       → InsufficientStock(race_detected=True)
  3. 読み取り時点の価格を unit_price として記録

途中の明細で失敗した場合、それ以前の明細で適用済みの減算は
トランザクション調整側の abort で取り消される。エンジン自身は
補償処理を持たない。
"""

import logging
from typing import Any, NamedTuple

from .errors import InsufficientStock, NotFound
from .models import OrderItem
from .repositories import ProductRepository

logger = logging.getLogger(__name__)


class ItemRequest(NamedTuple):
    product_id: str
    quantity: int


class ReservationEngine:
    def __init__(self, products: ProductRepository) -> None:
        self.products = products

    async def reserve(self, items: list[ItemRequest], txn: Any) -> list[OrderItem]:
        reserved: list[OrderItem] = []
        for product_id, quantity in items:
            product = await self.products.find_by_id(product_id, txn)
            if product is None:
                raise NotFound(f"Product {product_id} not found")
            if product.stock < quantity:
                raise InsufficientStock(product_id)

            updated = await self.products.conditional_decrement(
                product_id, quantity, txn
            )
            if updated is None:
                logger.warning(
                    "Reservation race detected: product=%s quantity=%d",
                    product_id,
                    quantity,
                )
                raise InsufficientStock(product_id, race_detected=True)

            reserved.append(
                OrderItem(
                    product_id=product_id,
                    quantity=quantity,
                    unit_price=product.price,
                )
            )
        return reserved

    async def restore(self, items: list[OrderItem], txn: Any) -> None:
        """キャンセル時に在庫を戻す（上限チェックなし）。"""
        for item in items:
            updated = await self.products.increment(
                item.product_id, item.quantity, txn
            )
            if updated is None:
                raise NotFound(f"Product {item.product_id} not found")
