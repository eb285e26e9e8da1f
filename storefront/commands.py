"""
Storefront — 注文ライフサイクル (Order Lifecycle Controller)

状態遷移:
    (作成) → CREATED
    CREATED → PAID        pay
    CREATED → CANCELLED   cancel（在庫を戻す）
    PAID    → CANCELLED   cancel（admin のみ、在庫を戻す）

create / pay / cancel はそれぞれちょうど 1 つのトランザクションで実行し、
失敗時は abort してから例外を呼び出し元へ伝播する。
既に目的の状態にある注文への pay / cancel は冪等な成功（書き込みなし）。

イベントはコミット後に発行する。発行の失敗はログに残すだけで、
コミット済みの操作をエラーにはしない。
"""

import logging
from datetime import datetime, timezone

from pydantic import BaseModel

from .errors import Forbidden, InvalidInput, InvalidTransition, NotFound, StatusChanged
from .events import OrderCancelled, OrderCreated, OrderPaid
from .inventory import ItemRequest, ReservationEngine
from .models import Actor, Order, OrderStatus, order_total
from .publisher import EventPublisher, NullPublisher
from .repositories import OrderRepository
from .transaction import TransactionCoordinator

logger = logging.getLogger(__name__)


def validate_items(items: list) -> list[ItemRequest]:
    """
    明細の形式を検証する。境界層でもスキーマ検証するが、
    空の引き当ては意味を持たないためここでも確認する。
    """
    if not items:
        raise InvalidInput("Order must contain at least one item")
    requests = []
    for item in items:
        if isinstance(item, dict):
            product_id, quantity = item.get("product_id"), item.get("quantity")
        else:
            try:
                product_id, quantity = item
            except (TypeError, ValueError):
                raise InvalidInput(f"Malformed order item: {item!r}") from None
        if not isinstance(product_id, str) or not product_id:
            raise InvalidInput(f"Invalid product id: {product_id!r}")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidInput(
                f"Invalid quantity for product {product_id}: {quantity!r}"
            )
        requests.append(ItemRequest(product_id, quantity))
    return requests


class OrderLifecycleController:
    def __init__(
        self,
        orders: OrderRepository,
        reservations: ReservationEngine,
        coordinator: TransactionCoordinator,
        publisher: EventPublisher | None = None,
    ) -> None:
        self.orders = orders
        self.reservations = reservations
        self.coordinator = coordinator
        self.publisher = publisher or NullPublisher()

    # ── Commands ─────────────────────────────────

    async def create(self, user_id: str, items: list) -> Order:
        """
        注文作成

        1. 明細ごとに在庫を引き当て（条件付き減算 + 価格スナップショット）
        2. total = Σ quantity * unit_price を算出
        3. CREATED の注文を同じトランザクション内で記録
        """
        requests = validate_items(items)

        async def _create(txn) -> Order:
            reserved = await self.reservations.reserve(requests, txn)
            return await self.orders.create(
                {
                    "user_id": user_id,
                    "items": reserved,
                    "total": order_total(reserved),
                    "status": OrderStatus.CREATED,
                },
                txn,
            )

        order = await self.coordinator.with_transaction(_create)
        logger.info(
            "Order created: id=%s user=%s total=%d", order.id, user_id, order.total
        )
        await self._publish(
            OrderCreated(
                order_id=order.id,
                user_id=order.user_id,
                items=order.items,
                total=order.total,
                timestamp=_now(),
            )
        )
        return order

    async def pay(self, order_id: str, actor: Actor) -> Order:
        """注文の支払い（在庫への影響なし）。既に PAID なら何もせず返す。"""

        async def _pay(txn) -> tuple[Order, bool]:
            order = await self._load_owned(order_id, actor, txn)
            if order.status == OrderStatus.PAID:
                return order, False
            if order.status == OrderStatus.CANCELLED:
                raise InvalidTransition("order is cancelled")
            updated = await self._transition(order, OrderStatus.PAID, txn)
            return updated, True

        try:
            order, changed = await self.coordinator.with_transaction(_pay)
        except StatusChanged:
            order = await self._settled(order_id, OrderStatus.PAID)
            changed = False
        if changed:
            logger.info("Order paid: id=%s actor=%s", order.id, actor.user_id)
            await self._publish(
                OrderPaid(
                    order_id=order.id,
                    user_id=order.user_id,
                    actor_id=actor.user_id,
                    timestamp=_now(),
                )
            )
        return order

    async def cancel(self, order_id: str, actor: Actor) -> Order:
        """
        注文キャンセル

        支払い済みの注文をキャンセルできるのは admin のみ。
        在庫の戻しとステータス更新は同じトランザクションで行い、
        どちらか一方だけが見えることはない。
        """

        async def _cancel(txn) -> tuple[Order, bool]:
            order = await self._load_owned(order_id, actor, txn)
            if order.status == OrderStatus.CANCELLED:
                return order, False
            if order.status == OrderStatus.PAID and not actor.is_privileged:
                raise Forbidden("cannot cancel paid order")
            await self.reservations.restore(order.items, txn)
            updated = await self._transition(order, OrderStatus.CANCELLED, txn)
            return updated, True

        try:
            order, changed = await self.coordinator.with_transaction(_cancel)
        except StatusChanged:
            order = await self._settled(order_id, OrderStatus.CANCELLED)
            changed = False
        if changed:
            logger.info("Order cancelled: id=%s actor=%s", order.id, actor.user_id)
            await self._publish(
                OrderCancelled(
                    order_id=order.id,
                    user_id=order.user_id,
                    actor_id=actor.user_id,
                    restored_items=order.items,
                    timestamp=_now(),
                )
            )
        return order

    # ── Queries ──────────────────────────────────

    async def get(self, actor: Actor) -> list[Order]:
        """admin は全注文、それ以外は自分の注文のみ。"""
        if actor.is_privileged:
            return await self.orders.find_all()
        return await self.orders.find_by_user_id(actor.user_id)

    # ── Helpers ──────────────────────────────────

    async def _load_owned(self, order_id: str, actor: Actor, txn) -> Order:
        order = await self.orders.find_by_id(order_id, txn)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        if not actor.is_privileged and not order.owned_by(actor.user_id):
            raise Forbidden("not your order")
        return order

    async def _transition(self, order: Order, status: OrderStatus, txn) -> Order:
        # 読み取った状態のままであることを条件に書き込む
        updated = await self.orders.update(
            order.id, {"status": status}, txn, expected_status=order.status
        )
        if updated is None:
            raise StatusChanged(order.id)
        return updated

    async def _settled(self, order_id: str, target: OrderStatus) -> Order:
        """
        状態更新の競合に負けた後（abort 済み）に注文を読み直す。
        同じ操作が先に完了していれば冪等な成功として返す。
        """
        order = await self.orders.find_by_id(order_id)
        if order is not None and order.status == target:
            return order
        raise StatusChanged(order_id)

    async def _publish(self, event: BaseModel) -> None:
        try:
            await self.publisher.publish(event)
        except Exception:
            logger.exception("Failed to publish %s", type(event).__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)
