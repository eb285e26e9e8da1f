"""
Storefront — イベント定義

注文ライフサイクルで発生するイベント。コミット後に発行される。
イベントは過去形で命名する。
"""

from datetime import datetime

from pydantic import BaseModel

from .models import OrderItem


class OrderCreated(BaseModel):
    """注文が作成された（在庫引き当て済み）"""
    order_id: str
    user_id: str
    items: list[OrderItem]
    total: int
    timestamp: datetime


class OrderPaid(BaseModel):
    order_id: str
    user_id: str
    actor_id: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた（在庫は戻し済み）"""
    order_id: str
    user_id: str
    actor_id: str
    restored_items: list[OrderItem]
    timestamp: datetime
