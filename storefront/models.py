"""
Storefront — データモデル

Product は商品台帳、Order は注文台帳が排他的に所有する。
金額はすべて最小通貨単位の整数（例: セント）。
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class OrderStatus(str, Enum):
    """
    注文の状態遷移:
        CREATED → PAID
        CREATED → CANCELLED
        PAID    → CANCELLED  (admin のみ)
    """
    CREATED = "created"
    PAID = "paid"
    CANCELLED = "cancelled"


class Role(str, Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"


class Actor(BaseModel):
    """リクエストを行った主体（ゲートウェイが付与するヘッダから構築）"""
    user_id: str
    role: Role

    @property
    def is_privileged(self) -> bool:
        return self.role == Role.ADMIN


class Product(BaseModel):
    id: str
    name: str
    price: int = Field(ge=0)
    stock: int = Field(ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)
    # 引き当て時点の価格スナップショット。後で商品価格が変わっても再計算しない
    unit_price: int = Field(ge=0)

    @property
    def line_total(self) -> int:
        return self.quantity * self.unit_price


class Order(BaseModel):
    id: str
    user_id: str
    items: list[OrderItem]
    total: int = Field(ge=0)
    status: OrderStatus = OrderStatus.CREATED
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def check_total(self) -> "Order":
        expected = order_total(self.items)
        if self.total != expected:
            raise ValueError(f"total {self.total} != sum of line totals {expected}")
        return self

    def owned_by(self, user_id: str) -> bool:
        return self.user_id == user_id


def order_total(items: list[OrderItem]) -> int:
    return sum(item.line_total for item in items)
