"""
Storefront — エラー定義

コア（在庫引き当て・注文ライフサイクル）が送出する例外。
境界層（FastAPI）は status_code を見て HTTP レスポンスに変換する。
"""


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(StorefrontError):
    """参照された商品・注文が存在しない"""
    status_code = 404


class InvalidInput(StorefrontError):
    """空の明細、数量が正でない、など"""
    status_code = 400


class InsufficientStock(StorefrontError):
    """
    在庫不足。

    race_detected=True は事前チェックを通過した後、条件付き減算の時点で
    他の引き当てに在庫を取られたことを示す。
    """
    status_code = 409

    def __init__(self, product_id: str, race_detected: bool = False) -> None:
        message = f"Insufficient stock for product {product_id}"
        if race_detected:
            message += " (race condition)"
        super().__init__(message)
        self.product_id = product_id
        self.race_detected = race_detected


class Forbidden(StorefrontError):
    status_code = 403


class InvalidTransition(StorefrontError):
    status_code = 409


class Conflict(StorefrontError):
    status_code = 409


class TransactionTimeout(StorefrontError):
    status_code = 504


class StatusChanged(InvalidTransition):
    """読み取った後、書き込みまでの間に他の操作が注文の状態を変えた"""

    def __init__(self, order_id: str) -> None:
        super().__init__("order status changed concurrently")
        self.order_id = order_id
