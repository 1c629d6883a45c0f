"""
Order Service — 例外定義

ビジネス上の結果 (在庫不足・競合) とインフラ障害 (一時的/恒久的) を区別する。
一時的な障害だけがリトライ対象になる。
"""


class OrderServiceError(Exception):
    """すべての例外の基底クラス"""


class ValidationError(OrderServiceError):
    """入力が不正 (リトライしない)"""


class UnknownProduct(ValidationError):
    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} does not exist")
        self.product_id = product_id


class InsufficientStock(OrderServiceError):
    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Product {product_id} is out of stock: "
            f"requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ReservationConflict(OrderServiceError):
    """在庫チェック後に別の予約に負けた (予約全体をやり直せる)"""

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Stock for product {product_id} changed during reservation")
        self.product_id = product_id


class OrderNotFound(OrderServiceError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class StoreError(OrderServiceError):
    pass


class TransientStoreError(StoreError):
    """スロットリング・接続断など、時間をおけば成功しうる障害"""


class PermanentStoreError(StoreError):
    pass


class InventoryInvariantViolation(PermanentStoreError):
    """確定/解放しようとした数量が reserved を超えている"""

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Inventory counters for product {product_id} would go negative")
        self.product_id = product_id


class ConditionFailed(OrderServiceError):
    """条件付き書き込みの前提条件が満たされなかった (トランザクションは中止)"""

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Condition check failed for product {product_id}")
        self.product_id = product_id


class DiscoveryFailed(OrderServiceError):
    """リーパーの検出フェーズが失敗した (実行全体を中止する)"""
