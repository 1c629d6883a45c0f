"""
Order Service — 注文集約と在庫 (Order Aggregate / Inventory Item)

注文の状態遷移:
    PENDING → PROCESSING  (決済成功)
    PENDING → FAILED      (決済失敗, Webhook)
    PENDING → REJECTED    (タイムアウト, リーパー)

終端状態からの遷移は存在しない。PENDING からの遷移は一度だけ起こる。
"""

import enum
import json
from collections import Counter
from datetime import datetime
from typing import NamedTuple

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .events import OrderItem


class OrderStatus(enum.IntEnum):
    # 3 は欠番
    PENDING = 1
    PROCESSING = 2
    REJECTED = 4
    FAILED = 5

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class PaymentOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


class ResolutionSource(str, enum.Enum):
    """誰が決着をつけるか: 決済 Webhook かタイムアウトのリーパーか"""

    PAYMENT = "payment"
    TIMEOUT = "timeout"


def next_status(outcome: PaymentOutcome, source: ResolutionSource) -> OrderStatus:
    if outcome is PaymentOutcome.SUCCESS:
        return OrderStatus.PROCESSING
    if outcome is PaymentOutcome.FAILURE:
        if source is ResolutionSource.TIMEOUT:
            return OrderStatus.REJECTED
        return OrderStatus.FAILED
    raise ValueError(f"outcome {outcome.value!r} is not terminal")


class InventoryUpdate(NamedTuple):
    """
    在庫レコード1件に対する差分更新。

    ストアは quantity + quantity_delta >= 0 かつ reserved + reserved_delta >= 0
    を前提条件として適用する。
    """

    product_id: str
    quantity_delta: int
    reserved_delta: int


def merge_quantities(items: list[OrderItem]) -> dict[str, int]:
    """同じ商品が複数行ある場合は数量を合算する。"""
    totals: Counter[str] = Counter()
    for item in items:
        totals[item.product_id] += item.qty
    return dict(totals)


def reserve_updates(items: list[OrderItem]) -> list[InventoryUpdate]:
    """予約: quantity -= qty, reserved += qty"""
    return [
        InventoryUpdate(pid, -qty, qty) for pid, qty in sorted(merge_quantities(items).items())
    ]


def commit_updates(items: list[OrderItem]) -> list[InventoryUpdate]:
    """確定: reserved -= qty (quantity は予約時に既に減っている)"""
    return [
        InventoryUpdate(pid, 0, -qty) for pid, qty in sorted(merge_quantities(items).items())
    ]


def rollback_updates(items: list[OrderItem]) -> list[InventoryUpdate]:
    """補償: quantity += qty, reserved -= qty"""
    return [
        InventoryUpdate(pid, qty, -qty) for pid, qty in sorted(merge_quantities(items).items())
    ]


_items_adapter = TypeAdapter(list[OrderItem])


def parse_items(raw) -> list[OrderItem]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise ValidationError(f"items are not valid JSON: {e}") from e
    try:
        items = _items_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"malformed items: {e.error_count()} error(s)") from e
    if not items:
        raise ValidationError("order has no items")
    return items


class OrderAggregate:
    """ストアのレコード (dict) から復元した注文"""

    def __init__(
        self,
        order_id: str,
        user_id: str,
        items: list[OrderItem],
        total: float,
        status: OrderStatus,
        created_at: datetime,
        updated_at: datetime,
    ) -> None:
        self.id = order_id
        self.user_id = user_id
        self.items = items
        self.total = total
        self.status = status
        self.created_at = created_at
        self.updated_at = updated_at

    @classmethod
    def from_record(cls, record: dict) -> "OrderAggregate":
        order_id = record.get("order_id")
        if not order_id:
            raise ValidationError("order record has no order_id")
        try:
            status = OrderStatus(int(record["status"]))
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"order {order_id} has invalid status") from e
        return cls(
            order_id=order_id,
            user_id=record.get("user_id", ""),
            items=parse_items(record.get("items")),
            total=float(record.get("total") or 0),
            status=status,
            created_at=record.get("created_at"),
            updated_at=record.get("updated_at"),
        )

    def to_dict(self) -> dict:
        return {
            "order_id": self.id,
            "user_id": self.user_id,
            "items": [item.model_dump() for item in self.items],
            "total": self.total,
            "status": self.status.name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class InventoryItem:
    def __init__(self, product_id: str, quantity: int, reserved: int, price: float) -> None:
        self.product_id = product_id
        self.quantity = quantity
        self.reserved = reserved
        self.price = price

    @property
    def pool(self) -> int:
        """予約前の総在庫 (quantity + reserved)。注文処理では変化しない。"""
        return self.quantity + self.reserved

    @classmethod
    def from_record(cls, record: dict) -> "InventoryItem":
        return cls(
            product_id=record["product_id"],
            quantity=int(record["quantity"]),
            reserved=int(record["reserved"]),
            price=float(record["price"]),
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "reserved": self.reserved,
            "price": self.price,
        }
