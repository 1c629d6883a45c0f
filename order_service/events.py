"""
Order Service — イベント/コマンド定義

注文に関わるメッセージを pydantic モデルとして定義する。
イベントは過去形で命名する。
"""

from datetime import datetime

from pydantic import BaseModel, Field


class OrderItem(BaseModel):
    product_id: str = Field(min_length=1)
    qty: int = Field(gt=0)


class PlaceOrder(BaseModel):
    """注文作成コマンド (予約の入力)"""
    user_id: str = Field(min_length=1)
    items: list[OrderItem] = Field(min_length=1)


class OrderPlaced(BaseModel):
    """注文が作成され、在庫が予約された"""
    order_id: str
    user_id: str
    items: list[OrderItem]
    total: float
    timestamp: datetime


class OrderResolved(BaseModel):
    """注文が PENDING から終端状態に遷移した (あるいは既に遷移済みだった)"""
    order_id: str
    status: str
    already_resolved: bool = False


class FulfillmentRequested(BaseModel):
    """決済成功 → フルフィルメントへの通知 (at-least-once)"""
    order_id: str
    timestamp: datetime
