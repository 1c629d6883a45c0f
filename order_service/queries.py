"""
Order Service — クエリハンドラ (Read 側)
"""

from .aggregate import InventoryItem, OrderAggregate
from .config import RetryPolicy
from .retry import call_with_retry
from .store import Store


async def get_order(store: Store, order_id: str, retry: RetryPolicy = RetryPolicy()) -> dict | None:
    async def load():
        async with store.transaction() as uow:
            return await uow.get_order(order_id)

    record = await call_with_retry(load, retry)
    if not record:
        return None
    return OrderAggregate.from_record(record).to_dict()


async def get_inventory_item(
    store: Store, product_id: str, retry: RetryPolicy = RetryPolicy()
) -> dict | None:
    async def load():
        async with store.transaction() as uow:
            return await uow.get_inventory([product_id])

    records = await call_with_retry(load, retry)
    if product_id not in records:
        return None
    item = InventoryItem.from_record(records[product_id])
    return {**item.to_dict(), "pool": item.pool}
