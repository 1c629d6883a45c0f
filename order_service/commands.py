"""
Order Service — コマンドハンドラ (予約エンジン / 決着リゾルバ)

reserve():  在庫チェック → 全商品の条件付き一括予約 → PENDING 注文の保存
resolve():  決済結果 (またはタイムアウト) に応じて予約を確定/補償し、状態を遷移する

在庫の予約と注文の状態遷移はストアのトランザクションと前提条件だけで調整する。
プロセス内ロックは使わない。Webhook とリーパーが同じ注文で競合しても、
status の compare-and-set に勝った側だけが在庫を戻す。
"""

import logging
import uuid
from datetime import datetime, timezone

from pydantic import ValidationError as PydanticValidationError

from .aggregate import (
    OrderAggregate,
    OrderStatus,
    PaymentOutcome,
    ResolutionSource,
    commit_updates,
    merge_quantities,
    next_status,
    reserve_updates,
    rollback_updates,
)
from .config import RetryPolicy
from .errors import (
    ConditionFailed,
    InsufficientStock,
    InventoryInvariantViolation,
    OrderNotFound,
    ReservationConflict,
    UnknownProduct,
    ValidationError,
)
from .events import OrderPlaced, OrderResolved, PlaceOrder
from .notifier import FulfillmentNotifier
from .retry import call_with_retry
from .store import Store

logger = logging.getLogger(__name__)

DEFAULT_RETRY = RetryPolicy()


def new_order_id() -> str:
    return f"ORD-{uuid.uuid4()}"


async def reserve(
    store: Store,
    user_id: str,
    items: list,
    *,
    retry: RetryPolicy = DEFAULT_RETRY,
    now: datetime | None = None,
) -> dict:
    """
    注文作成コマンド

    1. 参照する全商品の在庫を一括で読み、合計金額を計算 (楽観的な事前チェック)
    2. 全商品に quantity >= qty を前提条件とした予約を一括適用 (all-or-nothing)
    3. 同じトランザクションで PENDING の注文を保存
    """
    try:
        command = PlaceOrder(user_id=user_id, items=items)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid order: {e.error_count()} error(s)") from e

    quantities = merge_quantities(command.items)

    async def read_stock() -> dict[str, dict]:
        async with store.transaction() as uow:
            return await uow.get_inventory(sorted(quantities))

    stock = await call_with_retry(read_stock, retry)

    total = 0.0
    for item in command.items:
        record = stock.get(item.product_id)
        if record is None:
            raise UnknownProduct(item.product_id)
        total += record["price"] * item.qty
    for product_id, qty in quantities.items():
        available = stock[product_id]["quantity"]
        if available < qty:
            logger.info("Failed - Product %s is out of stock (%d < %d)", product_id, available, qty)
            raise InsufficientStock(product_id, qty, available)

    now = now or datetime.now(timezone.utc)
    event = OrderPlaced(
        order_id=new_order_id(),
        user_id=command.user_id,
        items=command.items,
        total=round(total, 2),
        timestamp=now,
    )
    record = {
        "order_id": event.order_id,
        "user_id": event.user_id,
        "items": [item.model_dump() for item in event.items],
        "total": event.total,
        "status": int(OrderStatus.PENDING),
        "created_at": now,
        "updated_at": now,
    }

    async def write() -> None:
        async with store.transaction() as uow:
            await uow.apply_inventory(reserve_updates(command.items))
            await uow.insert_order(record)

    try:
        await call_with_retry(write, retry)
    except ConditionFailed as e:
        # ステップ1の後に別の予約が在庫を持っていった
        logger.info("Reservation conflict on product %s, nothing reserved", e.product_id)
        raise ReservationConflict(e.product_id) from e

    logger.info("|orderId - %s| userId - %s | total - %.2f", event.order_id, event.user_id, event.total)
    return {"order_id": event.order_id, "total": event.total}


class _LostRace(Exception):
    """在庫更新の後で status の compare-and-set に負けた"""


async def _current_status(store: Store, order_id: str, retry: RetryPolicy) -> OrderStatus:
    async def load() -> OrderStatus:
        async with store.transaction() as uow:
            record = await uow.get_order(order_id)
        if record is None:
            raise OrderNotFound(order_id)
        return OrderStatus(int(record["status"]))

    return await call_with_retry(load, retry)


async def resolve(
    store: Store,
    order_id: str,
    outcome: PaymentOutcome,
    *,
    source: ResolutionSource = ResolutionSource.PAYMENT,
    notifier: FulfillmentNotifier | None = None,
    retry: RetryPolicy = DEFAULT_RETRY,
    now: datetime | None = None,
) -> dict:
    """
    決着コマンド (Webhook またはリーパーから呼ばれる)

    - SUCCESS: reserved -= qty → PENDING → PROCESSING → フルフィルメント通知
    - FAILURE: quantity += qty, reserved -= qty → PENDING → FAILED / REJECTED
    - PENDING: 何もしない (リーパーが後で回収する)

    注文が PENDING でなければ何も変更せず already_resolved=True を返す。
    """
    if outcome is PaymentOutcome.PENDING:
        status = await _current_status(store, order_id, retry)
        logger.info("%s - Order Pending", order_id)
        return OrderResolved(
            order_id=order_id, status=status.name, already_resolved=status.is_terminal
        ).model_dump()

    target = next_status(outcome, source)

    async def apply() -> tuple[OrderStatus, bool]:
        async with store.transaction() as uow:
            record = await uow.get_order(order_id)
            if record is None:
                raise OrderNotFound(order_id)
            order = OrderAggregate.from_record(record)
            if order.status.is_terminal:
                return order.status, False

            if outcome is PaymentOutcome.SUCCESS:
                updates = commit_updates(order.items)
            else:
                updates = rollback_updates(order.items)
            try:
                await uow.apply_inventory(updates)
            except ConditionFailed as e:
                # 競合相手が先にコミットして reserved を減らした場合もここに来る
                latest = await uow.get_order(order_id)
                if latest and int(latest["status"]) != OrderStatus.PENDING:
                    raise _LostRace(order_id) from e
                raise InventoryInvariantViolation(e.product_id) from e

            changed = await uow.transition_order(
                order_id,
                int(OrderStatus.PENDING),
                int(target),
                now or datetime.now(timezone.utc),
            )
            if not changed:
                # 例外でトランザクションごと在庫更新を破棄する
                raise _LostRace(order_id)
            return target, True

    try:
        status, transitioned = await call_with_retry(apply, retry)
    except _LostRace:
        logger.warning(
            "%s - reconciliation: order resolved concurrently, inventory update discarded",
            order_id,
        )
        status, transitioned = await _current_status(store, order_id, retry), False

    async def publish():
        return await notifier.publish(order_id)

    if not transitioned:
        logger.info("%s - Already resolved (%s)", order_id, status.name)
        if outcome is PaymentOutcome.SUCCESS and status is OrderStatus.REJECTED:
            logger.warning("%s - Payment succeeded after timeout rejection, refund required", order_id)
        if outcome is PaymentOutcome.SUCCESS and status is OrderStatus.PROCESSING and notifier:
            # 前回の通知が失敗していた可能性があるので再送する (at-least-once)
            await call_with_retry(publish, retry)
        return OrderResolved(order_id=order_id, status=status.name, already_resolved=True).model_dump()

    logger.info("%s - Order %s", order_id, status.name.capitalize())
    if status is OrderStatus.PROCESSING and notifier is not None:
        await call_with_retry(publish, retry)
    return OrderResolved(order_id=order_id, status=status.name).model_dump()


async def stock_item(
    store: Store,
    product_id: str,
    quantity: int,
    price: float,
    *,
    retry: RetryPolicy = DEFAULT_RETRY,
) -> dict:
    """在庫の登録/補充 (quantity と price を上書き。reserved はそのまま)"""
    if not product_id:
        raise ValidationError("product_id is required")
    if quantity < 0 or price < 0:
        raise ValidationError("quantity and price must be non-negative")

    async def put() -> dict:
        async with store.transaction() as uow:
            return await uow.put_inventory(product_id, quantity, price)

    record = await call_with_retry(put, retry)
    logger.info("Stocked %s: quantity=%d price=%.2f", product_id, quantity, price)
    return record
