"""
Order Service — FastAPI エントリーポイント

注文の作成 (在庫予約)、決済 Webhook による決着、タイムアウト回収ジョブの起動を公開する。
決済ゲートウェイのステータス文字列 → PaymentOutcome の変換はこの層で行う。
"""

import asyncio
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, config, queries
from .aggregate import PaymentOutcome
from .errors import (
    DiscoveryFailed,
    InsufficientStock,
    OrderNotFound,
    PermanentStoreError,
    ReservationConflict,
    TransientStoreError,
    UnknownProduct,
    ValidationError,
)
from .events import OrderItem
from .notifier import FulfillmentNotifier
from .reaper import TimeoutReaper, run_periodically
from .store import SqlStore

engine = create_async_engine(config.DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
store = SqlStore(async_session)
retry_policy = config.retry_policy_from_env()
reaper = TimeoutReaper(store, config.ReaperSettings.from_env())
redis_pool: aioredis.Redis | None = None
notifier: FulfillmentNotifier | None = None

GATEWAY_OUTCOMES = {
    "TXN_SUCCESS": PaymentOutcome.SUCCESS,
    "TXN_FAILED": PaymentOutcome.FAILURE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, notifier
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    notifier = FulfillmentNotifier(redis_pool, config.FULFILLMENT_STREAM)

    shutdown_event = asyncio.Event()
    reaper_task = None
    if config.REAPER_INTERVAL_SECONDS > 0:
        reaper_task = asyncio.create_task(
            run_periodically(reaper, config.REAPER_INTERVAL_SECONDS, shutdown_event)
        )
    yield
    shutdown_event.set()
    if reaper_task:
        await reaper_task
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Request Models ───────────────────────────────


class PlaceOrderRequest(BaseModel):
    user_id: str
    items: list[OrderItem]


class PaymentWebhookRequest(BaseModel):
    order_id: str
    status: str


class StockRequest(BaseModel):
    quantity: int = Field(ge=0)
    price: float = Field(ge=0)


def _store_error(e: Exception) -> HTTPException:
    if isinstance(e, TransientStoreError):
        return HTTPException(503, "Store temporarily unavailable")
    return HTTPException(500, "Internal error")


# ── Command Endpoints ────────────────────────────


@app.post("/orders")
async def cmd_place_order(req: PlaceOrderRequest):
    """注文作成 (在庫チェック + 予約 + PENDING 注文の保存)"""
    try:
        result = await commands.reserve(
            store, req.user_id, req.items, retry=retry_policy
        )
    except UnknownProduct as e:
        raise HTTPException(404, str(e))
    except ValidationError as e:
        raise HTTPException(422, str(e))
    except InsufficientStock as e:
        raise HTTPException(400, str(e))
    except ReservationConflict as e:
        raise HTTPException(409, str(e))
    except (TransientStoreError, PermanentStoreError) as e:
        raise _store_error(e)
    return {"message": "Order placed", **result}


@app.post("/payment/webhook")
async def cmd_payment_webhook(req: PaymentWebhookRequest):
    """決済ゲートウェイからの結果通知"""
    outcome = GATEWAY_OUTCOMES.get(req.status, PaymentOutcome.PENDING)
    try:
        result = await commands.resolve(
            store, req.order_id, outcome, notifier=notifier, retry=retry_policy
        )
    except OrderNotFound as e:
        raise HTTPException(404, str(e))
    except ValidationError as e:
        raise HTTPException(422, str(e))
    except (TransientStoreError, PermanentStoreError) as e:
        raise _store_error(e)
    return {"message": "Success", **result}


@app.put("/inventory/{product_id}")
async def cmd_stock_item(product_id: str, req: StockRequest):
    """在庫の登録/補充"""
    try:
        return await commands.stock_item(
            store, product_id, req.quantity, req.price, retry=retry_policy
        )
    except (TransientStoreError, PermanentStoreError) as e:
        raise _store_error(e)


@app.post("/jobs/timeout-cleanup")
async def cmd_timeout_cleanup():
    """タイムアウト回収ジョブを1回実行する (外部スケジューラ用)"""
    try:
        summary = await reaper.run()
    except DiscoveryFailed:
        raise HTTPException(500, "ScanFailed")
    return summary.model_dump()


# ── Query Endpoints ──────────────────────────────


@app.get("/orders/{order_id}")
async def query_get_order(order_id: str):
    try:
        order = await queries.get_order(store, order_id, retry_policy)
    except ValidationError as e:
        raise HTTPException(422, str(e))
    except (TransientStoreError, PermanentStoreError) as e:
        raise _store_error(e)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@app.get("/inventory/{product_id}")
async def query_get_inventory_item(product_id: str):
    try:
        item = await queries.get_inventory_item(store, product_id, retry_policy)
    except (TransientStoreError, PermanentStoreError) as e:
        raise _store_error(e)
    if not item:
        raise HTTPException(404, "Product not found")
    return item


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
