"""
Order Service — ストア (Order Store / Inventory Store)

注文テーブルと在庫テーブルへのアクセスをまとめる。
コマンド側はこのモジュールの契約 (Store / UnitOfWork) にだけ依存する:

- transaction() の中の書き込みはすべてコミットされるか、すべて破棄される
- apply_inventory() は各行に前提条件 (quantity/reserved が負にならない) を付けて適用し、
  1件でも満たされなければ ConditionFailed を送出する
- transition_order() は status の compare-and-set。勝った呼び出しだけが True を受け取る

本番実装は PostgreSQL (SQLAlchemy AsyncSession + text())。
"""

import asyncio
import json
import logging
from decimal import Decimal
from collections.abc import AsyncIterator, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from .aggregate import InventoryUpdate
from .errors import ConditionFailed, PermanentStoreError, TransientStoreError

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected, lock_not_available,
# too_many_connections, admin_shutdown, cannot_connect_now
TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03", "53300", "57P01", "57P03"}


class UnitOfWork(Protocol):
    async def get_order(self, order_id: str) -> dict | None: ...

    async def insert_order(self, record: dict) -> None: ...

    async def transition_order(
        self, order_id: str, expected: int, new: int, now: datetime
    ) -> bool: ...

    async def scan_orders(
        self, status: int, created_before: datetime, limit: int, start_after: str | None
    ) -> tuple[list[dict], str | None]: ...

    async def get_inventory(self, product_ids: Sequence[str]) -> dict[str, dict]: ...

    async def apply_inventory(self, updates: Sequence[InventoryUpdate]) -> None: ...

    async def put_inventory(self, product_id: str, quantity: int, price: float) -> dict: ...


class Store(Protocol):
    def transaction(self) -> AbstractAsyncContextManager[UnitOfWork]: ...


# asyncpg の接続失敗 (接続拒否・接続タイムアウト) は SQLAlchemy に包まれずに届く
CONNECTION_ERRORS = (OSError, asyncio.TimeoutError)


def classify_error(exc: SQLAlchemyError) -> Exception:
    """SQLAlchemy の例外を一時的/恒久的なストア障害に分類する。"""
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if code in TRANSIENT_SQLSTATES or exc.connection_invalidated:
            return TransientStoreError(str(exc))
    if isinstance(exc, (OperationalError, InterfaceError, PoolTimeoutError)):
        return TransientStoreError(str(exc))
    return PermanentStoreError(str(exc))


def _load_json(value):
    return json.loads(value) if isinstance(value, str) else value


def _order_record(row) -> dict:
    return {
        "order_id": row.order_id,
        "user_id": row.user_id,
        "items": _load_json(row.items),
        "total": float(row.total) if row.total is not None else None,
        "status": row.status,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


def _inventory_record(row) -> dict:
    return {
        "product_id": row.product_id,
        "quantity": row.quantity,
        "reserved": row.reserved,
        "price": float(row.price),
    }


class SqlUnitOfWork:
    """1つの AsyncSession トランザクションに束縛された操作群"""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ── 注文 ────────────────────────────────────────

    async def get_order(self, order_id: str) -> dict | None:
        result = await self.session.execute(
            text("""
                SELECT order_id, user_id, items, total, status, created_at, updated_at
                FROM orders WHERE order_id = :id
            """),
            {"id": order_id},
        )
        row = result.fetchone()
        return _order_record(row) if row else None

    async def insert_order(self, record: dict) -> None:
        await self.session.execute(
            text("""
                INSERT INTO orders
                    (order_id, user_id, items, total, status, created_at, updated_at)
                VALUES
                    (:order_id, :user_id, CAST(:items AS JSONB), :total, :status,
                     :created_at, :updated_at)
            """),
            {
                **record,
                "items": json.dumps(record["items"]),
                "total": Decimal(str(record["total"])),
            },
        )

    async def transition_order(
        self, order_id: str, expected: int, new: int, now: datetime
    ) -> bool:
        # 状態の compare-and-set: WHERE status = :expected が単一ライターのゲート
        result = await self.session.execute(
            text("""
                UPDATE orders
                SET status = :new, updated_at = :now
                WHERE order_id = :id AND status = :expected
            """),
            {"id": order_id, "new": new, "expected": expected, "now": now},
        )
        return result.rowcount == 1

    async def scan_orders(
        self, status: int, created_before: datetime, limit: int, start_after: str | None
    ) -> tuple[list[dict], str | None]:
        params = {"status": status, "cutoff": created_before, "limit": limit}
        keyset = ""
        if start_after is not None:
            keyset = "AND order_id > :start_after"
            params["start_after"] = start_after
        result = await self.session.execute(
            text(f"""
                SELECT order_id, user_id, items, total, status, created_at, updated_at
                FROM orders
                WHERE status = :status AND created_at < :cutoff {keyset}
                ORDER BY order_id
                LIMIT :limit
            """),
            params,
        )
        records = [_order_record(row) for row in result.fetchall()]
        last_key = records[-1]["order_id"] if len(records) == limit else None
        return records, last_key

    # ── 在庫 ────────────────────────────────────────

    async def get_inventory(self, product_ids: Sequence[str]) -> dict[str, dict]:
        if not product_ids:
            return {}
        result = await self.session.execute(
            text("""
                SELECT product_id, quantity, reserved, price
                FROM inventory WHERE product_id = ANY(:ids)
            """),
            {"ids": list(product_ids)},
        )
        return {row.product_id: _inventory_record(row) for row in result.fetchall()}

    async def apply_inventory(self, updates: Sequence[InventoryUpdate]) -> None:
        now = datetime.now(timezone.utc)
        for update in updates:
            result = await self.session.execute(
                text("""
                    UPDATE inventory
                    SET quantity = quantity + :dq,
                        reserved = reserved + :dr,
                        updated_at = :now
                    WHERE product_id = :id
                      AND quantity + :dq >= 0
                      AND reserved + :dr >= 0
                """),
                {
                    "id": update.product_id,
                    "dq": update.quantity_delta,
                    "dr": update.reserved_delta,
                    "now": now,
                },
            )
            if result.rowcount != 1:
                raise ConditionFailed(update.product_id)

    async def put_inventory(self, product_id: str, quantity: int, price: float) -> dict:
        result = await self.session.execute(
            text("""
                INSERT INTO inventory (product_id, quantity, reserved, price, updated_at)
                VALUES (:id, :quantity, 0, :price, :now)
                ON CONFLICT (product_id) DO UPDATE SET
                    quantity = :quantity,
                    price = :price,
                    updated_at = :now
                RETURNING product_id, quantity, reserved, price
            """),
            {
                "id": product_id,
                "quantity": quantity,
                "price": Decimal(str(price)),
                "now": datetime.now(timezone.utc),
            },
        )
        return _inventory_record(result.fetchone())


class SqlStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlUnitOfWork]:
        async with self.session_factory() as session:
            try:
                yield SqlUnitOfWork(session)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise classify_error(e) from e
            except CONNECTION_ERRORS as e:
                await session.rollback()
                raise TransientStoreError(f"database unreachable: {e!r}") from e
            except BaseException:
                await session.rollback()
                raise


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        order_id   TEXT PRIMARY KEY,
        user_id    TEXT NOT NULL,
        items      JSONB NOT NULL,
        total      NUMERIC(12, 2) NOT NULL CHECK (total >= 0),
        status     SMALLINT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS orders_status_created_at_idx
        ON orders (status, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory (
        product_id TEXT PRIMARY KEY,
        quantity   INTEGER NOT NULL CHECK (quantity >= 0),
        reserved   INTEGER NOT NULL DEFAULT 0 CHECK (reserved >= 0),
        price      NUMERIC(12, 2) NOT NULL CHECK (price >= 0),
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
]


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))
    logger.info("Tables ready: orders, inventory")
