"""
Order Service — タイムアウト回収ジョブ (Timeout Reaper)

一定時間 PENDING のままの注文を探し、決済失敗と同じ補償経路 (resolve) で
REJECTED に遷移させて在庫を戻す。

  1. 検出: status = PENDING かつ created_at < now - timeout をページングで走査
           (1回の実行で max_orders_per_run 件まで)
  2. バッチ化: batch_size 件ずつに分割し、parallel_batches 個のバッチを同時に処理
           バッチ内の注文も並行に処理する
  3. グループ間で短い休止を入れてストアのスループットを守る
  4. 個々の注文の失敗は集計するだけで、実行全体は止めない
     (検出フェーズの失敗だけが実行を中止する)

Webhook と同時に同じ注文を処理しても、resolve の前提条件により
後から来た側は already_resolved になるだけで在庫は二重に戻らない。

スケジューラ (cron / EventBridge など) からは
    python -m order_service.reaper
で起動する。REAPER_INTERVAL_SECONDS を設定すると API プロセス内でも定期実行する。
"""

import argparse
import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import config
from .aggregate import OrderAggregate, OrderStatus, PaymentOutcome, ResolutionSource
from .commands import resolve
from .config import ReaperSettings
from .errors import DiscoveryFailed, OrderServiceError, ValidationError
from .retry import call_with_retry
from .store import SqlStore, Store, create_tables

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderOutcome(BaseModel):
    order_id: str | None
    ok: bool
    already_resolved: bool = False
    reason: str | None = None


class RunSummary(BaseModel):
    discovered: int = 0
    processed: int = 0
    succeeded: int = 0
    already_resolved: int = 0
    failed: int = 0
    batches: int = 0
    failures: list[OrderOutcome] = []

    def record(self, outcome: OrderOutcome) -> None:
        self.processed += 1
        if not outcome.ok:
            self.failed += 1
            self.failures.append(outcome)
        elif outcome.already_resolved:
            self.already_resolved += 1
        else:
            self.succeeded += 1


class TimeoutReaper:
    def __init__(
        self,
        store: Store,
        settings: ReaperSettings | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.settings = settings or ReaperSettings()
        self.clock = clock
        self.sleep = sleep

    async def discover(self) -> list[dict]:
        """期限切れの PENDING 注文をページングで集める (上限 max_orders_per_run)。"""
        cutoff = self.clock() - timedelta(minutes=self.settings.timeout_minutes)
        cap = self.settings.max_orders_per_run
        expired: list[dict] = []
        last_key: str | None = None

        while True:
            limit = min(self.settings.page_size, cap - len(expired))

            async def scan_page(start_after=last_key, limit=limit):
                async with self.store.transaction() as uow:
                    return await uow.scan_orders(
                        int(OrderStatus.PENDING), cutoff, limit, start_after
                    )

            records, last_key = await call_with_retry(scan_page, self.settings.retry)
            expired.extend(records)
            if len(expired) >= cap or last_key is None:
                break
        return expired

    async def run(self) -> RunSummary:
        logger.info("Cleanup job started at %s", self.clock().isoformat())
        try:
            expired = await self.discover()
        except Exception as e:
            logger.exception("Scan failed")
            raise DiscoveryFailed(str(e)) from e

        logger.info(
            "Collected %d expired orders to process (cap=%d)",
            len(expired),
            self.settings.max_orders_per_run,
        )

        size = self.settings.batch_size
        batches = [expired[i:i + size] for i in range(0, len(expired), size)]
        summary = RunSummary(discovered=len(expired), batches=len(batches))

        width = self.settings.parallel_batches
        for start in range(0, len(batches), width):
            group = batches[start:start + width]
            results = await asyncio.gather(*(self._process_batch(batch) for batch in group))
            for batch_results in results:
                for outcome in batch_results:
                    summary.record(outcome)
            if start + width < len(batches):
                await self.sleep(self.settings.group_pause_ms / 1000)

        logger.info(
            "Cleanup summary: processed=%d succeeded=%d already_resolved=%d failed=%d batches=%d",
            summary.processed,
            summary.succeeded,
            summary.already_resolved,
            summary.failed,
            summary.batches,
        )
        return summary

    async def _process_batch(self, batch: list[dict]) -> list[OrderOutcome]:
        # バッチ内で同時に走る在庫トランザクションの数を制限する
        slots = asyncio.Semaphore(self.settings.inventory_parallel_per_order)

        async def bounded(record: dict) -> OrderOutcome:
            async with slots:
                return await self._process_order(record)

        return list(await asyncio.gather(*(bounded(record) for record in batch)))

    async def _process_order(self, record: dict) -> OrderOutcome:
        order_id = record.get("order_id")
        if not order_id:
            return OrderOutcome(order_id=None, ok=False, reason="missing-order-id")
        try:
            OrderAggregate.from_record(record)
        except ValidationError as e:
            logger.warning("%s - skipped invalid order: %s", order_id, e)
            return OrderOutcome(order_id=order_id, ok=False, reason=f"validation: {e}")

        try:
            result = await resolve(
                self.store,
                order_id,
                PaymentOutcome.FAILURE,
                source=ResolutionSource.TIMEOUT,
                retry=self.settings.retry,
                now=self.clock(),
            )
        except OrderServiceError as e:
            logger.warning("%s - cleanup failed: %s", order_id, e)
            return OrderOutcome(order_id=order_id, ok=False, reason=f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception("%s - unexpected error during cleanup", order_id)
            return OrderOutcome(order_id=order_id, ok=False, reason=f"{type(e).__name__}: {e}")

        if not result["already_resolved"]:
            logger.info("Order %s rejected & inventory restored", order_id)
        return OrderOutcome(order_id=order_id, ok=True, already_resolved=result["already_resolved"])


async def run_periodically(
    reaper: TimeoutReaper,
    interval: float,
    shutdown_event: asyncio.Event,
) -> None:
    """shutdown_event がセットされるまで interval 秒ごとにリーパーを実行する。"""
    logger.info("Timeout reaper scheduled every %.0f seconds", interval)
    while not shutdown_event.is_set():
        try:
            await reaper.run()
        except DiscoveryFailed:
            logger.warning("Cleanup run aborted, next attempt in %.0f seconds", interval)
        except Exception:
            logger.exception("Cleanup run crashed, next attempt in %.0f seconds", interval)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


async def _run_once(init_db: bool) -> int:
    engine = create_async_engine(config.DATABASE_URL, echo=False)
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        if init_db:
            await create_tables(engine)
        reaper = TimeoutReaper(SqlStore(session_factory), ReaperSettings.from_env())
        try:
            summary = await reaper.run()
        except DiscoveryFailed:
            return 1
        print(summary.model_dump_json())
        return 0
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Reject pending orders past their timeout")
    parser.add_argument("--init-db", action="store_true", help="create tables before running")
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(_run_once(args.init_db))


if __name__ == "__main__":
    sys.exit(main())
