"""
Order Service — フルフィルメント通知 (Redis Streams)

決済成功した注文を下流のフルフィルメントに通知する。
Pub/Sub は購読者がいないと消えるため、Streams (XADD) で永続化する。
配信は at-least-once。コンシューマは order_id で冪等に処理すること。
"""

import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .errors import PermanentStoreError, TransientStoreError
from .events import FulfillmentRequested

logger = logging.getLogger(__name__)


class FulfillmentNotifier:
    def __init__(self, redis: aioredis.Redis, stream: str = "fulfillment") -> None:
        self.redis = redis
        self.stream = stream

    async def publish(self, order_id: str) -> str:
        event = FulfillmentRequested(order_id=order_id, timestamp=datetime.now(timezone.utc))
        try:
            message_id = await self.redis.xadd(
                self.stream, {"order_id": event.order_id, "timestamp": event.timestamp.isoformat()}
            )
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientStoreError(f"Failed to publish fulfillment for {order_id}: {e}") from e
        except RedisError as e:
            raise PermanentStoreError(f"Failed to publish fulfillment for {order_id}: {e}") from e
        logger.info("Sent to %s: order_id=%s id=%s", self.stream, order_id, message_id)
        return message_id
