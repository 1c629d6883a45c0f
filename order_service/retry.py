"""
Order Service — リトライ (指数バックオフ + ジッター)

一時的なストア障害 (TransientStoreError) だけを再試行する。
待機時間は base * 2^(n-1) + random(0, base)。
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from .config import RetryPolicy
from .errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retry(fn: Callable[[], Awaitable[T]], policy: RetryPolicy) -> T:
    """fn を実行し、一時的な障害なら policy.attempts 回まで再試行する。"""
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.attempts),
        wait=wait_exponential(multiplier=policy.base_delay)
        + wait_random(0, policy.base_delay),
        retry=retry_if_exception_type(TransientStoreError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    return await retrying(fn)
