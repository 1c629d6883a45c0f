"""Shared fixtures for order service tests."""
from datetime import datetime, timedelta, timezone

import pytest

from order_service.config import ReaperSettings, RetryPolicy

from .mocks import MemoryStore, MockNotifier

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def expired_at():
    """A creation time well past the default 2 minute timeout."""
    return NOW - timedelta(minutes=10)


@pytest.fixture
def fast_retry():
    return RetryPolicy(attempts=3, base_delay_ms=0)


@pytest.fixture
def reaper_settings(fast_retry):
    return ReaperSettings(
        timeout_minutes=2,
        max_orders_per_run=100,
        page_size=10,
        batch_size=3,
        parallel_batches=2,
        inventory_parallel_per_order=2,
        group_pause_ms=0,
        retry=fast_retry,
    )


@pytest.fixture
def store():
    """MemoryStore stocked with two products."""
    s = MemoryStore()
    s.set_item("prod_a", quantity=10, price=2.5)
    s.set_item("prod_b", quantity=5, price=10.0)
    return s


@pytest.fixture
def notifier():
    return MockNotifier()
