"""Outcome resolver tests (commands.resolve)"""
import pytest
import pytest_asyncio

from order_service.aggregate import OrderStatus, PaymentOutcome, ResolutionSource
from order_service.commands import reserve, resolve
from order_service.errors import (
    ConditionFailed,
    InventoryInvariantViolation,
    OrderNotFound,
    TransientStoreError,
)

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def placed(store, fast_retry):
    """An order for 4 x prod_a and 2 x prod_b, reserved and pending."""
    result = await reserve(
        store,
        "usr_1",
        [{"product_id": "prod_a", "qty": 4}, {"product_id": "prod_b", "qty": 2}],
        retry=fast_retry,
    )
    return result["order_id"]


def counters(store, product_id):
    item = store.inventory[product_id]
    return item["quantity"], item["reserved"]


class TestResolveSuccess:
    async def test_commits_reservation_and_notifies(self, store, notifier, fast_retry, placed):
        result = await resolve(
            store, placed, PaymentOutcome.SUCCESS, notifier=notifier, retry=fast_retry
        )

        assert result == {"order_id": placed, "status": "PROCESSING", "already_resolved": False}
        assert counters(store, "prod_a") == (6, 0)
        assert counters(store, "prod_b") == (3, 0)
        assert store.orders[placed]["status"] == OrderStatus.PROCESSING
        assert notifier.published == [placed]

    async def test_duplicate_success_republishes_without_mutation(
        self, store, notifier, fast_retry, placed
    ):
        await resolve(store, placed, PaymentOutcome.SUCCESS, notifier=notifier, retry=fast_retry)
        writes = store.inventory_writes

        result = await resolve(
            store, placed, PaymentOutcome.SUCCESS, notifier=notifier, retry=fast_retry
        )

        assert result["already_resolved"] is True
        assert result["status"] == "PROCESSING"
        assert store.inventory_writes == writes
        assert counters(store, "prod_a") == (6, 0)
        assert notifier.published == [placed, placed]

    async def test_notification_failure_surfaces_after_commit(
        self, store, notifier, fast_retry, placed
    ):
        notifier.failures = [TransientStoreError("redis down")] * fast_retry.attempts

        with pytest.raises(TransientStoreError):
            await resolve(store, placed, PaymentOutcome.SUCCESS, notifier=notifier, retry=fast_retry)

        # 状態遷移はコミット済み。Webhook の再送で通知される
        assert store.orders[placed]["status"] == OrderStatus.PROCESSING
        await resolve(store, placed, PaymentOutcome.SUCCESS, notifier=notifier, retry=fast_retry)
        assert notifier.published == [placed]

    async def test_transient_notification_failure_is_retried(
        self, store, notifier, fast_retry, placed
    ):
        notifier.failures = [TransientStoreError("redis down")]

        result = await resolve(
            store, placed, PaymentOutcome.SUCCESS, notifier=notifier, retry=fast_retry
        )

        assert result["status"] == "PROCESSING"
        assert notifier.failures == []
        assert notifier.published == [placed]


class TestResolveFailure:
    async def test_payment_failure_restores_inventory(self, store, notifier, fast_retry, placed):
        result = await resolve(
            store, placed, PaymentOutcome.FAILURE, notifier=notifier, retry=fast_retry
        )

        assert result["status"] == "FAILED"
        assert counters(store, "prod_a") == (10, 0)
        assert counters(store, "prod_b") == (5, 0)
        assert notifier.published == []

    async def test_timeout_failure_rejects(self, store, fast_retry, placed):
        result = await resolve(
            store,
            placed,
            PaymentOutcome.FAILURE,
            source=ResolutionSource.TIMEOUT,
            retry=fast_retry,
        )
        assert result["status"] == "REJECTED"
        assert store.orders[placed]["status"] == OrderStatus.REJECTED

    async def test_second_failure_is_a_no_op(self, store, fast_retry, placed):
        await resolve(store, placed, PaymentOutcome.FAILURE, retry=fast_retry)
        writes = store.inventory_writes

        result = await resolve(
            store, placed, PaymentOutcome.FAILURE, source=ResolutionSource.TIMEOUT, retry=fast_retry
        )

        assert result == {"order_id": placed, "status": "FAILED", "already_resolved": True}
        assert store.inventory_writes == writes
        assert counters(store, "prod_a") == (10, 0)
        assert counters(store, "prod_b") == (5, 0)

    async def test_lost_race_discards_inventory_update(self, store, fast_retry, placed):
        """The webhook commits between our inventory step and our status update."""

        def webhook_failure(s):
            s.orders[placed]["status"] = int(OrderStatus.FAILED)
            s.inventory["prod_a"]["quantity"] += 4
            s.inventory["prod_a"]["reserved"] -= 4
            s.inventory["prod_b"]["quantity"] += 2
            s.inventory["prod_b"]["reserved"] -= 2

        store.before_transition.append(
            lambda s, order_id: s.concurrent_write(webhook_failure)
        )

        result = await resolve(
            store, placed, PaymentOutcome.FAILURE, source=ResolutionSource.TIMEOUT, retry=fast_retry
        )

        assert result == {"order_id": placed, "status": "FAILED", "already_resolved": True}
        assert counters(store, "prod_a") == (10, 0)
        assert counters(store, "prod_b") == (5, 0)

    async def test_inventory_condition_lost_to_committed_webhook(self, store, fast_retry, placed):
        """The webhook already released the reservation, so our conditioned update fails."""

        def webhook_commits_first(s):
            def webhook_failure(s):
                s.orders[placed]["status"] = int(OrderStatus.FAILED)
                s.inventory["prod_a"]["quantity"] += 4
                s.inventory["prod_a"]["reserved"] -= 4
                s.inventory["prod_b"]["quantity"] += 2
                s.inventory["prod_b"]["reserved"] -= 2

            s.concurrent_write(webhook_failure)
            raise ConditionFailed("prod_a")

        store.fail("apply_inventory", webhook_commits_first)

        result = await resolve(
            store, placed, PaymentOutcome.FAILURE, source=ResolutionSource.TIMEOUT, retry=fast_retry
        )

        assert result == {"order_id": placed, "status": "FAILED", "already_resolved": True}
        assert counters(store, "prod_a") == (10, 0)
        assert counters(store, "prod_b") == (5, 0)

    async def test_success_after_timeout_rejection_is_not_applied(
        self, store, notifier, fast_retry, placed
    ):
        await resolve(
            store, placed, PaymentOutcome.FAILURE, source=ResolutionSource.TIMEOUT, retry=fast_retry
        )

        result = await resolve(
            store, placed, PaymentOutcome.SUCCESS, notifier=notifier, retry=fast_retry
        )

        assert result["already_resolved"] is True
        assert result["status"] == "REJECTED"
        assert notifier.published == []
        assert counters(store, "prod_a") == (10, 0)


class TestResolveEdgeCases:
    async def test_unknown_order(self, store, fast_retry):
        with pytest.raises(OrderNotFound):
            await resolve(store, "ORD-missing", PaymentOutcome.FAILURE, retry=fast_retry)

    async def test_pending_outcome_changes_nothing(self, store, notifier, fast_retry, placed):
        result = await resolve(
            store, placed, PaymentOutcome.PENDING, notifier=notifier, retry=fast_retry
        )
        assert result == {"order_id": placed, "status": "PENDING", "already_resolved": False}
        assert counters(store, "prod_a") == (6, 4)
        assert notifier.published == []

    async def test_reserved_underflow_is_an_invariant_violation(self, store, fast_retry, placed):
        store.inventory["prod_b"]["reserved"] = 1

        with pytest.raises(InventoryInvariantViolation):
            await resolve(store, placed, PaymentOutcome.FAILURE, retry=fast_retry)

        assert store.orders[placed]["status"] == OrderStatus.PENDING
        assert counters(store, "prod_a") == (6, 4)

    async def test_transient_errors_are_retried(self, store, fast_retry, placed):
        store.fail("transition_order", TransientStoreError("throttled"))

        result = await resolve(store, placed, PaymentOutcome.FAILURE, retry=fast_retry)

        assert result["status"] == "FAILED"
        assert counters(store, "prod_a") == (10, 0)


async def test_conservation_across_mixed_outcomes(store, notifier, fast_retry):
    pool_before = {pid: item["quantity"] + item["reserved"] for pid, item in store.inventory.items()}

    orders = []
    for qty in (1, 2, 3):
        result = await reserve(
            store,
            "usr_1",
            [{"product_id": "prod_a", "qty": qty}, {"product_id": "prod_b", "qty": 1}],
            retry=fast_retry,
        )
        orders.append(result["order_id"])

    await resolve(store, orders[0], PaymentOutcome.FAILURE, retry=fast_retry)
    await resolve(
        store, orders[1], PaymentOutcome.FAILURE, source=ResolutionSource.TIMEOUT, retry=fast_retry
    )
    await resolve(store, orders[0], PaymentOutcome.FAILURE, retry=fast_retry)

    for pid, item in store.inventory.items():
        assert item["quantity"] + item["reserved"] == pool_before[pid]
    # reserved は PENDING 注文の数量の合計に等しい
    assert store.inventory["prod_a"]["reserved"] == 3
    assert store.inventory["prod_b"]["reserved"] == 1
