import asyncio

import pytest

from raffle.blockchain.vrf import LocalVRFCoordinator, RandomnessConsumer
from raffle.lottery.errors import (
    ConsumerNotRegistered,
    DuplicateOrUnknownRequest,
    InsufficientSubscriptionBalance,
    InvalidSubscription,
    OnlyCoordinatorCanFulfill,
)
from raffle.lottery.models import DrawRequestParams


class RecordingConsumer(RandomnessConsumer):
    def __init__(self, coordinator_id, consumer_id="consumer", fail_times=0):
        super().__init__(coordinator_id)
        self._consumer_id = consumer_id
        self.fail_times = fail_times
        self.received = []

    @property
    def consumer_id(self):
        return self._consumer_id

    def fulfill_random_words(self, request_id, random_words):
        if self.fail_times:
            self.fail_times -= 1
            raise RuntimeError("consumer busy")
        self.received.append((request_id, list(random_words)))


@pytest.fixture
def local_coordinator():
    return LocalVRFCoordinator("coord", base_fee=10)


def _params(sub_id, num_words=1):
    return DrawRequestParams(gas_lane="0x01", subscription_id=sub_id, num_words=num_words)


def _subscribed(coordinator, consumer, funding=100):
    sub_id = coordinator.create_subscription(owner="owner")
    coordinator.fund_subscription(sub_id, funding)
    coordinator.add_consumer(sub_id, consumer.consumer_id)
    return sub_id


def test_subscription_ids_increment(local_coordinator):
    assert local_coordinator.create_subscription() == 1
    assert local_coordinator.create_subscription() == 2


def test_fund_unknown_subscription(local_coordinator):
    with pytest.raises(InvalidSubscription):
        local_coordinator.fund_subscription(42, 1)


def test_fund_requires_positive_amount(local_coordinator):
    sub_id = local_coordinator.create_subscription()
    with pytest.raises(ValueError):
        local_coordinator.fund_subscription(sub_id, 0)


def test_request_requires_registered_consumer(local_coordinator):
    consumer = RecordingConsumer("coord")
    sub_id = local_coordinator.create_subscription()
    with pytest.raises(ConsumerNotRegistered):
        local_coordinator.request_draw(_params(sub_id), consumer)


def test_remove_consumer(local_coordinator):
    consumer = RecordingConsumer("coord")
    sub_id = _subscribed(local_coordinator, consumer)
    local_coordinator.remove_consumer(sub_id, consumer.consumer_id)
    with pytest.raises(ConsumerNotRegistered):
        local_coordinator.remove_consumer(sub_id, consumer.consumer_id)


def test_request_ids_are_unique_and_pending(local_coordinator):
    consumer = RecordingConsumer("coord")
    sub_id = _subscribed(local_coordinator, consumer)

    first = local_coordinator.request_draw(_params(sub_id), consumer)
    second = local_coordinator.request_draw(_params(sub_id), consumer)

    assert first != second
    assert [req.request_id for req in local_coordinator.pending_requests()] == [first, second]


def test_fulfill_delivers_words_once_and_charges_fee(local_coordinator):
    consumer = RecordingConsumer("coord")
    sub_id = _subscribed(local_coordinator, consumer)
    request_id = local_coordinator.request_draw(_params(sub_id), consumer)

    local_coordinator.fulfill_random_words(request_id, [123])

    assert consumer.received == [(request_id, [123])]
    assert local_coordinator.get_subscription(sub_id).balance == 90
    with pytest.raises(DuplicateOrUnknownRequest):
        local_coordinator.fulfill_random_words(request_id, [123])


def test_fulfill_generates_requested_number_of_words(local_coordinator):
    consumer = RecordingConsumer("coord")
    sub_id = _subscribed(local_coordinator, consumer)
    request_id = local_coordinator.request_draw(_params(sub_id, num_words=3), consumer)

    words = local_coordinator.fulfill_random_words(request_id)

    assert len(words) == 3
    assert all(0 <= word < 2**256 for word in words)


def test_underfunded_subscription_cannot_fulfill(local_coordinator):
    consumer = RecordingConsumer("coord")
    sub_id = _subscribed(local_coordinator, consumer, funding=5)
    request_id = local_coordinator.request_draw(_params(sub_id), consumer)

    with pytest.raises(InsufficientSubscriptionBalance):
        local_coordinator.fulfill_random_words(request_id, [1])
    assert local_coordinator.is_pending(request_id)


def test_consumer_failure_keeps_request_pending(local_coordinator):
    consumer = RecordingConsumer("coord", fail_times=1)
    sub_id = _subscribed(local_coordinator, consumer)
    request_id = local_coordinator.request_draw(_params(sub_id), consumer)

    with pytest.raises(RuntimeError):
        local_coordinator.fulfill_random_words(request_id, [5])
    assert local_coordinator.is_pending(request_id)
    assert local_coordinator.get_subscription(sub_id).balance == 100

    local_coordinator.fulfill_random_words(request_id, [5])
    assert consumer.received == [(request_id, [5])]
    assert not local_coordinator.is_pending(request_id)


def test_consumer_bound_to_other_coordinator_rejects(local_coordinator):
    consumer = RecordingConsumer("another-coordinator")
    sub_id = _subscribed(local_coordinator, consumer)
    request_id = local_coordinator.request_draw(_params(sub_id), consumer)

    with pytest.raises(OnlyCoordinatorCanFulfill):
        local_coordinator.fulfill_random_words(request_id, [5])
    assert consumer.received == []
    assert local_coordinator.is_pending(request_id)


async def _wait_until_fulfilled(coordinator, request_id):
    for _ in range(100):
        if not coordinator.is_pending(request_id):
            return
        await asyncio.sleep(0.01)


async def test_auto_fulfill_on_running_loop():
    coordinator = LocalVRFCoordinator("coord", auto_fulfill_delay=0)
    consumer = RecordingConsumer("coord")
    sub_id = _subscribed(coordinator, consumer)

    request_id = coordinator.request_draw(_params(sub_id), consumer)
    await _wait_until_fulfilled(coordinator, request_id)

    assert [rid for rid, _ in consumer.received] == [request_id]
    assert not coordinator.is_pending(request_id)


async def test_auto_fulfill_for_request_from_worker_thread():
    coordinator = LocalVRFCoordinator("coord", auto_fulfill_delay=0)
    coordinator.attach_loop(asyncio.get_running_loop())
    consumer = RecordingConsumer("coord")
    sub_id = _subscribed(coordinator, consumer)

    request_id = await asyncio.to_thread(coordinator.request_draw, _params(sub_id), consumer)
    await _wait_until_fulfilled(coordinator, request_id)

    assert [rid for rid, _ in consumer.received] == [request_id]


def test_auto_fulfill_without_loop_leaves_request_pending():
    coordinator = LocalVRFCoordinator("coord", auto_fulfill_delay=0)
    consumer = RecordingConsumer("coord")
    sub_id = _subscribed(coordinator, consumer)

    request_id = coordinator.request_draw(_params(sub_id), consumer)
    assert coordinator.is_pending(request_id)
