from raffle.lottery.event_manager import (
    ENTERED_RAFFLE,
    RAFFLE_UPDATE,
    WINNER_PICKED,
    MemoryStore,
)
from raffle.utils.common import shorten_eth_address


def test_publish_notifies_specific_and_aggregate_listeners():
    store = MemoryStore()
    specific, aggregate = [], []
    store.add_listener(ENTERED_RAFFLE, specific.append)
    store.add_listener(RAFFLE_UPDATE, aggregate.append)

    store.publish(ENTERED_RAFFLE, {"player": "0x1234567890abcdef1234"}, event_time=10)

    assert specific[0]["type"] == ENTERED_RAFFLE
    assert specific[0]["message"] == "0x123456...1234 entered the raffle"
    assert aggregate == specific


def test_failing_listener_does_not_break_publish():
    store = MemoryStore()

    def broken(payload):
        raise RuntimeError("boom")

    received = []
    store.add_listener(ENTERED_RAFFLE, broken)
    store.add_listener(ENTERED_RAFFLE, received.append)

    store.publish(ENTERED_RAFFLE, {"player": "0xA"}, event_time=1)
    assert len(received) == 1


def test_removed_listener_is_not_called():
    store = MemoryStore()
    received = []
    store.add_listener(ENTERED_RAFFLE, received.append)
    store.remove_listener(ENTERED_RAFFLE, received.append)
    store.publish(ENTERED_RAFFLE, {"player": "0xA"}, event_time=1)
    assert received == []


def test_winner_picked_message():
    store = MemoryStore()
    item = store.publish(WINNER_PICKED, {"winner": "0xA", "amount": 6, "requestId": 3}, event_time=99)

    assert item.message == "Winner picked: 0xa receives 6"
    assert item.get_item_id() == "99-WinnerPicked-3"


def test_feed_capacity_is_bounded():
    store = MemoryStore(feed_capacity=3)
    for i in range(5):
        store.publish(ENTERED_RAFFLE, {"player": f"0x{i}"}, event_time=i)

    assert [item.event_time for item in store.get_live_feed()] == [2, 3, 4]
    assert [item.event_time for item in store.get_live_feed(limit=1)] == [4]


def test_shorten_eth_address():
    assert shorten_eth_address("0xABCDEF1234567890") == "0xabcdef...7890"
    assert shorten_eth_address("short") == "0xshort"
    assert shorten_eth_address("") == ""
