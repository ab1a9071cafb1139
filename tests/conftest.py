import pytest

from raffle.blockchain.funds import InMemoryLedger
from raffle.blockchain.vrf import LocalVRFCoordinator
from raffle.lottery.engine import Raffle
from raffle.lottery.event_manager import MemoryStore
from raffle.lottery.models import DrawRequestParams, RaffleConfig

RAFFLE_ADDRESS = "0xRaffle"
COORDINATOR_ID = "vrf-coordinator"
ENTRANCE_FEE = 1
INTERVAL = 30
START_TIME = 1_700_000_000


class FakeClock:
    """Manually advanced clock so interval boundaries are exact."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def coordinator():
    coord = LocalVRFCoordinator(COORDINATOR_ID)
    sub_id = coord.create_subscription(owner=RAFFLE_ADDRESS)
    coord.fund_subscription(sub_id, 10**18)
    coord.add_consumer(sub_id, RAFFLE_ADDRESS)
    return coord


@pytest.fixture
def ledger():
    return InMemoryLedger(holder=RAFFLE_ADDRESS)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def raffle_config():
    return RaffleConfig(
        entrance_fee=ENTRANCE_FEE,
        interval=INTERVAL,
        request=DrawRequestParams(gas_lane="0x" + "ab" * 32, subscription_id=1),
        randomness_client_id=COORDINATOR_ID,
        raffle_address=RAFFLE_ADDRESS,
    )


@pytest.fixture
def raffle(raffle_config, coordinator, ledger, store, clock):
    return Raffle(raffle_config, coordinator, ledger, store=store, clock=clock)


@pytest.fixture
def ready_raffle(raffle, clock):
    """A raffle with one player whose interval has just elapsed."""
    raffle.enter_raffle("0xAlice", ENTRANCE_FEE)
    clock.advance(INTERVAL)
    return raffle
