import json

from raffle.blockchain.funds import InMemoryLedger
from raffle.lottery.models import RoundState
from raffle.main import RaffleApp, bootstrap_local_coordinator, build_funds
from raffle.utils.config import build_raffle_config

CONFIG = {
    "raffle": {"address": "0xRaffle", "entrance_fee": 2, "interval": 0},
    "vrf": {"coordinator_address": "coord", "base_fee": 1, "fund_amount": 5},
}


def test_build_funds_defaults_to_local_ledger():
    raffle_config = build_raffle_config(CONFIG)
    funds = build_funds(CONFIG, raffle_config)
    assert isinstance(funds, InMemoryLedger)
    assert funds.holder == "0xRaffle"


def test_bootstrap_local_coordinator_registers_raffle():
    raffle_config = build_raffle_config(CONFIG)
    coordinator, updated = bootstrap_local_coordinator(CONFIG, raffle_config)

    sub = coordinator.get_subscription(updated.request.subscription_id)
    assert coordinator.client_id == "coord"
    assert coordinator.base_fee == 1
    assert coordinator.auto_fulfill_delay is None
    assert sub.balance == 5
    assert sub.consumers == {"0xRaffle"}


def test_app_runs_a_round_end_to_end(tmp_path):
    path = tmp_path / "raffle.conf"
    path.write_text(json.dumps(CONFIG))
    app = RaffleApp(str(path))
    app.initialize()
    raffle = app.raffle
    assert app.coordinator is app.web_server.randomness

    raffle.enter_raffle("0xAlice", 2)
    request_id = app.operator.check_and_perform()
    app.web_server.randomness.fulfill_random_words(request_id, [0])

    assert raffle.get_recent_winner() == "0xAlice"
    assert raffle.get_raffle_state() == RoundState.OPEN
