import pytest
from fastapi.testclient import TestClient

from raffle.blockchain.funds import InMemoryLedger
from raffle.blockchain.vrf import LocalVRFCoordinator, RandomnessClient
from raffle.lottery.engine import Raffle
from raffle.lottery.errors import StakeNotFunded
from raffle.lottery.operator import UpkeepOperator
from raffle.web_server import RaffleWebServer

from tests.conftest import ENTRANCE_FEE, INTERVAL


@pytest.fixture
def client(raffle, coordinator):
    server = RaffleWebServer({}, raffle, coordinator, UpkeepOperator(raffle, {}))
    return TestClient(server.app)


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["timestamp"].endswith("+00:00")
    assert body["components"]["operator"] == "stopped"


def test_enter_and_list_players(client):
    response = client.post("/api/raffle/enter", json={"participant": "0xAlice", "stake": ENTRANCE_FEE})
    assert response.status_code == 200
    assert response.json()["numberOfPlayers"] == 1

    players = client.get("/api/raffle/players").json()
    assert players["players"] == ["0xAlice"]


def test_enter_with_low_stake_is_rejected(client):
    response = client.post("/api/raffle/enter", json={"participant": "0xAlice", "stake": 0})
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "InsufficientStake"


def test_perform_upkeep_not_needed_reports_state(client):
    client.post("/api/raffle/enter", json={"participant": "0xAlice", "stake": ENTRANCE_FEE})

    response = client.post("/api/upkeep/perform")

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["error"] == "UpkeepNotNeeded"
    assert detail["balance"] == ENTRANCE_FEE
    assert detail["participantCount"] == 1
    assert detail["raffleState"] == "OPEN"


def test_full_round_over_http(client, clock):
    client.post("/api/raffle/enter", json={"participant": "0xAlice", "stake": ENTRANCE_FEE})
    client.post("/api/raffle/enter", json={"participant": "0xBob", "stake": ENTRANCE_FEE})
    clock.advance(INTERVAL)

    assert client.get("/api/upkeep").json() == {"upkeepNeeded": True, "performData": "0x"}
    request_id = client.post("/api/upkeep/perform").json()["requestId"]

    closed = client.post("/api/raffle/enter", json={"participant": "0xCarol", "stake": ENTRANCE_FEE})
    assert closed.status_code == 409

    pending = client.get("/api/vrf/requests").json()["requests"]
    assert [req["requestId"] for req in pending] == [request_id]

    fulfilled = client.post("/api/vrf/fulfill", json={"request_id": request_id, "random_words": [3]})
    assert fulfilled.status_code == 200
    assert fulfilled.json()["recentWinner"] == "0xBob"

    winner = client.get("/api/raffle/winner").json()
    assert winner == {"winner": "0xBob", "amount": 2, "requestId": request_id, "timestamp": winner["timestamp"]}

    status = client.get("/api/raffle").json()
    assert status["stateLabel"] == "OPEN"
    assert status["numberOfPlayers"] == 0

    again = client.post("/api/vrf/fulfill", json={"request_id": request_id, "random_words": [3]})
    assert again.status_code == 404

    activities = client.get("/api/activities").json()["activities"]
    assert [item["activity_type"] for item in activities][:2] == ["WinnerPicked", "RequestedDraw"]


def test_failed_transfer_maps_to_bad_gateway(client, ledger, clock):
    client.post("/api/raffle/enter", json={"participant": "0xAlice", "stake": ENTRANCE_FEE})
    clock.advance(INTERVAL)
    request_id = client.post("/api/upkeep/perform").json()["requestId"]
    ledger.reject_transfers_to("0xAlice")

    response = client.post("/api/vrf/fulfill", json={"request_id": request_id, "random_words": [0]})

    assert response.status_code == 502
    assert client.get("/api/raffle").json()["stateLabel"] == "CALCULATING"


def test_vrf_routes_need_local_coordinator(raffle_config, ledger, clock):
    class ExternalCoordinator(RandomnessClient):
        client_id = raffle_config.randomness_client_id

        def request_draw(self, params, consumer):
            return 1

    external = ExternalCoordinator()
    raffle = Raffle(raffle_config, external, ledger, clock=clock)
    client = TestClient(RaffleWebServer({}, raffle, external).app)

    assert client.get("/api/vrf/requests").status_code == 404
    assert client.get("/api/health").json()["components"]["operator"] == "disabled"


def test_unfunded_stake_maps_to_payment_required(raffle_config, coordinator, clock):
    class UnfundedPool(InMemoryLedger):
        def accept_stake(self, participant, amount):
            raise StakeNotFunded(participant, amount, 0)

    raffle = Raffle(raffle_config, coordinator, UnfundedPool(raffle_config.raffle_address), clock=clock)
    client = TestClient(RaffleWebServer({}, raffle, coordinator).app)

    response = client.post("/api/raffle/enter", json={"participant": "0xAlice", "stake": ENTRANCE_FEE})

    assert response.status_code == 402
    assert response.json()["detail"]["error"] == "StakeNotFunded"
    assert raffle.get_players() == []
