"""FastAPI web server exposing the raffle over HTTP."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from raffle import __version__
from raffle.blockchain.vrf import LocalVRFCoordinator, RandomnessClient
from raffle.lottery.engine import Raffle
from raffle.lottery.errors import (
    ConsumerNotRegistered,
    DuplicateOrUnknownRequest,
    InsufficientStake,
    InsufficientSubscriptionBalance,
    InvalidSubscription,
    NoDrawPending,
    OnlyCoordinatorCanFulfill,
    RaffleError,
    RoundNotOpen,
    StakeNotFunded,
    TransferFailed,
    UpkeepNotNeeded,
)
from raffle.lottery.models import LiveFeedItem
from raffle.lottery.operator import UpkeepOperator
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

# RaffleError subclass -> HTTP status
ERROR_STATUS = {
    InsufficientStake: 400,
    StakeNotFunded: 402,
    RoundNotOpen: 409,
    UpkeepNotNeeded: 409,
    NoDrawPending: 409,
    DuplicateOrUnknownRequest: 404,
    InvalidSubscription: 404,
    ConsumerNotRegistered: 409,
    InsufficientSubscriptionBalance: 402,
    OnlyCoordinatorCanFulfill: 403,
    TransferFailed: 502,
}


class EnterRaffleRequest(BaseModel):
    participant: str = Field(min_length=1)
    stake: int = Field(ge=0)


class FulfillRequest(BaseModel):
    request_id: int
    random_words: Optional[List[int]] = None


class RaffleWebServer:
    """HTTP gateway for the raffle backend."""

    def __init__(
        self,
        config: Dict[str, Any],
        raffle: Raffle,
        randomness: RandomnessClient,
        operator: Optional[UpkeepOperator] = None,
    ) -> None:
        self.config = config
        self.raffle = raffle
        self.randomness = randomness
        self.operator = operator
        self._server = None

        self.app = FastAPI(
            title="Raffle API",
            description="Time-gated raffle with externally supplied randomness",
            version=__version__,
        )
        self._setup_middleware()
        self._setup_routes()

    # ------------------------------------------------------------------
    # FastAPI scaffolding
    # ------------------------------------------------------------------
    def _setup_middleware(self) -> None:
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.get("server", {}).get("cors_origins", ["*"]),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _setup_routes(self) -> None:  # noqa: C901 - routing setup intentionally verbose
        # ------------------------------------------------------------------
        # Health & status
        # ------------------------------------------------------------------
        @self.app.get("/api/health")
        async def health_check() -> Dict[str, Any]:
            operator_state = self.operator.get_status() if self.operator else {}
            return {
                "status": "ok",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "components": {
                    "web": True,
                    "operator": operator_state.get("status", "disabled"),
                    "randomness": self.randomness.client_id,
                },
            }

        @self.app.get("/api/raffle")
        async def get_raffle() -> Dict[str, Any]:
            response = await asyncio.to_thread(self.raffle.get_status)
            response["operator"] = self.operator.get_status() if self.operator else None
            return response

        @self.app.get("/api/raffle/players")
        async def get_players() -> Dict[str, Any]:
            players = await asyncio.to_thread(self.raffle.get_players)
            return {
                "players": players,
                "numberOfPlayers": len(players),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

        @self.app.get("/api/raffle/winner")
        async def get_recent_winner() -> Dict[str, Any]:
            record = await asyncio.to_thread(self.raffle.get_winner_record)
            if record is None:
                return {"winner": None}
            return {
                "winner": record.winner,
                "amount": record.amount,
                "requestId": record.request_id,
                "timestamp": record.timestamp,
            }

        @self.app.get("/api/activities")
        async def get_live_feed(limit: int = 50) -> Dict[str, Any]:
            limit = max(1, min(limit, 200))
            feed = self.raffle.store.get_live_feed(limit=limit)
            return {"activities": [self._serialize_activity(item) for item in reversed(feed)]}

        # ------------------------------------------------------------------
        # Raffle operations
        # ------------------------------------------------------------------
        @self.app.post("/api/raffle/enter")
        async def enter_raffle(request: EnterRaffleRequest) -> Dict[str, Any]:
            try:
                await asyncio.to_thread(self.raffle.enter_raffle, request.participant, request.stake)
            except RaffleError as exc:
                raise self._http_error(exc)
            return {
                "status": "entered",
                "participant": request.participant,
                "numberOfPlayers": await asyncio.to_thread(self.raffle.get_number_of_players),
            }

        @self.app.get("/api/upkeep")
        async def check_upkeep() -> Dict[str, Any]:
            upkeep_needed, perform_data = await asyncio.to_thread(self.raffle.check_upkeep)
            return {"upkeepNeeded": upkeep_needed, "performData": "0x" + perform_data.hex()}

        @self.app.post("/api/upkeep/perform")
        async def perform_upkeep() -> Dict[str, Any]:
            try:
                request_id = await asyncio.to_thread(self.raffle.perform_upkeep)
            except RaffleError as exc:
                raise self._http_error(exc)
            return {"status": "requested", "requestId": request_id}

        # ------------------------------------------------------------------
        # Local coordinator controls
        # ------------------------------------------------------------------
        @self.app.get("/api/vrf/requests")
        async def pending_requests() -> Dict[str, Any]:
            coordinator = self._local_coordinator()
            return {"requests": [req.to_dict() for req in coordinator.pending_requests()]}

        @self.app.post("/api/vrf/fulfill")
        async def fulfill(request: FulfillRequest) -> Dict[str, Any]:
            coordinator = self._local_coordinator()
            try:
                words = await asyncio.to_thread(
                    coordinator.fulfill_random_words, request.request_id, request.random_words
                )
            except RaffleError as exc:
                raise self._http_error(exc)
            return {
                "status": "fulfilled",
                "requestId": request.request_id,
                "randomWords": [str(word) for word in words],
                "recentWinner": await asyncio.to_thread(self.raffle.get_recent_winner),
            }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _local_coordinator(self) -> LocalVRFCoordinator:
        if not isinstance(self.randomness, LocalVRFCoordinator):
            raise HTTPException(status_code=404, detail="Randomness is supplied by an external coordinator")
        return self.randomness

    @staticmethod
    def _http_error(exc: RaffleError) -> HTTPException:
        status = ERROR_STATUS.get(type(exc), 400)
        detail: Dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
        if isinstance(exc, UpkeepNotNeeded):
            detail.update(exc.to_dict())
        logger.warning("Request rejected with %s: %s", status, exc)
        return HTTPException(status_code=status, detail=detail)

    @staticmethod
    def _serialize_activity(item: LiveFeedItem) -> Dict[str, Any]:
        return {
            "activity_id": item.get_item_id(),
            "activity_type": item.event_type,
            "message": item.message,
            "details": item.details,
            "timestamp": item.event_time,
        }

    # ------------------------------------------------------------------
    # Lifecycle management
    # ------------------------------------------------------------------
    async def start(self, host: str = "0.0.0.0", port: int = 6080) -> None:
        import uvicorn

        logger.info("Starting raffle web server on %s:%s", host, port)
        config = uvicorn.Config(self.app, host=host, port=port, log_level="info", access_log=True)
        self._server = uvicorn.Server(config)
        try:
            await self._server.serve()
        finally:
            logger.info("Raffle web server stopped")

    async def stop(self) -> None:
        if self._server is not None:
            logger.info("Stopping raffle web server")
            self._server.should_exit = True
