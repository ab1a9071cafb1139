#!/usr/bin/env python3
"""
Raffle Application

Main entry point: wires the raffle state machine to its randomness
coordinator, fund transfer adapter, upkeep operator and web server.
"""

import argparse
import asyncio
import dataclasses
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from raffle.blockchain.funds import FundTransfer, InMemoryLedger
from raffle.blockchain.vrf import LocalVRFCoordinator
from raffle.lottery.engine import Raffle
from raffle.lottery.event_manager import MemoryStore
from raffle.lottery.models import RaffleConfig
from raffle.lottery.operator import UpkeepOperator
from raffle.utils.common import as_int
from raffle.utils.config import build_raffle_config, get_config_value, load_config
from raffle.utils.logger import get_logger
from raffle.web_server import RaffleWebServer

logger = get_logger(__name__)


def build_funds(config: Dict[str, Any], raffle_config: RaffleConfig) -> FundTransfer:
    """On-chain payouts when blockchain.enabled is set, otherwise a local ledger."""
    if str(get_config_value(config, "blockchain.enabled", "false")).lower() in ("1", "true", "yes"):
        from raffle.blockchain.client import Web3FundTransfer

        funds = Web3FundTransfer(config)
        funds.initialize()
        return funds
    return InMemoryLedger(holder=raffle_config.raffle_address)


def bootstrap_local_coordinator(
    config: Dict[str, Any], raffle_config: RaffleConfig
) -> tuple[LocalVRFCoordinator, RaffleConfig]:
    """Create the coordinator plus a funded subscription the raffle can use."""
    vrf_cfg = config.get("vrf", {})
    delay = vrf_cfg.get("auto_fulfill_delay")
    coordinator = LocalVRFCoordinator(
        raffle_config.randomness_client_id,
        base_fee=as_int(vrf_cfg.get("base_fee"), 0),
        auto_fulfill_delay=float(delay) if delay not in (None, "") else None,
    )
    sub_id = coordinator.create_subscription(owner=raffle_config.raffle_address)
    fund_amount = as_int(vrf_cfg.get("fund_amount"), 0)
    if fund_amount > 0:
        coordinator.fund_subscription(sub_id, fund_amount)
    coordinator.add_consumer(sub_id, raffle_config.raffle_address)

    request = dataclasses.replace(raffle_config.request, subscription_id=sub_id)
    return coordinator, dataclasses.replace(raffle_config, request=request)


class RaffleApp:
    """Raffle application.

    Responsible for building the raffle and its collaborators, running the
    upkeep operator and the FastAPI server, and shutting them down cleanly.
    """

    def __init__(self, config_file: Optional[str] = None):
        self.config = load_config(config_file)
        self.coordinator: Optional[LocalVRFCoordinator] = None
        self.raffle: Optional[Raffle] = None
        self.operator: Optional[UpkeepOperator] = None
        self.web_server: Optional[RaffleWebServer] = None
        self.running = True

    def _handle_signal(self, signum, frame):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.running = False

    def initialize(self) -> None:
        raffle_config = build_raffle_config(self.config)
        funds = build_funds(self.config, raffle_config)
        if funds.holder != raffle_config.raffle_address:
            raffle_config = dataclasses.replace(raffle_config, raffle_address=funds.holder)

        coordinator, raffle_config = bootstrap_local_coordinator(self.config, raffle_config)
        self.coordinator = coordinator
        store = MemoryStore(feed_capacity=as_int(get_config_value(self.config, "event_manager.live_feed_max_entries"), 100))

        self.raffle = Raffle(raffle_config, coordinator, funds, store=store)
        self.operator = UpkeepOperator(self.raffle, self.config)
        self.web_server = RaffleWebServer(self.config, self.raffle, coordinator, self.operator)

        logger.info("=" * 60)
        logger.info("Raffle address: %s", raffle_config.raffle_address)
        logger.info("Entrance fee:   %s", raffle_config.entrance_fee)
        logger.info("Interval:       %ss", raffle_config.interval)
        logger.info("Coordinator:    %s (subscription %s)", coordinator.client_id, raffle_config.request.subscription_id)
        logger.info("=" * 60)

    async def start(self) -> None:
        """Start services and run until a shutdown signal is received."""
        self.initialize()
        self.coordinator.attach_loop(asyncio.get_running_loop())
        await self.operator.initialize()
        await self.operator.start()

        server_cfg = self.config.get("server", {})
        host = server_cfg.get("host", "0.0.0.0")
        port = int(server_cfg.get("port", 6080))
        server_task = asyncio.create_task(self.web_server.start(host=host, port=port))

        try:
            while self.running and not server_task.done():
                await asyncio.sleep(1)
            if server_task.done() and server_task.exception():
                raise server_task.exception()
        finally:
            await self.stop()
            await asyncio.gather(server_task, return_exceptions=True)

    async def stop(self) -> None:
        """Stop all services."""
        logger.info("Stopping raffle application")
        self.running = False
        if self.operator:
            await self.operator.stop()
        if self.web_server:
            await self.web_server.stop()


async def main(argv=None):
    parser = argparse.ArgumentParser(description="Run the raffle backend")
    parser.add_argument("--config", help="Path to a JSON config file (default: config/raffle.conf)")
    parser.add_argument("--env-file", default=".env", help="dotenv file loaded before the config")
    args = parser.parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    app = RaffleApp(args.config)
    signal.signal(signal.SIGINT, app._handle_signal)
    signal.signal(signal.SIGTERM, app._handle_signal)

    try:
        await app.start()
    except Exception as e:
        logger.exception(f"Raffle application failed: {e}")
        sys.exit(1)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
