"""
Upkeep operator.

Polls `Raffle.check_upkeep` on a fixed interval and calls `perform_upkeep`
when the round is eligible. Each cycle first lets the fund adapter settle
payouts that were sent without a confirmation. It also listens for
raffle_update events so a round that becomes eligible right after an entry
is picked up without waiting for the next tick.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from raffle.lottery.engine import Raffle
from raffle.lottery.errors import UpkeepNotNeeded
from raffle.lottery.event_manager import RAFFLE_UPDATE
from raffle.lottery.models import OperatorStatus
from raffle.utils.logger import get_logger

logger = get_logger(__name__)


class UpkeepOperator:
    """Periodic caller of the raffle's draw trigger."""

    def __init__(self, raffle: Raffle, config: Dict[str, Any]) -> None:
        self._raffle = raffle
        operator_cfg = config.get("operator", {})
        self._check_interval = float(operator_cfg.get("check_interval", 5))
        self._status = OperatorStatus()
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None

    @property
    def status(self) -> OperatorStatus:
        return self._status

    async def initialize(self) -> None:
        """Register for raffle_update events from the store."""
        self._raffle.store.add_listener(RAFFLE_UPDATE, self._on_raffle_update)
        logger.info("Upkeep operator registered for %s events", RAFFLE_UPDATE)

    async def start(self) -> None:
        if self._status.is_running:
            logger.warning("Upkeep operator already running")
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._status.is_running = True
        self._task = asyncio.create_task(self._run(), name="raffle-upkeep")
        logger.info("Upkeep operator started (check interval %ss)", self._check_interval)

    async def stop(self) -> None:
        if not self._status.is_running:
            return
        logger.info("Stopping upkeep operator")
        self._status.is_running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._raffle.store.remove_listener(RAFFLE_UPDATE, self._on_raffle_update)
        logger.info("Upkeep operator stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "status": "running" if self._status.is_running else "stopped",
            "checkInterval": self._check_interval,
            "lastCheck": self._status.last_check.isoformat() if self._status.last_check else None,
            "lastPerform": self._status.last_perform.isoformat() if self._status.last_perform else None,
            "lastRequestId": self._status.last_request_id,
            "drawsRequested": self._status.total_draws_requested,
            "consecutiveFailures": self._status.consecutive_failures,
        }

    def _on_raffle_update(self, payload: dict | None) -> None:
        # Store listeners may fire from any thread
        if not self._status.is_running or self._loop is None or self._wakeup is None:
            return
        self._loop.call_soon_threadsafe(self._wakeup.set)

    async def _run(self) -> None:
        while self._status.is_running:
            await asyncio.to_thread(self.check_and_perform)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._check_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    def check_and_perform(self) -> Optional[int]:
        """Run one upkeep cycle; returns the request id when a draw was triggered.

        Blocks on the fund adapter, so the loop runs it in a worker thread.
        """
        self._status.record_check()
        try:
            self._raffle.funds.reconcile()
            upkeep_needed, _ = self._raffle.check_upkeep()
            if not upkeep_needed:
                return None
            request_id = self._raffle.perform_upkeep()
        except UpkeepNotNeeded as exc:
            # Lost a race with another caller; not a failure
            logger.debug("Upkeep no longer needed: %s", exc)
            return None
        except Exception as exc:
            self._status.increment_failures()
            logger.error("Upkeep failed (%d in a row): %s", self._status.consecutive_failures, exc)
            return None
        self._status.record_perform(request_id)
        logger.info("Upkeep performed, draw request %s", request_id)
        return request_id
