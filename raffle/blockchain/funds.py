"""Fund transfer collaborators that hold the raffle pool and pay winners."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from threading import RLock
from typing import Callable, Dict, Set

from raffle.utils.logger import get_logger

logger = get_logger(__name__)

ReceiveHook = Callable[[str, int], None]


class FundTransfer(ABC):
    """Holds the pooled stakes for one raffle account.

    `transfer` reports failure by returning False; it must leave every
    balance untouched in that case.
    """

    holder: str

    @abstractmethod
    def accept_stake(self, participant: str, amount: int) -> None:
        """Record a stake paid into the pool."""

    @abstractmethod
    def balance_of(self, account: str) -> int:
        ...

    def pooled_balance(self) -> int:
        return self.balance_of(self.holder)

    @abstractmethod
    def transfer(self, recipient: str, amount: int) -> bool:
        """Move `amount` from the pool to `recipient`; True on success.

        Adapters whose payouts can be sent without a known outcome raise
        PayoutPending instead of returning False.
        """

    def reconcile(self) -> None:
        """Settle payouts whose outcome was unknown when they were sent."""


class InMemoryLedger(FundTransfer):
    """Process-local ledger.

    Recipients can be marked as rejecting to simulate a failed payout, and
    receive hooks run after the recipient is credited, which lets tests model
    a recipient that calls back into the raffle. A hook that raises fails the
    transfer and every balance change made since it started is undone.
    """

    def __init__(self, holder: str) -> None:
        self.holder = holder
        self._lock = RLock()
        self._balances: Dict[str, int] = defaultdict(int)
        self._rejecting: Set[str] = set()
        self._hooks: Dict[str, ReceiveHook] = {}

    def accept_stake(self, participant: str, amount: int) -> None:
        if amount <= 0:
            raise ValueError("Stake must be positive")
        with self._lock:
            self._balances[self.holder] += amount
        logger.debug("Accepted stake %s from %s", amount, participant)

    def credit(self, account: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("Credit must not be negative")
        with self._lock:
            self._balances[account] += amount

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._balances.get(account, 0)

    def reject_transfers_to(self, account: str, rejecting: bool = True) -> None:
        with self._lock:
            if rejecting:
                self._rejecting.add(account)
            else:
                self._rejecting.discard(account)

    def set_receive_hook(self, account: str, hook: ReceiveHook | None) -> None:
        with self._lock:
            if hook is None:
                self._hooks.pop(account, None)
            else:
                self._hooks[account] = hook

    def transfer(self, recipient: str, amount: int) -> bool:
        with self._lock:
            if recipient in self._rejecting:
                logger.warning("Recipient %s rejected transfer of %s", recipient, amount)
                return False
            if amount < 0 or self._balances.get(self.holder, 0) < amount:
                logger.warning("Pool cannot cover transfer of %s to %s", amount, recipient)
                return False

            saved = dict(self._balances)
            self._balances[self.holder] -= amount
            self._balances[recipient] += amount

            hook = self._hooks.get(recipient)
            if hook is not None:
                try:
                    hook(recipient, amount)
                except Exception as exc:
                    self._balances = defaultdict(int, saved)
                    logger.warning("Receive hook for %s failed, transfer reverted: %s", recipient, exc)
                    return False

        logger.info("Transferred %s from %s to %s", amount, self.holder, recipient)
        return True
