"""Exceptions raised by the raffle and its collaborators."""

from __future__ import annotations

from raffle.lottery.models import RoundState


class RaffleError(Exception):
    """Base class for every raffle failure."""


# ---------------------------------------------------------------------------
# Validation errors: the caller was early or wrong, nothing was changed
# ---------------------------------------------------------------------------
class InsufficientStake(RaffleError):
    def __init__(self, stake: int, required: int) -> None:
        super().__init__(f"Stake {stake} is below the entrance fee {required}")
        self.stake = stake
        self.required = required


class StakeNotFunded(RaffleError):
    """The pool account has not received the value a stake claims."""

    def __init__(self, participant: str, amount: int, unaccounted: int) -> None:
        super().__init__(
            f"Stake of {amount} from {participant} not found on chain (unaccounted balance {unaccounted})"
        )
        self.participant = participant
        self.amount = amount
        self.unaccounted = unaccounted


class RoundNotOpen(RaffleError):
    def __init__(self, state: RoundState) -> None:
        super().__init__(f"Raffle is not open (state={state.name})")
        self.state = state


class UpkeepNotNeeded(RaffleError):
    """Draw trigger refused; carries the values that made the predicate false."""

    def __init__(self, balance: int, participant_count: int, raffle_state: RoundState) -> None:
        super().__init__(
            f"Upkeep not needed: balance={balance}, players={participant_count}, "
            f"state={raffle_state.name}"
        )
        self.balance = balance
        self.participant_count = participant_count
        self.raffle_state = raffle_state

    def to_dict(self) -> dict:
        return {
            "balance": self.balance,
            "participantCount": self.participant_count,
            "raffleState": self.raffle_state.name,
        }


# ---------------------------------------------------------------------------
# Integrity errors: a collaborator broke the request/response contract
# ---------------------------------------------------------------------------
class DuplicateOrUnknownRequest(RaffleError):
    def __init__(self, request_id: int) -> None:
        super().__init__(f"Request {request_id} is unknown or already fulfilled")
        self.request_id = request_id


class NoDrawPending(RaffleError):
    def __init__(self, request_id: int, state: RoundState) -> None:
        super().__init__(f"Request {request_id} arrived while no draw is pending (state={state.name})")
        self.request_id = request_id
        self.state = state


class OnlyCoordinatorCanFulfill(RaffleError):
    def __init__(self, caller: str, coordinator: str) -> None:
        super().__init__(f"Caller {caller} is not the randomness coordinator {coordinator}")
        self.caller = caller
        self.coordinator = coordinator


class InvalidSubscription(RaffleError):
    def __init__(self, subscription_id: int) -> None:
        super().__init__(f"Subscription {subscription_id} does not exist")
        self.subscription_id = subscription_id


class ConsumerNotRegistered(RaffleError):
    def __init__(self, subscription_id: int, consumer: str) -> None:
        super().__init__(f"Consumer {consumer} is not registered on subscription {subscription_id}")
        self.subscription_id = subscription_id
        self.consumer = consumer


class InsufficientSubscriptionBalance(RaffleError):
    def __init__(self, subscription_id: int, balance: int, required: int) -> None:
        super().__init__(
            f"Subscription {subscription_id} balance {balance} cannot cover fee {required}"
        )
        self.subscription_id = subscription_id
        self.balance = balance
        self.required = required


# ---------------------------------------------------------------------------
# Resource errors: an external step failed mid-operation
# ---------------------------------------------------------------------------
class TransferFailed(RaffleError):
    def __init__(self, recipient: str, amount: int) -> None:
        super().__init__(f"Transfer of {amount} to {recipient} failed")
        self.recipient = recipient
        self.amount = amount


class PayoutPending(RaffleError):
    """A payout was broadcast but its receipt never arrived.

    The transaction may still be mined, so the payout must not be treated as
    failed; `tx_hash` identifies it for later reconciliation.
    """

    def __init__(self, recipient: str, amount: int, tx_hash: str) -> None:
        super().__init__(f"Transfer of {amount} to {recipient} sent as {tx_hash} but not confirmed")
        self.recipient = recipient
        self.amount = amount
        self.tx_hash = tx_hash
