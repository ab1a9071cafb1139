"""Web3 fund transfer adapter: the raffle pool lives in an operator account on chain."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from threading import RLock
from typing import Any, Dict, List, Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound

from raffle.blockchain.funds import FundTransfer
from raffle.lottery.errors import PayoutPending, StakeNotFunded
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

NATIVE_TRANSFER_GAS = 21_000


@dataclass
class SentPayout:
    recipient: str
    amount: int
    gas_price: int

    def to_dict(self, tx_hash: str) -> dict:
        return {"txHash": tx_hash, "recipient": self.recipient, "amount": self.amount}


class Web3FundTransfer(FundTransfer):
    """Pays winners from the operator account with plain value transfers.

    Participants send their stake to the operator address themselves. The
    account also holds a gas reserve, so the adapter books stakes separately:
    `_accounted` is the on-chain balance the adapter can explain (reserve plus
    accepted stakes, less payouts and gas), and a new stake is accepted only
    when the live balance exceeds it by at least the staked amount.
    `pooled_balance` is the sum of accepted stakes not yet paid out.
    """

    def __init__(self, config: Dict[str, Any], w3: Optional[Web3] = None):
        blockchain_cfg = config.get("blockchain", {})
        self.rpc_url: str = blockchain_cfg.get("rpc_url", "http://127.0.0.1:8545")
        self.rpc_timeout: float = float(blockchain_cfg.get("rpc_timeout", 10.0))
        self.chain_id: int = int(blockchain_cfg.get("chain_id", 31337))
        self.tx_timeout: int = int(blockchain_cfg.get("tx_timeout_seconds", 180))

        private_key = blockchain_cfg.get("operator_private_key")
        if not private_key:
            raise ValueError("blockchain.operator_private_key is required for on-chain payouts")
        self.account = Account.from_key(private_key)
        self.holder = self.account.address
        logger.info("Operator account loaded: %s", self.account.address)

        self._gas_price_override: Optional[int] = None
        gas_price_setting = blockchain_cfg.get("gas_price")
        if gas_price_setting:
            self._gas_price_override = Web3.to_wei(Decimal(str(gas_price_setting)), "gwei")

        self._w3 = w3
        self._lock = RLock()
        self._pool = 0
        self._accounted = 0
        self._sent: Dict[str, SentPayout] = {}

    def initialize(self) -> None:
        """Establish the RPC connection and take the current balance as the gas reserve."""
        if self._w3 is None:
            self._w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.rpc_timeout}))
        if not self._w3.is_connected():
            raise ConnectionError(f"Failed to connect to RPC at {self.rpc_url}")

        actual_chain_id = self._w3.eth.chain_id
        if actual_chain_id != self.chain_id:
            logger.warning(f"Chain ID mismatch: expected {self.chain_id}, got {actual_chain_id}")

        with self._lock:
            self._accounted = self.balance_of(self.holder)
        logger.info("Connected to RPC %s (chain id %s), gas reserve %s", self.rpc_url, self.chain_id, self._accounted)

    def _ensure_web3(self) -> Web3:
        if not self._w3:
            raise RuntimeError("Web3 provider not initialised")
        return self._w3

    def accept_stake(self, participant: str, amount: int) -> None:
        if amount <= 0:
            raise ValueError("Stake must be positive")
        with self._lock:
            unaccounted = self.balance_of(self.holder) - self._accounted
            if unaccounted < amount:
                raise StakeNotFunded(participant, amount, unaccounted)
            self._accounted += amount
            self._pool += amount
        logger.info("Stake of %s from %s booked against %s", amount, participant, self.holder)

    def balance_of(self, account: str) -> int:
        w3 = self._ensure_web3()
        return int(w3.eth.get_balance(Web3.to_checksum_address(account)))

    def pooled_balance(self) -> int:
        with self._lock:
            return self._pool

    def transfer(self, recipient: str, amount: int) -> bool:
        w3 = self._ensure_web3()
        with self._lock:
            if amount < 0 or amount > self._pool:
                logger.warning("Pool of %s cannot cover payout of %s to %s", self._pool, amount, recipient)
                return False

            try:
                gas_price = self._gas_price_override or w3.eth.gas_price
                txn = {
                    "from": self.account.address,
                    "to": Web3.to_checksum_address(recipient),
                    "value": amount,
                    "gas": NATIVE_TRANSFER_GAS,
                    "gasPrice": gas_price,
                    "nonce": w3.eth.get_transaction_count(self.account.address),
                    "chainId": self.chain_id,
                }
                signed = self.account.sign_transaction(txn)
                raw = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction")
                tx_hash = Web3.to_hex(w3.eth.send_raw_transaction(raw))
            except Exception as exc:
                logger.error("Payout of %s to %s was not sent: %s", amount, recipient, exc)
                return False

            try:
                receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
            except Exception as exc:
                # Broadcast already happened; book the value as gone until reconciled
                self._sent[tx_hash] = SentPayout(recipient=recipient, amount=amount, gas_price=gas_price)
                self._pool -= amount
                self._accounted -= amount
                logger.error("Payout %s of %s to %s unconfirmed: %s", tx_hash, amount, recipient, exc)
                raise PayoutPending(recipient, amount, tx_hash) from exc

            self._accounted -= int(receipt["gasUsed"]) * gas_price
            if int(receipt["status"]) != 1:
                logger.error("Payout transaction %s reverted", tx_hash)
                return False
            self._pool -= amount
            self._accounted -= amount
        logger.info("Paid %s to %s in %s", amount, recipient, tx_hash)
        return True

    def reconcile(self) -> None:
        """Look up receipts of unconfirmed payouts; reverted ones go back to the pool."""
        if not self._sent:
            return
        w3 = self._ensure_web3()
        with self._lock:
            for tx_hash, payout in list(self._sent.items()):
                try:
                    receipt = w3.eth.get_transaction_receipt(tx_hash)
                except TransactionNotFound:
                    logger.warning("Payout %s to %s still unconfirmed", tx_hash, payout.recipient)
                    continue

                del self._sent[tx_hash]
                self._accounted -= int(receipt["gasUsed"]) * payout.gas_price
                if int(receipt["status"]) == 1:
                    logger.info("Payout %s of %s to %s confirmed", tx_hash, payout.amount, payout.recipient)
                else:
                    self._pool += payout.amount
                    self._accounted += payout.amount
                    logger.error("Payout %s reverted; %s returned to the pool", tx_hash, payout.amount)

    def pending_payouts(self) -> List[dict]:
        with self._lock:
            return [payout.to_dict(tx_hash) for tx_hash, payout in self._sent.items()]

    def get_client_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "rpcUrl": self.rpc_url,
                "chainId": self.chain_id,
                "operator": self.account.address,
                "pool": self._pool,
                "pendingPayouts": len(self._sent),
            }
