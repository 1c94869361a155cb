"""
Consumer Channel

Per-(identity, hub) account holding the consumer's prepaid tokens at the
channel's deterministic proxy address. The hub collects payment by
settling promises the identity signed; the identity leaves early through a
fast exit countersigned by the hub operator.

    settle_promise   identity-signed cumulative promise, paid to the hub
    fast_exit        identity + hub signed withdrawal with a deadline
    deposit          token top-up
    deposit_native   native value swapped into tokens on the way in

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from tools.paychannel.exchange import SwapPool
from tools.paychannel.hardening import (
    AlreadyRegistered,
    Expired,
    InsufficientFunds,
    InvalidSignature,
    InvalidState,
    NonceCounter,
    NonceReplay,
    Snapshottable,
    Unauthorized,
    Validators,
    atomic,
    checksum,
    require,
    uint,
)
from tools.paychannel.ledger import Ledger
from tools.paychannel.observability import ChannelLayer, EventLog, get_logger, timed_operation
from tools.paychannel.signatures import SignatureVerifier, address_to_bytes32, hashlock_of


_logger = get_logger("consumer_channel", ChannelLayer.CHANNEL)


@dataclass
class HubBinding:
    """The hub a consumer channel pays into."""
    operator: str
    contract_address: str
    settled: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operator": self.operator,
            "contract_address": self.contract_address,
            "settled": self.settled,
        }


class ConsumerChannel(Snapshottable):
    """
    Consumer side of a hub-mediated payment channel.

    Instances are created and initialized by the registry at the channel's
    CREATE2 address; the token balance lives on the ledger under that
    address.
    """

    _STATE_FIELDS = ("_initialized", "identity", "hub", "_exit_nonce")
    _LOG_FIELDS = ("events",)

    def __init__(
        self,
        ledger: Ledger,
        address: str,
        chain_id: int,
        pool: Optional[SwapPool] = None,
    ):
        self.ledger = ledger
        self._lock = ledger.lock
        self.address = checksum(address, "address")
        self.pool = pool
        self.verifier = SignatureVerifier(chain_id)
        self.identity: Optional[str] = None
        self.hub: Optional[HubBinding] = None
        self._initialized = False
        self._exit_nonce = NonceCounter(last=-1)
        self.events = EventLog(self.address, _logger)

    def _participants(self) -> List[Snapshottable]:
        return [self, self.ledger]

    @atomic
    def initialize(self, identity: str, hub_operator: str, hub_contract: str) -> None:
        """One-shot binding to an identity and a hub."""
        if self._initialized:
            raise AlreadyRegistered("Channel already initialized", channel=self.address)
        self.identity = checksum(identity, "identity")
        self.hub = HubBinding(
            operator=checksum(hub_operator, "hub_operator"),
            contract_address=checksum(hub_contract, "hub_contract"),
        )
        self._initialized = True
        self.events.emit(
            "ChannelInitialized",
            self.ledger.now(),
            identity=self.identity,
            hub=self.hub.contract_address,
        )

    def is_initialized(self) -> bool:
        return self._initialized

    def balance(self) -> int:
        return self.ledger.balance_of(self.address)

    def hub_state(self) -> HubBinding:
        self._require_initialized()
        return HubBinding(self.hub.operator, self.hub.contract_address, self.hub.settled)

    @property
    def channel_id(self) -> bytes:
        return address_to_bytes32(self.address)

    @property
    def last_exit_nonce(self) -> int:
        return self._exit_nonce.last

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise InvalidState("Channel is not initialized", channel=self.address)

    # -------------------------------------------------------------------------
    # Promise settlement
    # -------------------------------------------------------------------------

    @timed_operation(_logger, "consumer_settle_promise")
    @atomic
    def settle_promise(self, caller: str, amount: int, fee: int, preimage: bytes, signature: bytes) -> int:
        """
        Settle an identity-signed promise towards the hub.

        Pays the unsettled part minus the transactor fee to the hub contract
        and the fee to the caller. Returns the incremental amount settled.
        """
        self._require_initialized()
        caller = checksum(caller, "caller")
        amount = uint(amount)
        fee = uint(fee, "fee")
        preimage = Validators.validate_bytes32(preimage, "preimage").unwrap()

        digest = self.verifier.promise_digest(self.channel_id, amount, fee, hashlock_of(preimage))
        signer = self.verifier.recover(digest, signature)
        if signer == self.hub.operator:
            raise Unauthorized("Hub operator cannot settle its own promise", signer=signer)
        if signer != self.identity:
            raise InvalidSignature(
                f"Promise signed by {signer}, expected {self.identity}",
                signer=signer,
            )

        unpaid = amount - self.hub.settled
        require(unpaid > 0, NonceReplay, "Promise already settled", amount=amount, settled=self.hub.settled)
        balance = self.balance()
        require(
            unpaid <= balance,
            InsufficientFunds,
            f"Channel holds {balance}, promise needs {unpaid}",
            available=balance,
            required=unpaid,
        )
        require(unpaid > fee, InsufficientFunds, "Settled amount must cover the transactor fee", fee=fee)

        self.hub.settled += unpaid
        self.ledger.transfer(self.address, self.hub.contract_address, unpaid - fee)
        if fee > 0:
            self.ledger.transfer(self.address, caller, fee)

        self.events.emit(
            "PromiseSettled",
            self.ledger.now(),
            beneficiary=self.hub.contract_address,
            amount=unpaid,
            total_settled=self.hub.settled,
            hashlock=hashlock_of(preimage),
        )
        return unpaid

    # -------------------------------------------------------------------------
    # Fast exit
    # -------------------------------------------------------------------------

    @timed_operation(_logger, "fast_exit")
    @atomic
    def fast_exit(
        self,
        caller: str,
        amount: int,
        fee: int,
        beneficiary: str,
        valid_until: int,
        identity_signature: bytes,
        hub_signature: bytes,
    ) -> int:
        """
        Withdraw directly to a beneficiary with both parties' consent.

        The signed tuple binds the channel's current exit nonce, so every
        approved withdrawal executes at most once. Returns the nonce used.
        """
        self._require_initialized()
        caller = checksum(caller, "caller")
        beneficiary = checksum(beneficiary, "beneficiary")
        amount = uint(amount)
        fee = uint(fee, "fee")
        valid_until = uint(valid_until, "valid_until")

        now = self.ledger.now()
        if now > valid_until:
            raise Expired("Fast withdrawal request expired", valid_until=valid_until, now=now)

        self._exit_nonce.check_fresh(identity_signature, NonceReplay)
        nonce = self._exit_nonce.next_nonce()
        digest = self.verifier.fast_withdrawal_digest(
            self.address, amount, fee, beneficiary, valid_until, nonce
        )
        self.verifier.require_signer(digest, identity_signature, self.identity, "identity withdrawal")
        self.verifier.require_signer(digest, hub_signature, self.hub.operator, "hub withdrawal")

        require(fee <= amount, InsufficientFunds, "Fee exceeds withdrawal amount", amount=amount, fee=fee)
        balance = self.balance()
        require(
            amount <= balance,
            InsufficientFunds,
            f"Channel holds {balance}, withdrawal needs {amount}",
            available=balance,
            required=amount,
        )

        self._exit_nonce.consume(nonce, identity_signature)
        self.ledger.transfer(self.address, beneficiary, amount - fee)
        if fee > 0:
            self.ledger.transfer(self.address, caller, fee)

        self.events.emit(
            "FastExit",
            now,
            beneficiary=beneficiary,
            amount=amount,
            fee=fee,
            nonce=nonce,
        )
        return nonce

    # -------------------------------------------------------------------------
    # Deposits
    # -------------------------------------------------------------------------

    @atomic
    def deposit(self, sender: str, amount: int) -> None:
        sender = checksum(sender, "sender")
        amount = uint(amount)
        self.ledger.transfer(sender, self.address, amount)
        self.events.emit("Deposited", self.ledger.now(), sender=sender, amount=amount)

    @atomic
    def deposit_native(self, sender: str, value: int, min_tokens: int = 0) -> int:
        """Swap native value into tokens credited to this channel."""
        if self.pool is None:
            raise InvalidState("Channel has no swap pool", channel=self.address)
        sender = checksum(sender, "sender")
        tokens = self.pool.swap_native_for_tokens(sender, uint(value, "value"), self.address, min_tokens)
        self.events.emit("Deposited", self.ledger.now(), sender=sender, amount=tokens, native_value=value)
        return tokens
