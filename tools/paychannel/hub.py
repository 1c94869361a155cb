"""
Hub Settlement Engine

The hub accepts operator-signed promises on behalf of its providers and
pays them out of its own token balance. Each provider has a channel keyed
by keccak(identity, hub[, tag]) recording the provider's stake and the
cumulative amount already settled, so a promise is paid incrementally and
never twice.

Accounting:

    minimal_expected_balance = hub_stake + total_stake + punishment.amount
    available_balance        = max(0, balance - minimal_expected_balance)

A settlement never dips below the minimal expected balance. When a promise
asks for more than is available the hub pays what it can and drops into
Punishment; the provider may resubmit the same promise later for the rest.
The hub only returns to Active through resolve_emergency, which charges a
penalty that grows with every punishment unit the operator waited.

State Machine:

    ACTIVE ──→ PAUSED ──→ ACTIVE
      │          │
      │          └──→ CLOSED
      ├──→ PUNISHMENT ──→ ACTIVE
      └──→ CLOSED

Roles: the operator signs promises, sets the fee and closes the hub; the
owner withdraws surplus funds and tunes stake thresholds. Both start as the
same account until ownership is transferred.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from tools.paychannel.addressing import WITHDRAWAL_CHANNEL_TAG, provider_channel_id
from tools.paychannel.config import get_config
from tools.paychannel.exchange import SwapPool
from tools.paychannel.fees import FeeSchedule, HubFee
from tools.paychannel.hardening import (
    BelowMinimumStake,
    Expired,
    InsufficientFunds,
    InvalidState,
    InvariantChecker,
    NonceCounter,
    NonceReplay,
    Snapshottable,
    Unauthorized,
    ValidationError,
    Validators,
    atomic,
    ceil_div,
    checksum,
    optional_uint,
    require,
    uint,
)
from tools.paychannel.ledger import Ledger
from tools.paychannel.observability import ChannelLayer, EventLog, LogLevel, get_logger, timed_operation
from tools.paychannel.signatures import SignatureVerifier, hashlock_of

if TYPE_CHECKING:
    from tools.paychannel.registry import Registry


_logger = get_logger("hub", ChannelLayer.HUB)


# =============================================================================
# HUB STATE
# =============================================================================

class HubStatus(Enum):
    """Hub lifecycle states."""
    ACTIVE = "active"
    PAUSED = "paused"
    PUNISHMENT = "punishment"
    CLOSED = "closed"


HUB_TRANSITIONS: Dict[HubStatus, Set[HubStatus]] = {
    HubStatus.ACTIVE: {HubStatus.PAUSED, HubStatus.PUNISHMENT, HubStatus.CLOSED},
    HubStatus.PAUSED: {HubStatus.ACTIVE, HubStatus.CLOSED},
    HubStatus.PUNISHMENT: {HubStatus.ACTIVE},
    HubStatus.CLOSED: set(),
}


@dataclass
class Punishment:
    """When the hub last went into punishment and the penalty accrued so far."""
    activation_time: int = 0
    amount: int = 0


@dataclass
class ProviderChannel:
    """Hub-side record of one provider channel. Opened by stake or a settlement with beneficiary."""
    stake: int = 0
    settled: int = 0
    nonce: NonceCounter = field(default_factory=NonceCounter)
    opened: bool = False

    @property
    def last_used_nonce(self) -> int:
        return self.nonce.last

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stake": self.stake,
            "settled": self.settled,
            "last_used_nonce": self.last_used_nonce,
            "opened": self.opened,
        }


class ChannelLookup(Enum):
    """Outcome of a provider channel get-or-create."""
    EXISTING = "existing"
    CREATED = "created"


@dataclass
class ChannelHandle:
    """A provider channel together with how it was obtained."""
    lookup: ChannelLookup
    channel_id: bytes
    channel: ProviderChannel

    @property
    def created(self) -> bool:
        return self.lookup is ChannelLookup.CREATED


@dataclass
class Settlement:
    """Amounts moved by one promise settlement."""
    channel_id: bytes
    paid: int
    transactor_fee: int
    hub_fee: int = 0
    beneficiary: Optional[str] = None
    beneficiary_share: int = 0
    punished: bool = False


# =============================================================================
# HUB
# =============================================================================

class Hub(Snapshottable):
    """
    Settlement engine of one hub operator.

    Hubs are created by the registry at the operator's deterministic
    address. Time-gated parameters (fee delay, punishment unit and rate,
    closing timelock) are read from the hub configuration at creation.
    """

    _STATE_FIELDS = (
        "_status",
        "owner",
        "hub_stake",
        "total_stake",
        "_fees",
        "min_stake",
        "max_stake",
        "_punishment",
        "closing_timelock_end",
        "_stake_released",
    )
    _LOG_FIELDS = ("events",)

    def __init__(
        self,
        ledger: Ledger,
        registry: "Registry",
        address: str,
        operator: str,
        fee_bps: int,
        min_stake: int,
        max_stake: int,
        hub_stake: int = 0,
        pool: Optional[SwapPool] = None,
    ):
        hub_config = get_config().hub
        self.ledger = ledger
        self._lock = ledger.lock
        self.registry = registry
        self.pool = pool
        self.address = checksum(address, "address")
        self.operator = checksum(operator, "operator")
        self.owner = self.operator
        self.verifier = SignatureVerifier(registry.chain_id)

        self.min_stake = uint(min_stake, "min_stake")
        self.max_stake = uint(max_stake, "max_stake")
        if self.min_stake > self.max_stake:
            raise ValidationError("min_stake", "Cannot exceed max_stake", min_stake)

        self.punishment_unit_seconds = hub_config.punishment_unit_seconds.get()
        self.punishment_percent = hub_config.punishment_percent.get()
        self.closing_timelock_seconds = hub_config.closing_timelock_seconds.get()
        self._fees = FeeSchedule.starting_at(
            fee_bps,
            ledger.now(),
            max_fee_bps=hub_config.max_fee_bps.get(),
            delay_seconds=hub_config.fee_delay_seconds.get(),
        )

        self._status = HubStatus.ACTIVE
        self.hub_stake = uint(hub_stake, "hub_stake")
        self.total_stake = 0
        self._punishment = Punishment()
        self.closing_timelock_end = 0
        self._stake_released = False
        self._channels: Dict[bytes, ProviderChannel] = {}
        self.events = EventLog(self.address, _logger)

    def _participants(self) -> List[Snapshottable]:
        return [self, self.ledger]

    def __repr__(self) -> str:
        return f"Hub({self.address}, operator={self.operator}, status={self._status.value})"

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_status(self) -> HubStatus:
        return self._status

    def is_active(self) -> bool:
        return self._status is HubStatus.ACTIVE

    def balance(self) -> int:
        return self.ledger.balance_of(self.address)

    def minimal_expected_balance(self) -> int:
        """Funds that must stay in the hub: its own stake, provider stakes and accrued penalty."""
        with self._lock:
            return self.hub_stake + self.total_stake + self._punishment.amount

    def available_balance(self) -> int:
        with self._lock:
            return max(0, self.balance() - self.minimal_expected_balance())

    def get_channel_id(self, identity: str, tag: str = "") -> bytes:
        return provider_channel_id(identity, self.address, tag or None)

    def channel(self, channel_id: bytes) -> ProviderChannel:
        """Copy of a provider channel; unknown ids read as an empty channel."""
        with self._lock:
            existing = self._channels.get(channel_id)
            if existing is None:
                return ProviderChannel()
            return ProviderChannel(
                existing.stake,
                existing.settled,
                NonceCounter(existing.nonce.last),
                existing.opened,
            )

    def is_channel_opened(self, channel_id: bytes) -> bool:
        with self._lock:
            existing = self._channels.get(channel_id)
            return existing is not None and existing.opened

    def get_stake_thresholds(self) -> Tuple[int, int]:
        return (self.min_stake, self.max_stake)

    def get_total_stake(self) -> int:
        return self.total_stake

    def get_hub_stake(self) -> int:
        return self.hub_stake

    @property
    def punishment(self) -> Punishment:
        return Punishment(self._punishment.activation_time, self._punishment.amount)

    @property
    def last_fee(self) -> HubFee:
        return self._fees.last_fee

    @property
    def previous_fee(self) -> HubFee:
        return self._fees.previous_fee

    @property
    def url(self) -> bytes:
        return self.registry.get_hub_url(self.address)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _transition(self, target: HubStatus) -> None:
        InvariantChecker.check_state_transition(self._status, target, HUB_TRANSITIONS)
        previous = self._status
        self._status = target
        _logger.on_commit(
            LogLevel.INFO,
            "Hub status changed",
            hub=self.address,
            from_status=previous.value,
            to_status=target.value,
        )

    def _require_operator(self, caller: str) -> str:
        caller = checksum(caller, "caller")
        if caller != self.operator:
            raise Unauthorized("Only the hub operator may do this", caller=caller)
        return caller

    def _require_owner(self, caller: str) -> str:
        caller = checksum(caller, "caller")
        if caller != self.owner:
            raise Unauthorized("Only the hub owner may do this", caller=caller)
        return caller

    def _require_not_closed(self) -> None:
        if self._status is HubStatus.CLOSED:
            raise InvalidState("Hub is closed", hub=self.address)

    def _beneficiary_of(self, identity: str) -> str:
        beneficiary = self.registry.get_beneficiary(identity)
        if beneficiary is None:
            raise InvalidState("Identity is not registered", identity=identity)
        return beneficiary

    def _get_or_create_channel(self, channel_id: bytes) -> ChannelHandle:
        """Look up a provider channel for update, creating it if absent."""
        self._touch(self._channels, channel_id)
        existing = self._channels.get(channel_id)
        if existing is not None:
            return ChannelHandle(ChannelLookup.EXISTING, channel_id, existing)
        created = ProviderChannel()
        self._channels[channel_id] = created
        return ChannelHandle(ChannelLookup.CREATED, channel_id, created)

    def _add_stake(self, channel_id: bytes, amount: int) -> ProviderChannel:
        """Book stake already held by the hub onto a provider channel."""
        current = self._channels.get(channel_id)
        new_stake = (current.stake if current else 0) + amount
        if new_stake < self.min_stake:
            raise BelowMinimumStake(
                f"Channel stake {new_stake} below minimum {self.min_stake}",
                stake=new_stake,
                min_stake=self.min_stake,
            )
        handle = self._get_or_create_channel(channel_id)
        handle.channel.stake = new_stake
        handle.channel.opened = True
        self.total_stake += amount
        self.events.emit("NewStake", self.ledger.now(), channel_id=channel_id, stake=new_stake)
        return handle.channel

    def _activate_punishment(self) -> None:
        now = self.ledger.now()
        self._transition(HubStatus.PUNISHMENT)
        self._punishment.activation_time = now
        self.events.emit("HubPunishmentActivated", now)
        _logger.on_commit(
            LogLevel.WARNING,
            "Hub could not cover a promise and entered punishment",
            error_code=InsufficientFunds.code,
            hub=self.address,
        )

    def _settle(
        self,
        caller: str,
        channel_id: bytes,
        amount: int,
        fee: int,
        preimage: bytes,
        signature: bytes,
        ignore_stake: bool = False,
    ) -> Settlement:
        """
        Core of every settlement variant.

        Validates the operator's promise, clamps the payout to the per-call
        cap and the available balance, advances the channel and pays the
        transactor fee. Paying the rest is up to the caller.
        """
        if self._status in (HubStatus.CLOSED, HubStatus.PAUSED):
            raise InvalidState(
                f"Settlements not allowed while {self._status.value}",
                status=self._status.value,
            )
        caller = checksum(caller, "caller")
        amount = uint(amount)
        fee = uint(fee, "fee")
        preimage = Validators.validate_bytes32(preimage, "preimage").unwrap()
        hashlock = hashlock_of(preimage)

        digest = self.verifier.promise_digest(channel_id, amount, fee, hashlock)
        self.verifier.require_signer(digest, signature, self.operator, "promise")

        existing = self._channels.get(channel_id)
        settled = existing.settled if existing else 0
        stake = existing.stake if existing else 0
        if not ignore_stake and settled == 0 and stake < self.min_stake:
            raise BelowMinimumStake(
                "Channel stake too low to settle",
                stake=stake,
                min_stake=self.min_stake,
            )

        unpaid = amount - settled
        require(unpaid > 0, NonceReplay, "Promise already settled", amount=amount, settled=settled)
        require(unpaid > fee, InsufficientFunds, "Settled amount must cover the transactor fee", fee=fee)

        # Per-call cap
        unpaid = min(unpaid, max(self.max_stake, stake))

        punished = False
        available = self.available_balance()
        if unpaid > available:
            unpaid = available
            if self._status is HubStatus.ACTIVE:
                self._activate_punishment()
                punished = True
        if unpaid == 0 and not punished:
            raise InsufficientFunds("Hub has no available balance", hub=self.address)
        require(unpaid >= fee, InsufficientFunds, "Available balance cannot cover the transactor fee", fee=fee)

        if unpaid > 0:
            channel = self._get_or_create_channel(channel_id).channel
            InvariantChecker.check_monotonic_increase("settled", channel.settled, channel.settled + unpaid)
            channel.settled += unpaid
        if fee > 0:
            self.ledger.transfer(self.address, caller, fee)

        self.events.emit(
            "PromiseSettled",
            self.ledger.now(),
            channel_id=channel_id,
            amount=unpaid,
            total_settled=settled + unpaid,
            hashlock=hashlock,
        )
        return Settlement(channel_id=channel_id, paid=unpaid, transactor_fee=fee, punished=punished)

    def _take_hub_fee(self, settlement: Settlement) -> int:
        """Hub fee on the paid amount and the share left for the beneficiary."""
        hub_fee = self.calculate_hub_fee(settlement.paid)
        share = settlement.paid - settlement.transactor_fee - hub_fee
        if share < 0:
            raise InsufficientFunds(
                "Settled amount cannot cover transactor and hub fees",
                paid=settlement.paid,
                hub_fee=hub_fee,
            )
        settlement.hub_fee = hub_fee
        return share

    def _pay(self, settlement: Settlement, beneficiary: str, share: int) -> Settlement:
        if share > 0:
            self.ledger.transfer(self.address, beneficiary, share)
        settlement.beneficiary = beneficiary
        settlement.beneficiary_share = share
        return settlement

    # -------------------------------------------------------------------------
    # Settlement variants
    # -------------------------------------------------------------------------

    @timed_operation(_logger, "settle_promise")
    @atomic
    def settle_promise(
        self,
        caller: str,
        identity: str,
        amount: int,
        fee: int,
        preimage: bytes,
        signature: bytes,
    ) -> Settlement:
        """Settle a promise to the identity's registered beneficiary."""
        identity = checksum(identity, "identity")
        settlement = self._settle(caller, self.get_channel_id(identity), amount, fee, preimage, signature)
        share = self._take_hub_fee(settlement)
        return self._pay(settlement, self._beneficiary_of(identity), share)

    @timed_operation(_logger, "settle_with_beneficiary")
    @atomic
    def settle_with_beneficiary(
        self,
        caller: str,
        identity: str,
        amount: int,
        fee: int,
        preimage: bytes,
        promise_signature: bytes,
        new_beneficiary: str,
        beneficiary_signature: bytes,
        nonce: Optional[int] = None,
    ) -> Settlement:
        """Change the identity's beneficiary, then settle to it regardless of stake. Opens the channel."""
        identity = checksum(identity, "identity")
        channel_id = self.get_channel_id(identity)
        self.registry.set_beneficiary(identity, new_beneficiary, beneficiary_signature, nonce)
        settlement = self._settle(
            caller,
            channel_id,
            amount,
            fee,
            preimage,
            promise_signature,
            ignore_stake=True,
        )
        self._get_or_create_channel(channel_id).channel.opened = True
        share = self._take_hub_fee(settlement)
        return self._pay(settlement, self._beneficiary_of(identity), share)

    @timed_operation(_logger, "settle_into_stake")
    @atomic
    def settle_into_stake(
        self,
        caller: str,
        identity: str,
        amount: int,
        fee: int,
        preimage: bytes,
        signature: bytes,
    ) -> Settlement:
        """Turn a promise into channel stake instead of paying it out. No hub fee."""
        identity = checksum(identity, "identity")
        channel_id = self.get_channel_id(identity)
        settlement = self._settle(caller, channel_id, amount, fee, preimage, signature, ignore_stake=True)
        stake_increase = settlement.paid - settlement.transactor_fee
        if stake_increase > 0:
            self._add_stake(channel_id, stake_increase)
        settlement.beneficiary_share = stake_increase
        return settlement

    @timed_operation(_logger, "pay_and_settle")
    @atomic
    def pay_and_settle(
        self,
        caller: str,
        identity: str,
        amount: int,
        fee: int,
        preimage: bytes,
        promise_signature: bytes,
        beneficiary: str,
        beneficiary_signature: bytes,
    ) -> Settlement:
        """
        Settle the identity's withdrawal channel to a one-off beneficiary.

        The identity authorizes the beneficiary for this exact amount and
        preimage; no hub fee is charged.
        """
        identity = checksum(identity, "identity")
        beneficiary = checksum(beneficiary, "beneficiary")
        channel_id = self.get_channel_id(identity, WITHDRAWAL_CHANNEL_TAG)
        preimage = Validators.validate_bytes32(preimage, "preimage").unwrap()
        digest = self.verifier.pay_and_settle_digest(channel_id, uint(amount), preimage, beneficiary)
        self.verifier.require_signer(digest, beneficiary_signature, identity, "pay and settle beneficiary")

        settlement = self._settle(
            caller,
            channel_id,
            amount,
            fee,
            preimage,
            promise_signature,
            ignore_stake=True,
        )
        return self._pay(settlement, beneficiary, settlement.paid - settlement.transactor_fee)

    @timed_operation(_logger, "settle_with_dex")
    @atomic
    def settle_with_dex(
        self,
        caller: str,
        identity: str,
        amount: int,
        fee: int,
        preimage: bytes,
        signature: bytes,
        min_native_out: int = 0,
    ) -> Settlement:
        """Settle and pay the beneficiary in native currency through the swap pool."""
        if self.pool is None:
            raise InvalidState("Hub has no swap pool", hub=self.address)
        identity = checksum(identity, "identity")
        settlement = self._settle(caller, self.get_channel_id(identity), amount, fee, preimage, signature)
        share = self._take_hub_fee(settlement)
        beneficiary = self._beneficiary_of(identity)
        native_out = 0
        if share > 0:
            native_out = self.pool.swap_tokens_for_native(self.address, share, beneficiary, min_native_out)
        settlement.beneficiary = beneficiary
        settlement.beneficiary_share = native_out
        return settlement

    # -------------------------------------------------------------------------
    # Fees
    # -------------------------------------------------------------------------

    def calculate_hub_fee(self, amount: int) -> int:
        return self._fees.calculate(amount, self.ledger.now())

    def active_fee(self) -> HubFee:
        return self._fees.active_fee(self.ledger.now())

    @atomic
    def set_hub_fee(self, caller: str, value: int) -> HubFee:
        """Schedule a new fee; it applies once the fee delay has passed."""
        self._require_operator(caller)
        scheduled = self._fees.schedule(value, self.ledger.now())
        self.events.emit(
            "HubFeeUpdated",
            self.ledger.now(),
            fee=scheduled.value,
            valid_from=scheduled.valid_from,
        )
        return scheduled

    # -------------------------------------------------------------------------
    # Stake
    # -------------------------------------------------------------------------

    @atomic
    def increase_stake(self, caller: str, channel_id: bytes, amount: int) -> ProviderChannel:
        """Top up a provider channel's stake from the caller's allowance."""
        self._require_not_closed()
        caller = checksum(caller, "caller")
        channel_id = Validators.validate_bytes32(channel_id, "channel_id").unwrap()
        amount = uint(amount)
        require(amount > 0, InsufficientFunds, "Stake increase must be positive")
        self.ledger.transfer_from(self.address, caller, self.address, amount)
        return self._add_stake(channel_id, amount)

    @atomic
    def stake_from_registration(self, identity: str, amount: int) -> Optional[ProviderChannel]:
        """Book stake the registry already moved into this hub for a new identity."""
        amount = uint(amount)
        if amount == 0:
            return None
        return self._add_stake(self.get_channel_id(identity), amount)

    @timed_operation(_logger, "decrease_stake")
    @atomic
    def decrease_stake(
        self,
        caller: str,
        identity: str,
        amount: int,
        fee: int,
        signature: bytes,
        nonce: Optional[int] = None,
    ) -> ProviderChannel:
        """
        Return stake to the identity's beneficiary.

        Requires the identity's stake return signature. The remaining stake
        must be zero or at least the minimum stake.
        """
        caller = checksum(caller, "caller")
        identity = checksum(identity, "identity")
        amount = uint(amount)
        fee = uint(fee, "fee")
        channel_id = self.get_channel_id(identity)
        channel = self._channels.get(channel_id)
        if channel is None:
            raise InvalidState("Channel has no stake", channel_id=channel_id)

        channel.nonce.check_fresh(signature)
        nonce = channel.nonce.next_nonce(optional_uint(nonce, "nonce"))
        digest = self.verifier.stake_return_digest(channel_id, amount, fee, nonce)
        self.verifier.require_signer(digest, signature, identity, "stake return")

        require(
            amount <= channel.stake,
            InsufficientFunds,
            f"Channel stake {channel.stake} below requested {amount}",
            available=channel.stake,
            required=amount,
        )
        require(fee <= amount, InsufficientFunds, "Fee exceeds returned stake", amount=amount, fee=fee)
        remaining = channel.stake - amount
        if 0 < remaining < self.min_stake:
            raise BelowMinimumStake(
                f"Remaining stake {remaining} below minimum {self.min_stake}",
                stake=remaining,
                min_stake=self.min_stake,
            )

        self._touch(self._channels, channel_id)
        channel.nonce.consume(nonce, signature)
        channel.stake = remaining
        if remaining == 0:
            channel.opened = False
        self.total_stake -= amount
        InvariantChecker.check_non_negative("total_stake", self.total_stake)

        if fee > 0:
            self.ledger.transfer(self.address, caller, fee)
        self.ledger.transfer(self.address, self._beneficiary_of(identity), amount - fee)
        self.events.emit("NewStake", self.ledger.now(), channel_id=channel_id, stake=remaining)
        return channel

    @atomic
    def increase_hub_stake(self, caller: str, amount: int) -> int:
        """Add to the hub's own stake from the caller's allowance."""
        self._require_not_closed()
        caller = checksum(caller, "caller")
        amount = uint(amount)
        self.ledger.transfer_from(self.address, caller, self.address, amount)
        self.hub_stake += amount
        self.events.emit("HubStakeIncreased", self.ledger.now(), stake=self.hub_stake)
        return self.hub_stake

    # -------------------------------------------------------------------------
    # Punishment
    # -------------------------------------------------------------------------

    def punishment_units(self, now: Optional[int] = None) -> int:
        """Punishment units elapsed beyond the first, free one."""
        if self._status is not HubStatus.PUNISHMENT:
            return 0
        now = self.ledger.now() if now is None else now
        elapsed = now - self._punishment.activation_time
        return max(ceil_div(elapsed, self.punishment_unit_seconds) - 1, 0)

    @timed_operation(_logger, "resolve_emergency")
    @atomic
    def resolve_emergency(self, caller: str) -> int:
        """
        Leave punishment.

        Charges the accrued penalty, tops the hub up from the caller so it
        can cover one maximal settlement and returns it to Active. Returns
        the penalty charged.
        """
        if self._status is not HubStatus.PUNISHMENT:
            raise InvalidState("Hub is not in punishment", status=self._status.value)
        caller = checksum(caller, "caller")

        units = self.punishment_units()
        penalty = units * ceil_div(self.total_stake * self.punishment_percent, 100)
        self._punishment.amount += penalty

        required = self.minimal_expected_balance() + self.max_stake
        balance = self.balance()
        if balance < required:
            self.ledger.transfer_from(self.address, caller, self.address, required - balance)

        self._transition(HubStatus.ACTIVE)
        self.events.emit("HubPunishmentDeactivated", self.ledger.now(), units=units, penalty=penalty)
        return penalty

    # -------------------------------------------------------------------------
    # Closing
    # -------------------------------------------------------------------------

    @atomic
    def close_hub(self, caller: str) -> int:
        """Start the closing timelock. Returns when the stake can be taken back."""
        self._require_operator(caller)
        if self._status in (HubStatus.PUNISHMENT, HubStatus.CLOSED):
            raise InvalidState(f"Cannot close hub while {self._status.value}", status=self._status.value)
        self._transition(HubStatus.CLOSED)
        self.closing_timelock_end = self.ledger.now() + self.closing_timelock_seconds
        self.events.emit("HubClosed", self.ledger.now(), timelock_end=self.closing_timelock_end)
        return self.closing_timelock_end

    @atomic
    def get_stake_back(self, caller: str, beneficiary: str) -> int:
        """Release the whole remaining balance of a closed hub, once."""
        self._require_operator(caller)
        beneficiary = checksum(beneficiary, "beneficiary")
        if self._status is not HubStatus.CLOSED:
            raise InvalidState("Hub is not closed", status=self._status.value)
        now = self.ledger.now()
        if now <= self.closing_timelock_end:
            raise Expired(
                "Closing timelock has not passed",
                timelock_end=self.closing_timelock_end,
                now=now,
            )
        if self._stake_released:
            raise InvalidState("Stake already released", hub=self.address)

        amount = self.balance()
        self._stake_released = True
        self.hub_stake = 0
        if amount > 0:
            self.ledger.transfer(self.address, beneficiary, amount)
        self.events.emit("HubStakeReturned", now, beneficiary=beneficiary, amount=amount)
        return amount

    # -------------------------------------------------------------------------
    # Ownership and operations
    # -------------------------------------------------------------------------

    @atomic
    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        self._require_owner(caller)
        new_owner = checksum(new_owner, "new_owner")
        if new_owner == self.operator:
            raise ValidationError("new_owner", "Operator cannot own the hub", new_owner)
        previous = self.owner
        self.owner = new_owner
        self.events.emit("OwnershipTransferred", self.ledger.now(), previous_owner=previous, new_owner=new_owner)

    @atomic
    def withdraw(self, caller: str, beneficiary: str, amount: int) -> None:
        """Owner withdrawal of funds above the minimal expected balance."""
        self._require_owner(caller)
        beneficiary = checksum(beneficiary, "beneficiary")
        amount = uint(amount)
        available = self.available_balance()
        require(
            amount <= available,
            InsufficientFunds,
            f"Only {available} available for withdrawal",
            available=available,
            required=amount,
        )
        self.ledger.transfer(self.address, beneficiary, amount)
        self.events.emit("Withdrawn", self.ledger.now(), beneficiary=beneficiary, amount=amount)

    @atomic
    def set_min_stake(self, caller: str, value: int) -> None:
        self._require_owner(caller)
        value = uint(value, "min_stake")
        if value > self.max_stake:
            raise ValidationError("min_stake", f"Cannot exceed max_stake {self.max_stake}", value)
        self.min_stake = value
        self.events.emit("MinStakeValueUpdated", self.ledger.now(), min_stake=value)

    @atomic
    def set_max_stake(self, caller: str, value: int) -> None:
        self._require_owner(caller)
        value = uint(value, "max_stake")
        if value < self.min_stake:
            raise ValidationError("max_stake", f"Cannot be below min_stake {self.min_stake}", value)
        self.max_stake = value
        self.events.emit("MaxStakeValueUpdated", self.ledger.now(), max_stake=value)

    @atomic
    def pause(self, caller: str) -> None:
        self._require_owner(caller)
        if self._status is not HubStatus.ACTIVE:
            raise InvalidState("Only an active hub can be paused", status=self._status.value)
        self._transition(HubStatus.PAUSED)
        self.events.emit("HubPaused", self.ledger.now())

    @atomic
    def resume(self, caller: str) -> None:
        self._require_owner(caller)
        if self._status is not HubStatus.PAUSED:
            raise InvalidState("Hub is not paused", status=self._status.value)
        self._transition(HubStatus.ACTIVE)
        self.events.emit("HubResumed", self.ledger.now())
