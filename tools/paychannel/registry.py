"""
Identity and Hub Registry

Entry point of the protocol. The registry:

    - registers hubs at deterministic addresses keyed by (operator, version)
    - registers identities, deploying their consumer channel proxy for a hub
      and forwarding the initial provider stake into that hub
    - keeps each identity's beneficiary and beneficiary-change nonce
    - keeps hub URLs behind per-hub nonces
    - pins channel and hub implementations per version

Addresses come from addressing.py, so anyone can compute where a channel or
hub lives before it is deployed.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from tools.paychannel.addressing import consumer_channel_address, hub_address, proxy_runtime_code
from tools.paychannel.channel import ConsumerChannel
from tools.paychannel.config import get_config
from tools.paychannel.exchange import SwapPool
from tools.paychannel.hardening import (
    AlreadyRegistered,
    BelowMinimumStake,
    DuplicateHub,
    InsufficientFunds,
    InvalidState,
    NonceCounter,
    Snapshottable,
    Unauthorized,
    UnknownHub,
    Validators,
    atomic,
    checksum,
    optional_uint,
    require,
    uint,
)
from tools.paychannel.hub import Hub
from tools.paychannel.ledger import Ledger
from tools.paychannel.observability import ChannelLayer, EventLog, get_logger, timed_operation
from tools.paychannel.signatures import SignatureVerifier


_logger = get_logger("registry", ChannelLayer.REGISTRY)

CHANNEL_IMPLEMENTATION_CODE = b"paychannel:consumer-channel"
HUB_IMPLEMENTATION_CODE = b"paychannel:hub"
REGISTRY_CODE = b"paychannel:registry"


# =============================================================================
# RECORDS
# =============================================================================

@dataclass(frozen=True)
class Implementations:
    """Channel and hub implementation pinned for one version."""
    channel: str
    hub: str


@dataclass
class IdentityRecord:
    """Beneficiary of an identity and the nonce guarding changes to it."""
    beneficiary: str
    nonce: NonceCounter = field(default_factory=NonceCounter)
    hubs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "beneficiary": self.beneficiary,
            "last_nonce": self.nonce.last,
            "hubs": list(self.hubs),
        }


@dataclass
class HubRecord:
    """Registry-side data of a hub."""
    operator: str
    version: int
    url: bytes
    url_nonce: NonceCounter = field(default_factory=lambda: NonceCounter(last=-1))


def deploy_implementations(ledger: Ledger) -> Tuple[str, str]:
    """Deploy channel and hub implementation code; returns their addresses."""
    return (
        ledger.deploy_contract(CHANNEL_IMPLEMENTATION_CODE),
        ledger.deploy_contract(HUB_IMPLEMENTATION_CODE),
    )


# =============================================================================
# REGISTRY
# =============================================================================

class Registry(Snapshottable):
    """
    Deterministic registry of identities, consumer channels and hubs.

    Must be initialized once before use; the initializing caller becomes
    the owner allowed to publish new implementation versions.
    """

    _STATE_FIELDS = (
        "_initialized",
        "owner",
        "min_hub_stake",
        "_implementations",
    )
    _LOG_FIELDS = ("events",)

    def __init__(self, ledger: Ledger, address: Optional[str] = None):
        self.ledger = ledger
        self._lock = ledger.lock
        if address is None:
            address = ledger.deploy_contract(REGISTRY_CODE)
        self.address = checksum(address, "address")
        self.chain_id = get_config().registry.chain_id.get()
        self.verifier = SignatureVerifier(self.chain_id)

        self._initialized = False
        self.owner: Optional[str] = None
        self.min_hub_stake = 0
        self.dex: Optional[SwapPool] = None
        self.parent: Optional["Registry"] = None
        self._implementations: List[Implementations] = []
        self._identities: Dict[str, IdentityRecord] = {}
        self._hub_records: Dict[str, HubRecord] = {}
        self._hubs: Dict[str, Hub] = {}
        self._channels: Dict[Tuple[str, str], ConsumerChannel] = {}
        self.events = EventLog(self.address, _logger)

    def _participants(self) -> List[Snapshottable]:
        return [self, self.ledger]

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    @atomic
    def initialize(
        self,
        caller: str,
        dex: Optional[SwapPool],
        channel_implementation: str,
        hub_implementation: str,
        min_hub_stake: Optional[int] = None,
        parent: Optional["Registry"] = None,
    ) -> None:
        """One-shot setup; pins implementation version 0."""
        if self._initialized:
            raise AlreadyRegistered("Registry already initialized", registry=self.address)
        caller = checksum(caller, "caller")
        implementations = self._checked_implementations(channel_implementation, hub_implementation)
        if min_hub_stake is None:
            min_hub_stake = get_config().registry.min_hub_stake.get()

        self.min_hub_stake = uint(min_hub_stake, "min_hub_stake")
        self.owner = caller
        self._implementations = [implementations]
        self._initialized = True
        self.dex = dex
        self.parent = parent
        self.events.emit(
            "Initialized",
            self.ledger.now(),
            owner=caller,
            channel_implementation=implementations.channel,
            hub_implementation=implementations.hub,
        )

    def is_initialized(self) -> bool:
        return self._initialized

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise InvalidState("Registry is not initialized", registry=self.address)

    def _checked_implementations(self, channel_implementation: str, hub_implementation: str) -> Implementations:
        channel_implementation = checksum(channel_implementation, "channel_implementation")
        hub_implementation = checksum(hub_implementation, "hub_implementation")
        for name, address in (("channel", channel_implementation), ("hub", hub_implementation)):
            if not self.ledger.is_contract(address):
                raise InvalidState(f"No code at {name} implementation {address}", address=address)
        return Implementations(channel_implementation, hub_implementation)

    @atomic
    def set_implementations(self, caller: str, channel_implementation: str, hub_implementation: str) -> int:
        """Publish a new implementation version. Returns the version number."""
        self._require_initialized()
        if checksum(caller, "caller") != self.owner:
            raise Unauthorized("Only the registry owner may set implementations", caller=caller)
        implementations = self._checked_implementations(channel_implementation, hub_implementation)
        self._implementations.append(implementations)
        version = self.last_implementation_version()
        self.events.emit(
            "ImplementationsUpdated",
            self.ledger.now(),
            version=version,
            channel_implementation=implementations.channel,
            hub_implementation=implementations.hub,
        )
        return version

    # -------------------------------------------------------------------------
    # Hubs
    # -------------------------------------------------------------------------

    @timed_operation(_logger, "register_hub")
    @atomic
    def register_hub(
        self,
        caller: str,
        operator: str,
        stake: int,
        fee_bps: int,
        min_stake: int,
        max_stake: int,
        url: Any,
    ) -> Hub:
        """
        Deploy a hub for an operator under the current implementation.

        The hub stake is pulled from the caller's allowance to the registry.
        """
        self._require_initialized()
        caller = checksum(caller, "caller")
        operator = checksum(operator, "operator")
        stake = uint(stake, "stake")
        url = Validators.validate_url(url).unwrap()
        if stake < self.min_hub_stake:
            raise BelowMinimumStake(
                f"Hub stake {stake} below registry minimum {self.min_hub_stake}",
                stake=stake,
                min_stake=self.min_hub_stake,
            )

        version = self.last_implementation_version()
        address = self.get_hub_address(operator, version)
        if address in self._hubs:
            raise DuplicateHub(
                "Operator already has a hub under the current implementation",
                operator=operator,
                version=version,
            )

        self.ledger.deploy_code(address, proxy_runtime_code(self._implementations[version].hub))
        hub = Hub(
            self.ledger,
            self,
            address,
            operator,
            fee_bps=fee_bps,
            min_stake=min_stake,
            max_stake=max_stake,
            hub_stake=stake,
            pool=self.dex,
        )
        if stake > 0:
            self.ledger.transfer_from(self.address, caller, address, stake)

        self._touch(self._hubs, address)
        self._touch(self._hub_records, address)
        self._hubs[address] = hub
        self._hub_records[address] = HubRecord(operator=operator, version=version, url=url)
        self.events.emit("RegisteredHub", self.ledger.now(), hub=address, operator=operator, version=version)
        return hub

    @atomic
    def update_hub_url(self, hub: str, url: Any, signature: bytes, nonce: Optional[int] = None) -> bytes:
        """Change a hub's URL with an operator signature."""
        record = self._hub_record(hub)
        hub = checksum(hub, "hub")
        url = Validators.validate_url(url).unwrap()

        record.url_nonce.check_fresh(signature)
        nonce = record.url_nonce.next_nonce(optional_uint(nonce, "nonce"))
        digest = self.verifier.url_update_digest(self.address, hub, url, nonce)
        self.verifier.require_signer(digest, signature, record.operator, "hub URL update")

        self._touch(self._hub_records, hub)
        record.url_nonce.consume(nonce, signature)
        record.url = url
        self.events.emit("HubURLUpdated", self.ledger.now(), hub=hub, url=url, nonce=nonce)
        return url

    def _hub_record(self, hub: str) -> HubRecord:
        record = self._hub_records.get(checksum(hub, "hub"))
        if record is None:
            raise UnknownHub(f"{hub} is not a registered hub", hub=hub)
        return record

    def _active_hub(self, hub: str) -> Hub:
        self._hub_record(hub)
        instance = self._hubs[checksum(hub, "hub")]
        if not instance.is_active():
            raise InvalidState(
                f"Hub is {instance.get_status().value}",
                hub=instance.address,
                status=instance.get_status().value,
            )
        return instance

    # -------------------------------------------------------------------------
    # Identities
    # -------------------------------------------------------------------------

    @timed_operation(_logger, "register_identity")
    @atomic
    def register_identity(
        self,
        caller: str,
        hub: str,
        stake: int,
        fee: int,
        beneficiary: str,
        signature: bytes,
    ) -> ConsumerChannel:
        """
        Register the signing identity with a hub.

        Deploys the identity's consumer channel, pays the transactor fee
        from it and forwards the stake into the hub as provider stake.
        """
        self._require_initialized()
        instance = self._active_hub(hub)
        stake = uint(stake, "stake")
        fee = uint(fee, "fee")
        beneficiary = checksum(beneficiary, "beneficiary")
        digest = self.verifier.registration_digest(self.address, instance.address, stake, fee, beneficiary)
        identity = self.verifier.recover(digest, signature)
        return self._register(caller, identity, instance, stake, fee, beneficiary)

    @timed_operation(_logger, "open_consumer_channel")
    @atomic
    def open_consumer_channel(self, caller: str, hub: str, fee: int, signature: bytes) -> ConsumerChannel:
        """Register with the identity's own consumer channel as beneficiary."""
        self._require_initialized()
        instance = self._active_hub(hub)
        fee = uint(fee, "fee")
        digest = self.verifier.consumer_channel_opening_digest(self.address, instance.address, fee)
        identity = self.verifier.recover(digest, signature)
        beneficiary = self.get_channel_address(identity, instance.address)
        return self._register(caller, identity, instance, 0, fee, beneficiary)

    def _register(
        self,
        caller: str,
        identity: str,
        hub: Hub,
        stake: int,
        fee: int,
        beneficiary: str,
    ) -> ConsumerChannel:
        caller = checksum(caller, "caller")
        record = self._identities.get(identity)
        if record is not None and record.beneficiary != beneficiary:
            raise AlreadyRegistered(
                "Identity already registered with another beneficiary",
                identity=identity,
            )
        if (identity, hub.address) in self._channels:
            raise AlreadyRegistered("Identity already registered with this hub", identity=identity, hub=hub.address)

        channel = self._deploy_channel(identity, hub)
        balance = channel.balance()
        require(
            balance >= stake + fee,
            InsufficientFunds,
            f"Channel holds {balance}, registration needs {stake + fee}",
            available=balance,
            required=stake + fee,
        )
        if fee > 0:
            self.ledger.transfer(channel.address, caller, fee)
        if stake > 0:
            self.ledger.transfer(channel.address, hub.address, stake)
            hub.stake_from_registration(identity, stake)

        self._touch(self._identities, identity)
        if record is None:
            record = IdentityRecord(beneficiary=beneficiary)
            self._identities[identity] = record
        record.hubs.append(hub.address)
        self.events.emit(
            "RegisteredIdentity",
            self.ledger.now(),
            identity=identity,
            hub=hub.address,
            channel=channel.address,
        )
        return channel

    def _deploy_channel(self, identity: str, hub: Hub) -> ConsumerChannel:
        address = self.get_channel_address(identity, hub.address)
        implementation = self.get_channel_implementation(self._hub_records[hub.address].version)
        self.ledger.deploy_code(address, proxy_runtime_code(implementation))
        channel = ConsumerChannel(self.ledger, address, self.chain_id, pool=self.dex)
        channel.initialize(identity, hub.operator, hub.address)
        self._touch(self._channels, (identity, hub.address))
        self._channels[(identity, hub.address)] = channel
        self.events.emit("ConsumerChannelCreated", self.ledger.now(), identity=identity, channel=address)
        return channel

    @atomic
    def set_beneficiary(
        self,
        identity: str,
        new_beneficiary: str,
        signature: bytes,
        nonce: Optional[int] = None,
    ) -> int:
        """Change an identity's beneficiary. Returns the nonce consumed."""
        identity = checksum(identity, "identity")
        new_beneficiary = checksum(new_beneficiary, "new_beneficiary")
        record = self._identities.get(identity)
        if record is None:
            raise InvalidState("Identity is not registered", identity=identity)

        record.nonce.check_fresh(signature)
        nonce = record.nonce.next_nonce(optional_uint(nonce, "nonce"))
        digest = self.verifier.beneficiary_change_digest(self.address, new_beneficiary, nonce)
        self.verifier.require_signer(digest, signature, identity, "beneficiary change")

        self._touch(self._identities, identity)
        record.nonce.consume(nonce, signature)
        record.beneficiary = new_beneficiary
        self.events.emit("BeneficiaryChanged", self.ledger.now(), identity=identity, beneficiary=new_beneficiary)
        return nonce

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def is_registered(self, identity: str) -> bool:
        identity = checksum(identity, "identity")
        if identity in self._identities:
            return True
        return self.parent is not None and self.parent.is_registered(identity)

    def get_beneficiary(self, identity: str) -> Optional[str]:
        identity = checksum(identity, "identity")
        record = self._identities.get(identity)
        if record is not None:
            return record.beneficiary
        if self.parent is not None:
            return self.parent.get_beneficiary(identity)
        return None

    def last_nonce(self, identity: str) -> int:
        record = self._identities.get(checksum(identity, "identity"))
        return record.nonce.last if record else 0

    def get_channel_address(self, identity: str, hub: str) -> str:
        """Consumer channel address, pinned by the hub's implementation version."""
        hub = checksum(hub, "hub")
        record = self._hub_records.get(hub)
        version = record.version if record else None
        return consumer_channel_address(self.address, identity, hub, self.get_channel_implementation(version))

    def get_hub_address(self, operator: str, version: Optional[int] = None) -> str:
        version = self._version(version)
        return hub_address(self.address, operator, version, self._implementations[version].hub)

    def is_hub(self, address: str) -> bool:
        return checksum(address, "address") in self._hubs

    def get_hub(self, address: str) -> Hub:
        self._hub_record(address)
        return self._hubs[checksum(address, "address")]

    def get_channel(self, identity: str, hub: str) -> Optional[ConsumerChannel]:
        return self._channels.get((checksum(identity, "identity"), checksum(hub, "hub")))

    def get_hub_url(self, hub: str) -> bytes:
        return self._hub_record(hub).url

    def get_channel_implementation(self, version: Optional[int] = None) -> str:
        return self._implementations[self._version(version)].channel

    def get_hub_implementation(self, version: Optional[int] = None) -> str:
        return self._implementations[self._version(version)].hub

    def last_implementation_version(self) -> int:
        self._require_initialized()
        return len(self._implementations) - 1

    def _version(self, version: Optional[int]) -> int:
        latest = self.last_implementation_version()
        if version is None:
            return latest
        version = uint(version, "version")
        if version > latest:
            raise InvalidState(f"Unknown implementation version {version}", version=version)
        return version
