"""
Payment Channel Validation and Hardening Module

Error taxonomy, input validation and atomicity primitives shared by every
component of the payment-channel protocol. It addresses:

1. Protocol error types with stable error codes
2. Input validation for addresses, unsigned integers and 32-byte words
3. State machine invariant enforcement
4. All-or-nothing execution of external calls

Security Model:
    - All inputs are untrusted until validated
    - Every external call runs under the world lock of its ledger
    - Every external call either commits fully or restores the snapshot
      taken before it started

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import contextvars
import copy
import hashlib
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple, TypeVar

from web3 import Web3

from tools.paychannel.observability import deferred_logging


UINT256_MAX = 2 ** 256 - 1
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


# =============================================================================
# PROTOCOL ERROR TYPES
# =============================================================================

class ChannelProtocolError(Exception):
    """Base exception for rejected protocol calls."""

    code = "protocol_error"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(ChannelProtocolError):
    """Malformed input."""

    code = "validation_error"

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.value = value
        super().__init__(f"{field}: {message}")


class InvalidSignature(ChannelProtocolError):
    """Signature does not recover to the expected signer."""
    code = "invalid_signature"


class StaleNonce(ChannelProtocolError):
    """Nonce is not greater than the last one recorded for the subject."""
    code = "stale_nonce"


class NonceReplay(ChannelProtocolError):
    """Signed message was already consumed."""
    code = "nonce_replay"


class InsufficientFunds(ChannelProtocolError):
    """Balance, allowance or payout is too small for the operation."""
    code = "insufficient_funds"


class Unauthorized(ChannelProtocolError):
    """Caller does not hold the role the operation requires."""
    code = "unauthorized"


class InvalidState(ChannelProtocolError):
    """Operation not permitted in the current state."""
    code = "invalid_state"


class Expired(ChannelProtocolError):
    """Time gate not satisfied: deadline passed or timelock still running."""
    code = "expired"


class AlreadyRegistered(ChannelProtocolError):
    """Entity is already registered or initialized."""
    code = "already_registered"


class DuplicateHub(AlreadyRegistered):
    """Operator already has a hub under the current implementation version."""
    code = "duplicate_hub"


class BelowMinimumStake(ChannelProtocolError):
    """Stake would fall strictly between zero and the minimum."""
    code = "below_minimum_stake"


class FeeOutOfRange(ChannelProtocolError):
    """Fee is above the hard ceiling."""
    code = "fee_out_of_range"


class UnknownHub(ChannelProtocolError):
    """Address is not a registered hub."""
    code = "unknown_hub"


class InvariantViolation(Exception):
    """State machine invariant violated."""
    pass


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise the first ValidationError if validation failed."""
        if not self.is_valid:
            raise self.errors[0]

    def unwrap(self) -> Any:
        """Return the sanitized value or raise."""
        self.raise_if_invalid()
        return self.sanitized_value

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    HEX40_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')

    MAX_URL_LENGTH = 2048

    @classmethod
    def validate_address(
        cls,
        value: Any,
        field_name: str = "address",
        allow_zero: bool = False,
    ) -> ValidationResult:
        """Validate an Ethereum address; sanitized value is checksummed."""
        if isinstance(value, bytes) and len(value) == 20:
            value = "0x" + value.hex()
        if not isinstance(value, str) or not cls.HEX40_PATTERN.match(value):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be valid Ethereum address (0x + 40 hex)", value)
            ])
        checksummed = Web3.to_checksum_address(value)
        if not allow_zero and checksummed == ZERO_ADDRESS:
            return ValidationResult.failure([
                ValidationError(field_name, "Zero address not allowed", value)
            ])
        return ValidationResult.success(checksummed)

    @classmethod
    def validate_uint(
        cls,
        value: Any,
        field_name: str = "amount",
        max_value: int = UINT256_MAX,
    ) -> ValidationResult:
        """Validate an unsigned 256-bit integer."""
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected integer, got {type(value).__name__}", value)
            ])
        if value < 0:
            return ValidationResult.failure([
                ValidationError(field_name, "Cannot be negative", value)
            ])
        if value > max_value:
            return ValidationResult.failure([
                ValidationError(field_name, f"Exceeds maximum {max_value}", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_bytes32(cls, value: Any, field_name: str = "word") -> ValidationResult:
        """Validate a 32-byte word given as bytes or 0x-prefixed hex."""
        if isinstance(value, str):
            try:
                value = bytes.fromhex(value[2:] if value.startswith("0x") else value)
            except ValueError:
                return ValidationResult.failure([
                    ValidationError(field_name, "Invalid hex string", value)
                ])
        if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
            return ValidationResult.failure([
                ValidationError(field_name, "Must be exactly 32 bytes", value)
            ])
        return ValidationResult.success(bytes(value))

    @classmethod
    def validate_url(cls, value: Any, field_name: str = "url") -> ValidationResult:
        """Validate a hub URL; sanitized value is bytes."""
        if isinstance(value, str):
            value = value.encode("utf-8")
        if not isinstance(value, (bytes, bytearray)):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected bytes or str, got {type(value).__name__}", value)
            ])
        if len(value) > cls.MAX_URL_LENGTH:
            return ValidationResult.failure([
                ValidationError(field_name, f"Too long (max {cls.MAX_URL_LENGTH} bytes)", value)
            ])
        return ValidationResult.success(bytes(value))


def checksum(value: Any, field_name: str = "address", allow_zero: bool = False) -> str:
    """Validate and checksum an address, raising ValidationError."""
    return Validators.validate_address(value, field_name, allow_zero=allow_zero).unwrap()


def uint(value: Any, field_name: str = "amount") -> int:
    """Validate an unsigned integer, raising ValidationError."""
    return Validators.validate_uint(value, field_name).unwrap()


# =============================================================================
# INVARIANT CHECKER
# =============================================================================

class InvariantChecker:
    """Enforces state machine invariants."""

    @staticmethod
    def check_state_transition(
        current_state: Enum,
        target_state: Enum,
        valid_transitions: Dict[Enum, Set[Enum]],
    ) -> None:
        """Verify state transition is valid."""
        valid_targets = valid_transitions.get(current_state, set())
        if target_state not in valid_targets:
            raise InvariantViolation(
                f"Invalid state transition: {current_state.value} -> {target_state.value}. "
                f"Valid targets: {sorted(s.value for s in valid_targets)}"
            )

    @staticmethod
    def check_monotonic_increase(
        field_name: str,
        old_value: int,
        new_value: int,
    ) -> None:
        """Ensure value only increases."""
        if new_value < old_value:
            raise InvariantViolation(
                f"{field_name} must be monotonically increasing: "
                f"cannot go from {old_value} to {new_value}"
            )

    @staticmethod
    def check_non_negative(field_name: str, value: int) -> None:
        """Ensure value is non-negative."""
        if value < 0:
            raise InvariantViolation(f"{field_name} cannot be negative: {value}")

    @staticmethod
    def check_balance_sufficient(
        available: int,
        required: int,
        field_name: str = "balance",
    ) -> None:
        """Ensure sufficient balance for operation."""
        if available < required:
            raise InsufficientFunds(
                f"Insufficient {field_name}: have {available}, need {required}",
                available=available,
                required=required,
            )


# =============================================================================
# REPLAY PROTECTION
# =============================================================================

@dataclass
class NonceCounter:
    """
    Per-subject monotonic nonce with a record of consumed signatures.

    Counters starting at -1 accept 0 as their first nonce. Signatures are
    remembered by fingerprint so a resubmitted message is reported as a
    stale nonce rather than as a signature mismatch.
    """
    last: int = 0
    consumed: Set[str] = field(default_factory=set)

    def next_nonce(self, explicit: Optional[int] = None) -> int:
        """Nonce the next signed message must carry."""
        if explicit is None:
            return self.last + 1
        explicit = uint(explicit, "nonce")
        if explicit <= self.last:
            raise StaleNonce(
                f"Nonce {explicit} is not greater than last used {self.last}",
                nonce=explicit,
                last=self.last,
            )
        return explicit

    @staticmethod
    def fingerprint(signature: bytes) -> str:
        return hashlib.sha256(bytes(signature)).hexdigest()

    def check_fresh(self, signature: bytes, error: Callable[..., ChannelProtocolError] = StaleNonce) -> None:
        if self.fingerprint(signature) in self.consumed:
            raise error("Signature already consumed", last=self.last)

    def consume(self, nonce: int, signature: bytes) -> None:
        InvariantChecker.check_monotonic_increase("nonce", self.last + 1, nonce)
        self.last = nonce
        self.consumed.add(self.fingerprint(signature))


# =============================================================================
# ATOMIC EXECUTION
# =============================================================================

_MISSING = object()


class Snapshottable:
    """
    Mixin for entities that take part in all-or-nothing calls.

    Fields listed in _STATE_FIELDS are deep-copied into the snapshot and
    should stay small. Fields listed in _LOG_FIELDS hold append-only logs
    with a ``truncate`` method; only their length is saved. Keyed
    containers that grow with the number of accounts are not snapshotted:
    entries are saved one at a time with ``_touch`` just before they change.
    """

    _STATE_FIELDS: Tuple[str, ...] = ()
    _LOG_FIELDS: Tuple[str, ...] = ()

    def snapshot(self) -> Dict[str, Any]:
        state = {name: copy.deepcopy(getattr(self, name)) for name in self._STATE_FIELDS}
        for name in self._LOG_FIELDS:
            state[name] = len(getattr(self, name))
        return state

    def restore(self, state: Dict[str, Any]) -> None:
        for name, value in state.items():
            if name in self._LOG_FIELDS:
                getattr(self, name).truncate(value)
            else:
                setattr(self, name, value)

    def _participants(self) -> List['Snapshottable']:
        """Entities a call on this entity changes directly."""
        return [self]

    def _touch(self, container: Dict[Any, Any], key: Any) -> None:
        """Save one entry of a keyed container before it changes."""
        journal = _active_journal.get()
        if journal is not None:
            journal.remember(container, key)


class Journal:
    """
    Undo log of one running transaction.

    Holds participant snapshots and the saved values of touched container
    entries. A nested transaction keeps its own journal and merges it into
    the enclosing one when it completes, so entities first reached through
    a nested call are rolled back with the outermost call.
    """

    def __init__(self) -> None:
        self._snapshots: Dict[int, Tuple[Snapshottable, Dict[str, Any]]] = {}
        self._entries: Dict[Tuple[int, Any], Tuple[Dict[Any, Any], Any, Any]] = {}

    def enlist(self, participant: Snapshottable) -> None:
        if id(participant) not in self._snapshots:
            self._snapshots[id(participant)] = (participant, participant.snapshot())

    def remember(self, container: Dict[Any, Any], key: Any) -> None:
        slot = (id(container), key)
        if slot in self._entries:
            return
        value = container.get(key, _MISSING)
        if value is not _MISSING:
            value = copy.deepcopy(value)
        self._entries[slot] = (container, key, value)

    def merge_into(self, outer: "Journal") -> None:
        """Hand saved state to the enclosing journal; its older saves win."""
        for key, snapshot in self._snapshots.items():
            outer._snapshots.setdefault(key, snapshot)
        for slot, entry in self._entries.items():
            outer._entries.setdefault(slot, entry)

    def rollback(self) -> None:
        for container, key, value in reversed(list(self._entries.values())):
            if value is _MISSING:
                container.pop(key, None)
            else:
                container[key] = value
        for participant, state in reversed(list(self._snapshots.values())):
            participant.restore(state)

    def participants(self) -> List[Snapshottable]:
        return [participant for participant, _ in self._snapshots.values()]

    def keys(self) -> List[Any]:
        """Keys of the container entries saved so far."""
        return [key for _, key, _ in self._entries.values()]


_active_journal: contextvars.ContextVar[Optional[Journal]] = contextvars.ContextVar(
    "active_journal", default=None
)


@contextmanager
def transaction(*participants: Snapshottable) -> Iterator[Journal]:
    """
    Run a block with rollback of every participant on failure.

    Container entries saved with ``_touch`` inside the block are restored
    too. State-change log lines are written only if the outermost block
    completes.
    """
    outer = _active_journal.get()
    journal = Journal()
    for participant in participants:
        journal.enlist(participant)
    token = _active_journal.set(journal)
    with deferred_logging():
        try:
            yield journal
        except BaseException:
            journal.rollback()
            raise
        finally:
            _active_journal.reset(token)
    if outer is not None:
        journal.merge_into(outer)


F = TypeVar("F", bound=Callable[..., Any])


def atomic(func: F) -> F:
    """
    Decorator to make an entity method atomic.

    Holds the entity's world lock for the duration of the call and
    restores every participant if the call raises.
    """
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            with transaction(*self._participants()):
                return func(self, *args, **kwargs)
    return wrapper  # type: ignore[return-value]


def require(condition: bool, error: Callable[..., ChannelProtocolError], message: str, **details: Any) -> None:
    """Raise ``error(message)`` unless condition holds."""
    if not condition:
        raise error(message, **details)


def ceil_div(numerator: int, denominator: int) -> int:
    """Integer division rounding up."""
    return -(-numerator // denominator)


def optional_uint(value: Optional[int], field_name: str) -> Optional[int]:
    return None if value is None else uint(value, field_name)
