"""
Ledger Collaborators

The shared state every protocol entity settles against:

    Ledger       fungible settlement token (balances, allowances), native
                 currency balances and the contract-code map used to tell
                 deployed contracts from plain accounts
    Clock        externally supplied monotonic time source

The ledger also owns the world lock. Every registry, hub and channel bound
to a ledger serializes its external calls on that lock, which gives the
total order of calls a shared chain would impose.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple

from web3 import Web3

from tools.paychannel.hardening import (
    InsufficientFunds,
    InvalidState,
    InvariantChecker,
    Snapshottable,
    atomic,
    checksum,
    uint,
)
from tools.paychannel.observability import ChannelLayer, LogLevel, get_logger
from tools.paychannel.signatures import packed_keccak


# =============================================================================
# CLOCKS
# =============================================================================

class Clock:
    """Source of the current timestamp in whole seconds."""

    def now(self) -> int:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> int:
        return int(time.time())


class ManualClock(Clock):
    """Clock advanced explicitly by the caller; never goes backwards."""

    def __init__(self, start: int = 1_700_000_000):
        self._now = uint(start, "start")
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._now

    def advance(self, seconds: int = 1) -> int:
        seconds = uint(seconds, "seconds")
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, timestamp: int) -> None:
        timestamp = uint(timestamp, "timestamp")
        with self._lock:
            InvariantChecker.check_monotonic_increase("clock", self._now, timestamp)
            self._now = timestamp


# =============================================================================
# TOKEN LEDGER
# =============================================================================

class Ledger(Snapshottable):
    """
    Fungible token ledger with native balances and deployed code.

    Implements the transfer/transferFrom/approve/balanceOf surface the
    protocol consumes. Amounts are unbounded non-negative integers below
    2**256.
    """

    _STATE_FIELDS = ("_deploy_nonce", "_total_supply")

    def __init__(self, clock: Optional[Clock] = None, symbol: str = "MYST"):
        self.symbol = symbol
        self.clock = clock or SystemClock()
        self.lock = threading.RLock()
        self._lock = self.lock
        self._balances: Dict[str, int] = {}
        self._allowances: Dict[Tuple[str, str], int] = {}
        self._native: Dict[str, int] = {}
        self._code: Dict[str, bytes] = {}
        self._deploy_nonce = 0
        self._total_supply = 0
        self._logger = get_logger("ledger", ChannelLayer.LEDGER)

    def now(self) -> int:
        return self.clock.now()

    # -------------------------------------------------------------------------
    # Token balances
    # -------------------------------------------------------------------------

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._balances.get(checksum(account, "account", allow_zero=True), 0)

    def total_supply(self) -> int:
        with self._lock:
            return self._total_supply

    @atomic
    def mint(self, to: str, amount: int) -> None:
        """Create tokens out of thin air (faucet for tests and bootstrap)."""
        to = checksum(to, "to")
        amount = uint(amount)
        self._touch(self._balances, to)
        self._balances[to] = self._balances.get(to, 0) + amount
        self._total_supply += amount
        self._logger.on_commit(LogLevel.DEBUG, "Minted tokens", to=to, amount=amount)

    @atomic
    def transfer(self, sender: str, to: str, amount: int) -> None:
        sender = checksum(sender, "sender")
        to = checksum(to, "to")
        self._move(sender, to, uint(amount))

    @atomic
    def approve(self, owner: str, spender: str, amount: int) -> None:
        owner = checksum(owner, "owner")
        spender = checksum(spender, "spender")
        amount = uint(amount)
        self._touch(self._allowances, (owner, spender))
        self._allowances[(owner, spender)] = amount

    def allowance(self, owner: str, spender: str) -> int:
        with self._lock:
            return self._allowances.get((checksum(owner, "owner"), checksum(spender, "spender")), 0)

    @atomic
    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> None:
        """Move owner's tokens on behalf of spender, consuming allowance."""
        spender = checksum(spender, "spender")
        owner = checksum(owner, "owner")
        to = checksum(to, "to")
        amount = uint(amount)
        allowed = self._allowances.get((owner, spender), 0)
        if allowed < amount:
            raise InsufficientFunds(
                f"Allowance too small: {spender} may move {allowed} of {owner}, needs {amount}",
                available=allowed,
                required=amount,
            )
        self._move(owner, to, amount)
        self._touch(self._allowances, (owner, spender))
        self._allowances[(owner, spender)] = allowed - amount

    def _move(self, sender: str, to: str, amount: int) -> None:
        balance = self._balances.get(sender, 0)
        InvariantChecker.check_balance_sufficient(balance, amount, f"token balance of {sender}")
        self._touch(self._balances, sender)
        self._touch(self._balances, to)
        self._balances[sender] = balance - amount
        self._balances[to] = self._balances.get(to, 0) + amount

    # -------------------------------------------------------------------------
    # Native currency
    # -------------------------------------------------------------------------

    def native_balance_of(self, account: str) -> int:
        with self._lock:
            return self._native.get(checksum(account, "account", allow_zero=True), 0)

    @atomic
    def mint_native(self, to: str, amount: int) -> None:
        to = checksum(to, "to")
        amount = uint(amount)
        self._touch(self._native, to)
        self._native[to] = self._native.get(to, 0) + amount

    @atomic
    def transfer_native(self, sender: str, to: str, amount: int) -> None:
        sender = checksum(sender, "sender")
        to = checksum(to, "to")
        amount = uint(amount)
        balance = self._native.get(sender, 0)
        InvariantChecker.check_balance_sufficient(balance, amount, f"native balance of {sender}")
        self._touch(self._native, sender)
        self._touch(self._native, to)
        self._native[sender] = balance - amount
        self._native[to] = self._native.get(to, 0) + amount

    # -------------------------------------------------------------------------
    # Deployed code
    # -------------------------------------------------------------------------

    @atomic
    def deploy_code(self, address: str, code: bytes) -> None:
        address = checksum(address, "address")
        if address in self._code:
            raise InvalidState(f"Contract already deployed at {address}", address=address)
        if not code:
            raise InvalidState("Cannot deploy empty code", address=address)
        self._touch(self._code, address)
        self._code[address] = bytes(code)

    @atomic
    def deploy_contract(self, code: bytes) -> str:
        """Deploy code at a fresh address derived from the deployment counter."""
        digest = packed_keccak(["string", "uint256", "bytes"], ["deploy", self._deploy_nonce, bytes(code)])
        address = Web3.to_checksum_address(digest[12:])
        self._deploy_nonce += 1
        self.deploy_code(address, code)
        return address

    def get_code(self, address: str) -> bytes:
        with self._lock:
            return self._code.get(checksum(address, "address", allow_zero=True), b"")

    def is_contract(self, address: str) -> bool:
        return len(self.get_code(address)) > 0
