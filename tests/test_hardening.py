"""
Hardening Module Tests

Input validators, invariant checks, nonce counters and all-or-nothing
execution.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import threading

import pytest

from tools.paychannel.hardening import (
    UINT256_MAX,
    InsufficientFunds,
    InvariantChecker,
    InvariantViolation,
    NonceCounter,
    NonceReplay,
    Snapshottable,
    StaleNonce,
    ValidationError,
    Validators,
    atomic,
    ceil_div,
    checksum,
    transaction,
    uint,
)
from tools.paychannel.hub import HUB_TRANSITIONS, HubStatus
from tools.paychannel.signatures import sign_beneficiary_change


class TestValidators:
    """Address, integer, word and URL validation."""

    def test_address_is_checksummed(self):
        lower = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
        assert checksum(lower) == "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"

    def test_address_from_raw_bytes(self):
        raw = bytes.fromhex("5aaeb6053f3e94c9b9a09f33669435e7ef1beaed")
        assert Validators.validate_address(raw).unwrap() == "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"

    def test_bad_addresses(self):
        for value in ("0x1234", "5aaeb6053f3e94c9b9a09f33669435e7ef1beaed", 42, None):
            assert not Validators.validate_address(value).is_valid

    def test_zero_address(self):
        zero = "0x" + "00" * 20
        with pytest.raises(ValidationError):
            checksum(zero)
        assert checksum(zero, allow_zero=True) == zero

    def test_uint_bounds(self):
        assert uint(0) == 0
        assert uint(UINT256_MAX) == UINT256_MAX
        for value in (-1, UINT256_MAX + 1, True, 1.5, "7"):
            with pytest.raises(ValidationError):
                uint(value)

    def test_bytes32(self):
        word = b"\x11" * 32
        assert Validators.validate_bytes32(word).unwrap() == word
        assert Validators.validate_bytes32("0x" + "11" * 32).unwrap() == word
        assert not Validators.validate_bytes32(b"\x11" * 31).is_valid
        assert not Validators.validate_bytes32("0xzz").is_valid

    def test_url(self):
        assert Validators.validate_url("https://hub").unwrap() == b"https://hub"
        assert not Validators.validate_url(b"x" * (Validators.MAX_URL_LENGTH + 1)).is_valid
        assert not Validators.validate_url(123).is_valid

    def test_validation_error_names_field(self):
        with pytest.raises(ValidationError) as excinfo:
            uint(-5, "stake")
        assert excinfo.value.field == "stake"
        assert excinfo.value.code == "validation_error"


class TestInvariants:
    """State machine and arithmetic invariants."""

    def test_hub_transitions(self):
        InvariantChecker.check_state_transition(HubStatus.ACTIVE, HubStatus.PUNISHMENT, HUB_TRANSITIONS)
        InvariantChecker.check_state_transition(HubStatus.PAUSED, HubStatus.CLOSED, HUB_TRANSITIONS)

        with pytest.raises(InvariantViolation):
            InvariantChecker.check_state_transition(HubStatus.CLOSED, HubStatus.ACTIVE, HUB_TRANSITIONS)
        with pytest.raises(InvariantViolation):
            InvariantChecker.check_state_transition(HubStatus.PUNISHMENT, HubStatus.CLOSED, HUB_TRANSITIONS)

    def test_monotonic(self):
        InvariantChecker.check_monotonic_increase("settled", 5, 5)
        with pytest.raises(InvariantViolation):
            InvariantChecker.check_monotonic_increase("settled", 5, 4)

    def test_balance_sufficient(self):
        with pytest.raises(InsufficientFunds) as excinfo:
            InvariantChecker.check_balance_sufficient(3, 4)
        assert excinfo.value.details == {"available": 3, "required": 4}

    def test_ceil_div(self):
        assert ceil_div(250, 100) == 3
        assert ceil_div(200, 100) == 2
        assert ceil_div(0, 7) == 0


class TestNonceCounter:
    """Monotonic nonces with consumed signature fingerprints."""

    def test_implicit_next(self):
        counter = NonceCounter()
        assert counter.next_nonce() == 1
        assert NonceCounter(last=-1).next_nonce() == 0

    def test_explicit_must_exceed_last(self):
        counter = NonceCounter(last=3)
        assert counter.next_nonce(9) == 9
        with pytest.raises(StaleNonce):
            counter.next_nonce(3)

    def test_consumed_signature(self):
        counter = NonceCounter()
        counter.consume(1, b"sig-one")

        assert counter.last == 1
        with pytest.raises(StaleNonce):
            counter.check_fresh(b"sig-one")
        with pytest.raises(NonceReplay):
            counter.check_fresh(b"sig-one", NonceReplay)
        counter.check_fresh(b"sig-two")

    def test_consume_never_goes_back(self):
        counter = NonceCounter(last=5)
        with pytest.raises(InvariantViolation):
            counter.consume(5, b"sig")


class Wallet(Snapshottable):
    _STATE_FIELDS = ("balance", "history")

    def __init__(self, lock):
        self._lock = lock
        self.balance = 10
        self.history = []

    @atomic
    def spend(self, amount):
        self.balance -= amount
        self.history.append(amount)
        if self.balance < 0:
            raise InsufficientFunds("Overdrawn")
        return self.balance


class Bank(Snapshottable):
    _STATE_FIELDS = ("deposits",)

    def __init__(self, lock):
        self._lock = lock
        self.deposits = 0
        self.balances = {}

    @atomic
    def credit(self, account, amount):
        self._touch(self.balances, account)
        self.balances[account] = self.balances.get(account, 0) + amount
        self.deposits += 1
        if self.balances[account] < 0:
            raise InsufficientFunds("Overdrawn")


class TestAtomicity:
    """All-or-nothing execution."""

    def test_failed_call_restores_state(self):
        wallet = Wallet(threading.RLock())
        wallet.spend(4)

        with pytest.raises(InsufficientFunds):
            wallet.spend(7)

        assert wallet.balance == 6
        assert wallet.history == [4]

    def test_transaction_restores_every_participant(self):
        lock = threading.RLock()
        first, second = Wallet(lock), Wallet(lock)

        with pytest.raises(RuntimeError):
            with transaction(first, second, first):
                first.balance = 0
                second.history.append("x")
                raise RuntimeError("abort")

        assert first.balance == 10
        assert second.history == []

    def test_rollback_reaches_registry_and_ledger(self, registry, ledger, accounts, hub, register_identity):
        """A failing registration leaves no channel, code or transfer behind."""
        channel_address = registry.get_channel_address(accounts.provider.address, hub.address)
        supply = ledger.total_supply()

        with pytest.raises(InsufficientFunds):
            register_identity(accounts.provider, hub, stake=10, fee=5, funding=12)

        assert ledger.total_supply() == supply + 12
        assert ledger.balance_of(channel_address) == 12
        assert ledger.balance_of(accounts.tx_maker.address) == 0
        assert hub.get_total_stake() == 0

    def test_touched_entries_restored(self):
        bank = Bank(threading.RLock())
        bank.credit("alice", 5)

        with pytest.raises(InsufficientFunds):
            bank.credit("alice", -10)
        with pytest.raises(InsufficientFunds):
            bank.credit("bob", -1)

        assert bank.balances == {"alice": 5}
        assert bank.deposits == 1

    def test_nested_call_rolls_back_with_outer(self):
        lock = threading.RLock()
        wallet, bank = Wallet(lock), Bank(lock)

        with pytest.raises(RuntimeError):
            with transaction(wallet) as journal:
                bank.credit("alice", 5)
                assert bank in journal.participants()
                raise RuntimeError("abort")

        assert bank.balances == {}
        assert bank.deposits == 0

    def test_caught_nested_failure_keeps_outer_changes(self):
        lock = threading.RLock()
        wallet, bank = Wallet(lock), Bank(lock)

        with transaction(wallet):
            wallet.balance = 3
            bank.credit("alice", 2)
            with pytest.raises(InsufficientFunds):
                bank.credit("alice", -5)

        assert wallet.balance == 3
        assert bank.balances == {"alice": 2}
        assert bank.deposits == 1

    def test_settlement_saves_only_what_it_touches(self, registry, hub, ledger, accounts, register_identity, issue_promise, top_up_hub):
        for identity in (accounts.provider, accounts.provider_b, accounts.provider_c):
            register_identity(identity, hub, stake=10)
        top_up_hub(hub, 1000)
        promise = issue_promise(hub, accounts.provider, 100)

        with transaction(hub, ledger) as journal:
            hub.settle_promise(
                accounts.tx_maker.address,
                accounts.provider.address,
                promise.amount,
                promise.fee,
                promise.preimage,
                promise.signature,
            )

        assert registry not in journal.participants()
        assert set(journal.keys()) == {
            hub.get_channel_id(accounts.provider.address),
            hub.address,
            accounts.beneficiary.address,
        }

    def test_beneficiary_change_does_not_enlist_hubs(self, registry, hub, make_hub, ledger, accounts, register_identity):
        register_identity(accounts.provider, hub, stake=10)
        make_hub(operator=accounts.owner)
        signature = sign_beneficiary_change(
            registry.chain_id, registry.address, accounts.beneficiary_b.address, 1, accounts.provider.key
        )

        with transaction(registry) as journal:
            registry.set_beneficiary(accounts.provider.address, accounts.beneficiary_b.address, signature)

        assert journal.participants() == [registry, ledger]
        assert journal.keys() == [accounts.provider.address]
