"""
Fast Exit Tests

Withdrawals signed by both identity and hub operator, with deadline and
one-time nonces.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest

from tools.paychannel.hardening import Expired, InsufficientFunds, InvalidSignature, NonceReplay
from tools.paychannel.signatures import sign_fast_withdrawal


@pytest.fixture
def consumer_channel(accounts, hub, register_identity):
    return register_identity(accounts.consumer, hub, funding=1000)


@pytest.fixture
def exit_request(registry, accounts, clock, consumer_channel):
    """Factory producing (identity signature, hub signature, valid_until)."""
    def _request(amount, fee=0, beneficiary=None, nonce=0, valid_for=60, identity=None, operator=None):
        beneficiary = beneficiary or accounts.beneficiary.address
        valid_until = clock.now() + valid_for
        identity = identity or accounts.consumer
        operator = operator or accounts.operator
        args = (registry.chain_id, consumer_channel.address, amount, fee, beneficiary, valid_until, nonce)
        return (
            sign_fast_withdrawal(*args, identity.key),
            sign_fast_withdrawal(*args, operator.key),
            valid_until,
        )
    return _request


class TestFastExit:
    """Joint early withdrawals."""

    def test_exit_pays_beneficiary_and_transactor(self, consumer_channel, exit_request, ledger, accounts):
        identity_sig, hub_sig, valid_until = exit_request(400, fee=10)

        nonce = consumer_channel.fast_exit(
            accounts.tx_maker.address, 400, 10, accounts.beneficiary.address, valid_until, identity_sig, hub_sig
        )

        assert nonce == 0
        assert consumer_channel.last_exit_nonce == 0
        assert ledger.balance_of(accounts.beneficiary.address) == 390
        assert ledger.balance_of(accounts.tx_maker.address) == 10
        assert consumer_channel.balance() == 600

    def test_second_exit_uses_next_nonce(self, consumer_channel, exit_request, accounts):
        first = exit_request(100)
        consumer_channel.fast_exit(
            accounts.tx_maker.address, 100, 0, accounts.beneficiary.address, first[2], first[0], first[1]
        )

        second = exit_request(100, nonce=1)
        nonce = consumer_channel.fast_exit(
            accounts.tx_maker.address, 100, 0, accounts.beneficiary.address, second[2], second[0], second[1]
        )

        assert nonce == 1
        assert consumer_channel.balance() == 800

    def test_replay_rejected(self, consumer_channel, exit_request, accounts):
        identity_sig, hub_sig, valid_until = exit_request(100)
        consumer_channel.fast_exit(
            accounts.tx_maker.address, 100, 0, accounts.beneficiary.address, valid_until, identity_sig, hub_sig
        )

        with pytest.raises(NonceReplay):
            consumer_channel.fast_exit(
                accounts.tx_maker.address, 100, 0, accounts.beneficiary.address, valid_until, identity_sig, hub_sig
            )
        assert consumer_channel.balance() == 900

    def test_signed_for_old_nonce_fails_verification(self, consumer_channel, exit_request, accounts):
        """A fresh request signed against a consumed nonce recovers a different signer."""
        first = exit_request(100)
        consumer_channel.fast_exit(
            accounts.tx_maker.address, 100, 0, accounts.beneficiary.address, first[2], first[0], first[1]
        )

        stale = exit_request(200, nonce=0)
        with pytest.raises(InvalidSignature):
            consumer_channel.fast_exit(
                accounts.tx_maker.address, 200, 0, accounts.beneficiary.address, stale[2], stale[0], stale[1]
            )

    def test_expired_request(self, consumer_channel, exit_request, clock, accounts):
        identity_sig, hub_sig, valid_until = exit_request(100, valid_for=10)
        clock.advance(11)

        with pytest.raises(Expired):
            consumer_channel.fast_exit(
                accounts.tx_maker.address, 100, 0, accounts.beneficiary.address, valid_until, identity_sig, hub_sig
            )

    def test_deadline_is_inclusive(self, consumer_channel, exit_request, clock, accounts):
        identity_sig, hub_sig, valid_until = exit_request(100, valid_for=10)
        clock.advance(10)

        consumer_channel.fast_exit(
            accounts.tx_maker.address, 100, 0, accounts.beneficiary.address, valid_until, identity_sig, hub_sig
        )
        assert consumer_channel.balance() == 900

    def test_needs_hub_signature(self, consumer_channel, exit_request, accounts):
        identity_sig, hub_sig, valid_until = exit_request(100, operator=accounts.outsider)

        with pytest.raises(InvalidSignature):
            consumer_channel.fast_exit(
                accounts.tx_maker.address, 100, 0, accounts.beneficiary.address, valid_until, identity_sig, hub_sig
            )
        assert consumer_channel.last_exit_nonce == -1

    def test_needs_identity_signature(self, consumer_channel, exit_request, accounts):
        identity_sig, hub_sig, valid_until = exit_request(100, identity=accounts.outsider)

        with pytest.raises(InvalidSignature):
            consumer_channel.fast_exit(
                accounts.tx_maker.address, 100, 0, accounts.beneficiary.address, valid_until, identity_sig, hub_sig
            )

    def test_beneficiary_is_bound(self, consumer_channel, exit_request, accounts):
        identity_sig, hub_sig, valid_until = exit_request(100)

        with pytest.raises(InvalidSignature):
            consumer_channel.fast_exit(
                accounts.tx_maker.address, 100, 0, accounts.outsider.address, valid_until, identity_sig, hub_sig
            )

    def test_fee_above_amount(self, consumer_channel, exit_request, accounts):
        identity_sig, hub_sig, valid_until = exit_request(10, fee=11)

        with pytest.raises(InsufficientFunds):
            consumer_channel.fast_exit(
                accounts.tx_maker.address, 10, 11, accounts.beneficiary.address, valid_until, identity_sig, hub_sig
            )

    def test_amount_above_balance(self, consumer_channel, exit_request, accounts):
        identity_sig, hub_sig, valid_until = exit_request(1001)

        with pytest.raises(InsufficientFunds):
            consumer_channel.fast_exit(
                accounts.tx_maker.address, 1001, 0, accounts.beneficiary.address, valid_until, identity_sig, hub_sig
            )
        assert consumer_channel.last_exit_nonce == -1

    def test_exit_event(self, consumer_channel, exit_request, accounts):
        identity_sig, hub_sig, valid_until = exit_request(100, fee=1)
        consumer_channel.fast_exit(
            accounts.tx_maker.address, 100, 1, accounts.beneficiary.address, valid_until, identity_sig, hub_sig
        )

        event = consumer_channel.events.last("FastExit")
        assert event.args == {
            "beneficiary": accounts.beneficiary.address,
            "amount": 100,
            "fee": 1,
            "nonce": 0,
        }
