"""
Punishment Tests

Entering punishment on an uncovered promise, penalty accrual per
punishment unit and resolving back to Active.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest

from tools.paychannel.hardening import InsufficientFunds, InvalidState
from tools.paychannel.hub import HubStatus


@pytest.fixture
def punish(accounts, register_identity, issue_promise):
    """Register a staked provider and settle a promise the hub cannot cover."""
    def _punish(hub, stake=500):
        register_identity(accounts.provider, hub, stake=stake)
        promise = issue_promise(hub, accounts.provider, 100)
        hub.settle_promise(
            accounts.tx_maker.address,
            accounts.provider.address,
            promise.amount,
            promise.fee,
            promise.preimage,
            promise.signature,
        )
        assert hub.get_status() is HubStatus.PUNISHMENT
        return hub
    return _punish


@pytest.fixture
def punished_hub(make_hub, punish):
    """Hub with 500 provider stake and max stake 1000, just punished."""
    return punish(make_hub(max_stake=1000))


def approve_operator(ledger, accounts, hub, amount):
    ledger.mint(accounts.operator.address, amount)
    ledger.approve(accounts.operator.address, hub.address, amount)


class TestPunishmentUnits:
    """Units elapsed since activation, the first one free."""

    def test_first_unit_is_free(self, punished_hub, clock):
        assert punished_hub.punishment_units() == 0
        clock.advance(1)
        assert punished_hub.punishment_units() == 0

    def test_units_accrue(self, punished_hub, clock):
        clock.advance(3)
        assert punished_hub.punishment_units() == 2

    def test_no_units_outside_punishment(self, hub, clock):
        clock.advance(100)
        assert hub.punishment_units() == 0

    def test_unit_length_from_configuration(self, reset_config, make_hub, punish, clock):
        """Partial units round up."""
        reset_config.set("hub.punishment_unit_seconds", 3600)
        hub = punish(make_hub(max_stake=1000))
        start = hub.punishment.activation_time

        assert hub.punishment_units(now=start + 3600) == 0
        assert hub.punishment_units(now=start + 3601) == 1
        assert hub.punishment_units(now=start + 7200) == 1
        assert hub.punishment_units(now=start + 7201) == 2


class TestResolveEmergency:
    """Leaving punishment."""

    def test_resolve_without_delay_charges_nothing(self, punished_hub, ledger, accounts):
        """Needs minimal balance plus max stake: 100000 + 500 + 1000."""
        approve_operator(ledger, accounts, punished_hub, 1000)

        penalty = punished_hub.resolve_emergency(accounts.operator.address)

        assert penalty == 0
        assert punished_hub.is_active()
        assert punished_hub.balance() == 101_500
        assert punished_hub.available_balance() == 1000
        assert ledger.balance_of(accounts.operator.address) == 0

    def test_penalty_per_late_unit(self, punished_hub, ledger, accounts, clock):
        """Two late units at 4% of 500 stake cost 2 * 20."""
        clock.advance(3)
        approve_operator(ledger, accounts, punished_hub, 1040)

        penalty = punished_hub.resolve_emergency(accounts.operator.address)

        assert penalty == 40
        assert punished_hub.punishment.amount == 40
        assert punished_hub.minimal_expected_balance() == 100_000 + 500 + 40
        assert punished_hub.available_balance() == 1000
        event = punished_hub.events.last("HubPunishmentDeactivated")
        assert event.args == {"units": 2, "penalty": 40}

    def test_penalty_rounds_up(self, make_hub, punish, ledger, accounts, clock):
        """4% of 30 is 1.2, charged as 2 per unit."""
        hub = punish(make_hub(max_stake=1000), stake=30)
        clock.advance(2)
        approve_operator(ledger, accounts, hub, 1002)

        assert hub.resolve_emergency(accounts.operator.address) == 2

    def test_direct_top_up_avoids_pull(self, punished_hub, ledger, accounts, top_up_hub):
        top_up_hub(punished_hub, 1000)

        punished_hub.resolve_emergency(accounts.outsider.address)

        assert punished_hub.is_active()
        assert ledger.allowance(accounts.outsider.address, punished_hub.address) == 0

    def test_insufficient_allowance(self, punished_hub, ledger, accounts, clock):
        clock.advance(3)
        approve_operator(ledger, accounts, punished_hub, 1039)

        with pytest.raises(InsufficientFunds):
            punished_hub.resolve_emergency(accounts.operator.address)

        assert punished_hub.get_status() is HubStatus.PUNISHMENT
        assert punished_hub.punishment.amount == 0
        assert punished_hub.balance() == 100_500

    def test_not_in_punishment(self, hub, accounts):
        with pytest.raises(InvalidState):
            hub.resolve_emergency(accounts.operator.address)

    def test_penalty_stays_locked(self, punished_hub, ledger, accounts, clock):
        """Accrued penalty is never available for withdrawal."""
        clock.advance(3)
        approve_operator(ledger, accounts, punished_hub, 1040)
        punished_hub.resolve_emergency(accounts.operator.address)

        with pytest.raises(InsufficientFunds):
            punished_hub.withdraw(accounts.operator.address, accounts.operator.address, 1001)
        punished_hub.withdraw(accounts.operator.address, accounts.operator.address, 1000)
        assert punished_hub.balance() == 100_540

    def test_settlements_resume_after_resolve(self, punished_hub, ledger, accounts, issue_promise):
        approve_operator(ledger, accounts, punished_hub, 1000)
        punished_hub.resolve_emergency(accounts.operator.address)
        promise = issue_promise(punished_hub, accounts.provider, 100)

        settlement = punished_hub.settle_promise(
            accounts.tx_maker.address,
            accounts.provider.address,
            promise.amount,
            promise.fee,
            promise.preimage,
            promise.signature,
        )

        assert settlement.paid == 100
        assert not settlement.punished
        assert ledger.balance_of(accounts.beneficiary.address) == 100


class TestPunishmentRestrictions:
    """What a punished hub may not do."""

    def test_cannot_close(self, punished_hub, accounts):
        with pytest.raises(InvalidState):
            punished_hub.close_hub(accounts.operator.address)

    def test_cannot_pause(self, punished_hub, accounts):
        with pytest.raises(InvalidState):
            punished_hub.pause(accounts.operator.address)

    def test_registrations_rejected(self, punished_hub, accounts, register_identity):
        with pytest.raises(InvalidState):
            register_identity(accounts.provider_b, punished_hub)
