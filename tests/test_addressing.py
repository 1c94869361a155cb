"""
Deterministic Addressing Tests

CREATE2 derivation, minimal proxy bytecode and channel ids, checked both
against known vectors and against what the registry actually deploys.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from web3 import Web3

from tools.paychannel.addressing import (
    PROXY_RUNTIME_PREFIX,
    PROXY_RUNTIME_SUFFIX,
    WITHDRAWAL_CHANNEL_TAG,
    consumer_channel_address,
    create2_address,
    hub_address,
    provider_channel_id,
    proxy_init_code,
    proxy_runtime_code,
)
from tools.paychannel.registry import deploy_implementations


IMPLEMENTATION = "0xbebebebebebebebebebebebebebebebebebebebe"


class TestCreate2:
    """Address derivation primitives."""

    def test_create2_known_vectors(self):
        """Vectors published with EIP-1014."""
        deployer = "0xdeadbeef00000000000000000000000000000000"
        assert create2_address(deployer, bytes(32), b"\x00") == \
            "0xB928f69Bb1D91Cd65274e3c79d8986362984fDA3"

        salt = bytes.fromhex("000000000000000000000000feed000000000000000000000000000000000000")
        assert create2_address(deployer, salt, b"\x00") == \
            "0xD04116cDd17beBE565EB2422F2497E06cC1C9833"

    def test_proxy_runtime_code_embeds_implementation(self):
        code = proxy_runtime_code(IMPLEMENTATION)

        assert len(code) == 45
        assert code.startswith(PROXY_RUNTIME_PREFIX)
        assert code.endswith(PROXY_RUNTIME_SUFFIX)
        assert bytes.fromhex(IMPLEMENTATION[2:]) in code

    def test_init_code_wraps_runtime(self):
        assert proxy_init_code(IMPLEMENTATION).endswith(proxy_runtime_code(IMPLEMENTATION))

    def test_provider_channel_id(self):
        identity = "0x1111111111111111111111111111111111111111"
        hub = "0x2222222222222222222222222222222222222222"
        expected = Web3.solidity_keccak(
            ["address", "address"],
            [Web3.to_checksum_address(identity), Web3.to_checksum_address(hub)],
        )

        assert provider_channel_id(identity, hub) == bytes(expected)
        assert provider_channel_id(identity, hub, WITHDRAWAL_CHANNEL_TAG) != bytes(expected)


class TestRegistryAddressing:
    """The registry deploys exactly where off-ledger derivation predicts."""

    def test_hub_address_predicted_before_registration(self, registry, make_hub, accounts):
        predicted = hub_address(
            registry.address,
            accounts.operator.address,
            0,
            registry.get_hub_implementation(),
        )
        assert registry.get_hub_address(accounts.operator.address) == predicted

        hub = make_hub()
        assert hub.address == predicted

    def test_channel_address_predicted_before_registration(
        self, registry, hub, ledger, accounts, register_identity
    ):
        predicted = consumer_channel_address(
            registry.address,
            accounts.consumer.address,
            hub.address,
            registry.get_channel_implementation(),
        )
        assert registry.get_channel_address(accounts.consumer.address, hub.address) == predicted
        assert not ledger.is_contract(predicted)

        channel = register_identity(accounts.consumer, hub)

        assert channel.address == predicted
        assert ledger.get_code(predicted) == proxy_runtime_code(registry.get_channel_implementation())

    def test_channel_address_pinned_by_hub_version(self, registry, hub, ledger, accounts):
        """Publishing new implementations does not move channels of existing hubs."""
        before = registry.get_channel_address(accounts.consumer.address, hub.address)

        channel_impl, hub_impl = deploy_implementations(ledger)
        registry.set_implementations(accounts.deployer.address, channel_impl, hub_impl)

        assert registry.get_channel_address(accounts.consumer.address, hub.address) == before

    def test_new_version_moves_hub_address(self, registry, ledger, accounts):
        version_zero = registry.get_hub_address(accounts.operator.address)

        channel_impl, hub_impl = deploy_implementations(ledger)
        registry.set_implementations(accounts.deployer.address, channel_impl, hub_impl)

        assert registry.get_hub_address(accounts.operator.address) != version_zero
        assert registry.get_hub_address(accounts.operator.address, version=0) == version_zero
