"""
Deterministic Addressing

Off-ledger derivation of every address the registry deploys to. Consumer
channels and hubs are EIP-1167 minimal proxies placed with CREATE2, so any
party holding the public inputs can compute where a channel will live
before it exists:

    address = keccak256(0xff ++ registry ++ salt ++ keccak256(init_code))[12:]

    channel salt = keccak256(identity ++ hub)
    hub salt     = keccak256(operator ++ implementation_version)

The proxy's init code embeds the implementation address pinned for the
relevant version, so a registry upgrade never moves existing instances.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Optional

from web3 import Web3

from tools.paychannel.hardening import checksum, uint
from tools.paychannel.signatures import keccak, packed_keccak


# EIP-1167 minimal proxy pieces
PROXY_CREATION_PREFIX = bytes.fromhex("3d602d80600a3d3981f3")
PROXY_RUNTIME_PREFIX = bytes.fromhex("363d3d373d3d3d363d73")
PROXY_RUNTIME_SUFFIX = bytes.fromhex("5af43d82803e903d91602b57fd5bf3")

WITHDRAWAL_CHANNEL_TAG = "withdrawal"


def proxy_runtime_code(implementation: str) -> bytes:
    """Runtime bytecode of a minimal proxy delegating to implementation."""
    target = bytes.fromhex(checksum(implementation, "implementation")[2:])
    return PROXY_RUNTIME_PREFIX + target + PROXY_RUNTIME_SUFFIX


def proxy_init_code(implementation: str) -> bytes:
    """Creation bytecode that deploys the minimal proxy."""
    return PROXY_CREATION_PREFIX + proxy_runtime_code(implementation)


def create2_address(deployer: str, salt: bytes, init_code: bytes) -> str:
    """CREATE2 address for init_code deployed by deployer with salt."""
    if len(salt) != 32:
        raise ValueError("CREATE2 salt must be 32 bytes")
    deployer_bytes = bytes.fromhex(checksum(deployer, "deployer")[2:])
    digest = keccak(b"\xff" + deployer_bytes + salt + keccak(init_code))
    return Web3.to_checksum_address(digest[12:])


def channel_salt(identity: str, hub: str) -> bytes:
    return packed_keccak(["address", "address"], [checksum(identity, "identity"), checksum(hub, "hub")])


def hub_salt(operator: str, version: int) -> bytes:
    return packed_keccak(["address", "uint256"], [checksum(operator, "operator"), uint(version, "version")])


def consumer_channel_address(registry: str, identity: str, hub: str, channel_implementation: str) -> str:
    """Address of the consumer channel proxy for (identity, hub)."""
    return create2_address(
        registry,
        channel_salt(identity, hub),
        proxy_init_code(channel_implementation),
    )


def hub_address(registry: str, operator: str, version: int, hub_implementation: str) -> str:
    """Address of the hub proxy an operator gets under an implementation version."""
    return create2_address(
        registry,
        hub_salt(operator, version),
        proxy_init_code(hub_implementation),
    )


def provider_channel_id(identity: str, hub: str, tag: Optional[str] = None) -> bytes:
    """
    Hub-side channel id of an identity.

    The untagged id is the regular provider channel; the "withdrawal" tag
    selects the channel used by pay-and-settle.
    """
    identity = checksum(identity, "identity")
    hub = checksum(hub, "hub")
    if tag:
        return packed_keccak(["address", "address", "string"], [identity, hub, tag])
    return packed_keccak(["address", "address"], [identity, hub])
