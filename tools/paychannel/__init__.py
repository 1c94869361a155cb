"""
PAYCHANNEL: Hub-Mediated Payment Channels

Consumers prepay into per-hub channels and pay with signed, cumulative
promises. Hubs settle promises for their providers out of their own
balance, manage provider stake and fees, and are penalized when they
cannot pay what they promised.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                        PAYMENT CHANNEL PROTOCOL                          │
    │                                                                          │
    │  LAYER 3: PROTOCOL ENTITIES                                             │
    │    registry.py     Identities, beneficiaries, hubs, implementations     │
    │    hub.py          Provider channels, stake, settlement, punishment     │
    │    channel.py      Consumer balance, promise settlement, fast exit      │
    │    fees.py         Basis-point fee schedule with delayed activation     │
    │                                                                          │
    │  LAYER 2: COLLABORATORS                                                 │
    │    ledger.py       Token and native balances, deployed code, clock      │
    │    exchange.py     Constant-product swap pool                           │
    │                                                                          │
    │  LAYER 1: PRIMITIVES                                                    │
    │    signatures.py   Message digests, signing, signer recovery            │
    │    addressing.py   CREATE2 minimal-proxy address derivation             │
    │    hardening.py    Errors, validation, nonces, atomic calls             │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Core Concepts
─────────────

    Promise: A signature over (chainId, channelId, amount, fee, hashlock).
    Amounts are cumulative; settling pays only what exceeds the amount
    already settled on the channel, so a promise can be redeemed in parts
    and never twice.

    Hub: Settlement engine of one operator. Holds its own stake plus every
    provider's stake; only the surplus is available for settlements. A hub
    that cannot pay a promise enters punishment and pays a penalty that grows
    with every unit of time until the emergency is resolved.

    Registry: Deterministic directory. Channel and hub addresses are CREATE2
    addresses of EIP-1167 proxies, computable off-ledger before deployment.

Design Principles
─────────────────

    Atomic Calls: Every external call either commits fully or restores the
    state it found. Calls are totally ordered by the ledger's world lock.

    Replay Protection: Nonces and cumulative amounts, never idempotency keys.

    Explicit Time: All time gates read an injected clock at call time. There
    is no background scheduler.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

__version__ = "0.1.0"

# Lazy imports to avoid circular dependencies


def __getattr__(name):
    """Lazy import PAYCHANNEL modules on first access."""

    # Registry exports
    if name in ("Registry", "IdentityRecord", "HubRecord", "Implementations", "deploy_implementations"):
        from tools.paychannel import registry
        return getattr(registry, name)

    # Hub exports
    if name in ("Hub", "HubStatus", "ProviderChannel", "Punishment", "Settlement",
                "ChannelLookup", "ChannelHandle"):
        from tools.paychannel import hub
        return getattr(hub, name)

    # Consumer channel exports
    if name in ("ConsumerChannel", "HubBinding"):
        from tools.paychannel import channel
        return getattr(channel, name)

    # Fee exports
    if name in ("FeeSchedule", "HubFee", "calculate_fee"):
        from tools.paychannel import fees
        return getattr(fees, name)

    # Collaborator exports
    if name in ("Ledger", "Clock", "SystemClock", "ManualClock"):
        from tools.paychannel import ledger
        return getattr(ledger, name)

    if name in ("SwapPool", "get_amount_out"):
        from tools.paychannel import exchange
        return getattr(exchange, name)

    # Signature exports
    if name in ("SignatureVerifier", "Promise", "create_promise", "sign_digest"):
        from tools.paychannel import signatures
        return getattr(signatures, name)

    # Error exports
    if name in ("ChannelProtocolError", "ValidationError", "InvalidSignature", "StaleNonce",
                "NonceReplay", "InsufficientFunds", "Unauthorized", "InvalidState", "Expired",
                "AlreadyRegistered", "DuplicateHub", "BelowMinimumStake", "FeeOutOfRange",
                "UnknownHub"):
        from tools.paychannel import hardening
        return getattr(hardening, name)

    raise AttributeError(f"module 'paychannel' has no attribute '{name}'")


__all__ = [
    # Version info
    "__version__",
    # Registry
    "Registry",
    "IdentityRecord",
    "HubRecord",
    "Implementations",
    "deploy_implementations",
    # Hub
    "Hub",
    "HubStatus",
    "ProviderChannel",
    "Punishment",
    "Settlement",
    "ChannelLookup",
    "ChannelHandle",
    # Consumer channel
    "ConsumerChannel",
    "HubBinding",
    # Fees
    "FeeSchedule",
    "HubFee",
    "calculate_fee",
    # Collaborators
    "Ledger",
    "Clock",
    "SystemClock",
    "ManualClock",
    "SwapPool",
    "get_amount_out",
    # Signatures
    "SignatureVerifier",
    "Promise",
    "create_promise",
    "sign_digest",
    # Errors
    "ChannelProtocolError",
    "ValidationError",
    "InvalidSignature",
    "StaleNonce",
    "NonceReplay",
    "InsufficientFunds",
    "Unauthorized",
    "InvalidState",
    "Expired",
    "AlreadyRegistered",
    "DuplicateHub",
    "BelowMinimumStake",
    "FeeOutOfRange",
    "UnknownHub",
]
