"""
Payment Channel Signature Layer

Canonical digests for every signed protocol message, secp256k1 signer
recovery, and the signing helpers clients use to produce those messages.

Every digest is keccak256 over the tightly packed (Solidity
``abi.encodePacked``) encoding of a fixed field tuple. Each tuple binds the
chain id, and where a message targets a single contract its address too,
so a signature cannot be replayed on another deployment.

    Message                 Packed fields
    ─────────────────────── ──────────────────────────────────────────────
    promise                 chainId, channelId, amount, fee, hashlock
    identity registration   chainId, registry, hub, stake, fee, beneficiary
    consumer channel open   chainId, registry, hub, fee
    beneficiary change      chainId, registry, newBeneficiary, nonce
    stake return            "Stake return request", chainId, channelId,
                            amount, fee, nonce
    hub URL update          chainId, registry, hub, url, nonce
    fast withdrawal         chainId, channel, amount, fee, beneficiary,
                            validUntil, nonce
    pay-and-settle          chainId, channelId, amount, preimage,
                            beneficiary

Signatures are 65 bytes (r || s || v) over the raw digest, without the
personal-message prefix.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from eth_account import Account
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as KeyValidationError
from web3 import Web3

from tools.paychannel.hardening import InvalidSignature, checksum, uint
from tools.paychannel.observability import ChannelLayer, get_logger


STAKE_RETURN_PREFIX = "Stake return request"

PrivateKey = Union[bytes, str]


# =============================================================================
# HASHING PRIMITIVES
# =============================================================================

def keccak(data: bytes) -> bytes:
    """keccak256 of raw bytes."""
    return bytes(Web3.keccak(primitive=data))


def packed_keccak(abi_types: list, values: list) -> bytes:
    """keccak256 of the tightly packed encoding of values."""
    return bytes(Web3.solidity_keccak(abi_types, values))


def hashlock_of(preimage: bytes) -> bytes:
    """The commitment a promise carries for its preimage."""
    return packed_keccak(["bytes32"], [preimage])


def address_to_bytes32(address: str) -> bytes:
    """Left-pad an address into a 32-byte word."""
    return bytes(12) + bytes.fromhex(checksum(address)[2:])


# =============================================================================
# MESSAGE DIGESTS
# =============================================================================

def promise_digest(chain_id: int, channel_id: bytes, amount: int, fee: int, hashlock: bytes) -> bytes:
    return packed_keccak(
        ["uint256", "bytes32", "uint256", "uint256", "bytes32"],
        [chain_id, channel_id, amount, fee, hashlock],
    )


def registration_digest(
    chain_id: int,
    registry: str,
    hub: str,
    stake: int,
    fee: int,
    beneficiary: str,
) -> bytes:
    return packed_keccak(
        ["uint256", "address", "address", "uint256", "uint256", "address"],
        [chain_id, checksum(registry), checksum(hub), stake, fee, checksum(beneficiary)],
    )


def consumer_channel_opening_digest(chain_id: int, registry: str, hub: str, fee: int) -> bytes:
    return packed_keccak(
        ["uint256", "address", "address", "uint256"],
        [chain_id, checksum(registry), checksum(hub), fee],
    )


def beneficiary_change_digest(chain_id: int, registry: str, new_beneficiary: str, nonce: int) -> bytes:
    return packed_keccak(
        ["uint256", "address", "address", "uint256"],
        [chain_id, checksum(registry), checksum(new_beneficiary), nonce],
    )


def stake_return_digest(chain_id: int, channel_id: bytes, amount: int, fee: int, nonce: int) -> bytes:
    return packed_keccak(
        ["string", "uint256", "bytes32", "uint256", "uint256", "uint256"],
        [STAKE_RETURN_PREFIX, chain_id, channel_id, amount, fee, nonce],
    )


def url_update_digest(chain_id: int, registry: str, hub: str, url: bytes, nonce: int) -> bytes:
    return packed_keccak(
        ["uint256", "address", "address", "bytes", "uint256"],
        [chain_id, checksum(registry), checksum(hub), url, nonce],
    )


def fast_withdrawal_digest(
    chain_id: int,
    channel: str,
    amount: int,
    fee: int,
    beneficiary: str,
    valid_until: int,
    nonce: int,
) -> bytes:
    return packed_keccak(
        ["uint256", "address", "uint256", "uint256", "address", "uint256", "uint256"],
        [chain_id, checksum(channel), amount, fee, checksum(beneficiary), valid_until, nonce],
    )


def pay_and_settle_digest(
    chain_id: int,
    channel_id: bytes,
    amount: int,
    preimage: bytes,
    beneficiary: str,
) -> bytes:
    return packed_keccak(
        ["uint256", "bytes32", "uint256", "bytes32", "address"],
        [chain_id, channel_id, amount, preimage, checksum(beneficiary)],
    )


# =============================================================================
# SIGNING (client side)
# =============================================================================

def sign_digest(digest: bytes, private_key: PrivateKey) -> bytes:
    """Sign a raw 32-byte digest; returns r || s || v with v in {27, 28}."""
    signed = Account.unsafe_sign_hash(digest, private_key)
    return bytes(signed.signature)


@dataclass(frozen=True)
class Promise:
    """Signed cumulative payment authorization."""
    channel_id: bytes
    amount: int
    fee: int
    hashlock: bytes
    signature: bytes
    preimage: Optional[bytes] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": "0x" + self.channel_id.hex(),
            "amount": self.amount,
            "fee": self.fee,
            "hashlock": "0x" + self.hashlock.hex(),
            "signature": "0x" + self.signature.hex(),
        }


def create_promise(
    chain_id: int,
    channel_id: bytes,
    amount: int,
    fee: int,
    private_key: PrivateKey,
    preimage: Optional[bytes] = None,
) -> Promise:
    """
    Issue a promise for a cumulative amount.

    A fresh random preimage is drawn unless one is given; the promise
    carries its hashlock and keeps the preimage for whoever settles it.
    """
    preimage = preimage if preimage is not None else secrets.token_bytes(32)
    hashlock = hashlock_of(preimage)
    digest = promise_digest(chain_id, channel_id, amount, fee, hashlock)
    return Promise(
        channel_id=channel_id,
        amount=amount,
        fee=fee,
        hashlock=hashlock,
        signature=sign_digest(digest, private_key),
        preimage=preimage,
    )


def sign_identity_registration(
    chain_id: int,
    registry: str,
    hub: str,
    stake: int,
    fee: int,
    beneficiary: str,
    private_key: PrivateKey,
) -> bytes:
    return sign_digest(registration_digest(chain_id, registry, hub, stake, fee, beneficiary), private_key)


def sign_consumer_channel_opening(
    chain_id: int,
    registry: str,
    hub: str,
    fee: int,
    private_key: PrivateKey,
) -> bytes:
    return sign_digest(consumer_channel_opening_digest(chain_id, registry, hub, fee), private_key)


def sign_beneficiary_change(
    chain_id: int,
    registry: str,
    new_beneficiary: str,
    nonce: int,
    private_key: PrivateKey,
) -> bytes:
    return sign_digest(beneficiary_change_digest(chain_id, registry, new_beneficiary, nonce), private_key)


def sign_stake_return(
    chain_id: int,
    channel_id: bytes,
    amount: int,
    fee: int,
    nonce: int,
    private_key: PrivateKey,
) -> bytes:
    return sign_digest(stake_return_digest(chain_id, channel_id, amount, fee, nonce), private_key)


def sign_url_update(
    chain_id: int,
    registry: str,
    hub: str,
    url: Union[bytes, str],
    nonce: int,
    private_key: PrivateKey,
) -> bytes:
    if isinstance(url, str):
        url = url.encode("utf-8")
    return sign_digest(url_update_digest(chain_id, registry, hub, url, nonce), private_key)


def sign_fast_withdrawal(
    chain_id: int,
    channel: str,
    amount: int,
    fee: int,
    beneficiary: str,
    valid_until: int,
    nonce: int,
    private_key: PrivateKey,
) -> bytes:
    digest = fast_withdrawal_digest(chain_id, channel, amount, fee, beneficiary, valid_until, nonce)
    return sign_digest(digest, private_key)


def sign_pay_and_settle(
    chain_id: int,
    channel_id: bytes,
    amount: int,
    preimage: bytes,
    beneficiary: str,
    private_key: PrivateKey,
) -> bytes:
    return sign_digest(pay_and_settle_digest(chain_id, channel_id, amount, preimage, beneficiary), private_key)


# =============================================================================
# SIGNATURE VERIFIER
# =============================================================================

class SignatureVerifier:
    """
    Recovers signers of protocol messages.

    Stateless apart from its chain id; replay protection lives with the
    entity that owns the nonce or hashlock being consumed.
    """

    SIGNATURE_LENGTH = 65

    def __init__(self, chain_id: int):
        self.chain_id = uint(chain_id, "chain_id")
        self._logger = get_logger("verifier", ChannelLayer.SIGNATURES)

    def recover(self, digest: bytes, signature: bytes) -> str:
        """
        Recover the checksummed signer address of a digest.

        Raises InvalidSignature for malformed or unrecoverable signatures.
        """
        if not isinstance(signature, (bytes, bytearray)) or len(signature) != self.SIGNATURE_LENGTH:
            raise InvalidSignature(
                f"Signature must be {self.SIGNATURE_LENGTH} bytes",
                length=len(signature) if isinstance(signature, (bytes, bytearray)) else None,
            )
        try:
            return Account._recover_hash(digest, signature=bytes(signature))
        except (BadSignature, KeyValidationError, ValueError) as exc:
            raise InvalidSignature(f"Signature is not recoverable: {exc}") from exc

    def verify(self, digest: bytes, signature: bytes, expected_signer: str) -> Tuple[bool, str]:
        """
        Verify a digest was signed by expected_signer.

        Returns (valid, reason).
        """
        try:
            signer = self.recover(digest, signature)
        except InvalidSignature as exc:
            return (False, exc.message)
        if signer != checksum(expected_signer, "expected_signer"):
            return (False, f"Recovered signer {signer} does not match {expected_signer}")
        return (True, "Signature valid")

    def require_signer(self, digest: bytes, signature: bytes, expected_signer: str, message: str) -> str:
        """Recover and compare, raising InvalidSignature on mismatch."""
        valid, reason = self.verify(digest, signature, expected_signer)
        if not valid:
            self._logger.debug(
                "Signature rejected",
                error_code=InvalidSignature.code,
                message_kind=message,
                reason=reason,
            )
            raise InvalidSignature(f"Invalid {message} signature: {reason}")
        return checksum(expected_signer)

    # Convenience wrappers bound to this verifier's chain id

    def promise_digest(self, channel_id: bytes, amount: int, fee: int, hashlock: bytes) -> bytes:
        return promise_digest(self.chain_id, channel_id, amount, fee, hashlock)

    def registration_digest(self, registry: str, hub: str, stake: int, fee: int, beneficiary: str) -> bytes:
        return registration_digest(self.chain_id, registry, hub, stake, fee, beneficiary)

    def consumer_channel_opening_digest(self, registry: str, hub: str, fee: int) -> bytes:
        return consumer_channel_opening_digest(self.chain_id, registry, hub, fee)

    def beneficiary_change_digest(self, registry: str, new_beneficiary: str, nonce: int) -> bytes:
        return beneficiary_change_digest(self.chain_id, registry, new_beneficiary, nonce)

    def stake_return_digest(self, channel_id: bytes, amount: int, fee: int, nonce: int) -> bytes:
        return stake_return_digest(self.chain_id, channel_id, amount, fee, nonce)

    def url_update_digest(self, registry: str, hub: str, url: bytes, nonce: int) -> bytes:
        return url_update_digest(self.chain_id, registry, hub, url, nonce)

    def fast_withdrawal_digest(
        self,
        channel: str,
        amount: int,
        fee: int,
        beneficiary: str,
        valid_until: int,
        nonce: int,
    ) -> bytes:
        return fast_withdrawal_digest(self.chain_id, channel, amount, fee, beneficiary, valid_until, nonce)

    def pay_and_settle_digest(self, channel_id: bytes, amount: int, preimage: bytes, beneficiary: str) -> bytes:
        return pay_and_settle_digest(self.chain_id, channel_id, amount, preimage, beneficiary)
