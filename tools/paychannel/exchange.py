"""
Swap Collaborator

Constant-product pool converting between native currency and the
settlement token. Output amounts follow the Uniswap v2 formula with a 0.3%
input fee, computed from the reserves observed before the swap:

    out = in * 997 * reserve_out / (reserve_in * 1000 + in * 997)

There is no slippage protection beyond an optional caller-provided
minimum output.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import List, Optional

from web3 import Web3

from tools.paychannel.hardening import InsufficientFunds, Snapshottable, atomic, checksum, uint
from tools.paychannel.ledger import Ledger
from tools.paychannel.observability import ChannelLayer, LogLevel, get_logger
from tools.paychannel.signatures import packed_keccak


FEE_NUMERATOR = 997
FEE_DENOMINATOR = 1000


def get_amount_out(amount_in: int, reserve_in: int, reserve_out: int) -> int:
    """Deterministic output amount for a fixed input against given reserves."""
    amount_in = uint(amount_in, "amount_in")
    if amount_in == 0:
        raise InsufficientFunds("Swap input amount must be positive")
    if reserve_in == 0 or reserve_out == 0:
        raise InsufficientFunds("Pool has no liquidity", reserve_in=reserve_in, reserve_out=reserve_out)
    amount_in_with_fee = amount_in * FEE_NUMERATOR
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * FEE_DENOMINATOR + amount_in_with_fee
    return numerator // denominator


class SwapPool(Snapshottable):
    """
    Native/token liquidity pool living at its own ledger address.

    Reserves are the pool address's balances on the ledger, so the pool
    itself carries no state beyond its address.
    """

    def __init__(self, ledger: Ledger, address: Optional[str] = None):
        self.ledger = ledger
        self._lock = ledger.lock
        if address is None:
            address = Web3.to_checksum_address(packed_keccak(["string"], ["swap-pool"])[12:])
        self.address = checksum(address, "address")
        self._logger = get_logger("pool", ChannelLayer.EXCHANGE)

    def _participants(self) -> List[Snapshottable]:
        return [self, self.ledger]

    @property
    def token_reserve(self) -> int:
        return self.ledger.balance_of(self.address)

    @property
    def native_reserve(self) -> int:
        return self.ledger.native_balance_of(self.address)

    @atomic
    def add_liquidity(self, provider: str, token_amount: int, native_amount: int) -> None:
        provider = checksum(provider, "provider")
        self.ledger.transfer(provider, self.address, uint(token_amount, "token_amount"))
        self.ledger.transfer_native(provider, self.address, uint(native_amount, "native_amount"))
        self._logger.on_commit(
            LogLevel.INFO,
            "Liquidity added",
            provider=provider,
            token_amount=token_amount,
            native_amount=native_amount,
        )

    def quote_native_to_tokens(self, native_in: int) -> int:
        return get_amount_out(native_in, self.native_reserve, self.token_reserve)

    def quote_tokens_to_native(self, tokens_in: int) -> int:
        return get_amount_out(tokens_in, self.token_reserve, self.native_reserve)

    @atomic
    def swap_native_for_tokens(self, sender: str, native_in: int, recipient: str, min_out: int = 0) -> int:
        """Sell sender's native currency; tokens go to recipient."""
        sender = checksum(sender, "sender")
        recipient = checksum(recipient, "recipient")
        amount_out = self.quote_native_to_tokens(native_in)
        self._check_min_out(amount_out, min_out)
        self.ledger.transfer_native(sender, self.address, native_in)
        self.ledger.transfer(self.address, recipient, amount_out)
        self._logger.on_commit(LogLevel.DEBUG, "Swapped native for tokens", native_in=native_in, tokens_out=amount_out)
        return amount_out

    @atomic
    def swap_tokens_for_native(self, sender: str, tokens_in: int, recipient: str, min_out: int = 0) -> int:
        """Sell sender's tokens; native currency goes to recipient."""
        sender = checksum(sender, "sender")
        recipient = checksum(recipient, "recipient")
        amount_out = self.quote_tokens_to_native(tokens_in)
        self._check_min_out(amount_out, min_out)
        self.ledger.transfer(sender, self.address, tokens_in)
        self.ledger.transfer_native(self.address, recipient, amount_out)
        self._logger.on_commit(LogLevel.DEBUG, "Swapped tokens for native", tokens_in=tokens_in, native_out=amount_out)
        return amount_out

    @staticmethod
    def _check_min_out(amount_out: int, min_out: int) -> None:
        if amount_out < uint(min_out, "min_out"):
            raise InsufficientFunds(
                f"Swap output {amount_out} below minimum {min_out}",
                available=amount_out,
                required=min_out,
            )
