"""
Hub Fee Engine

Basis-point fee schedule with delayed activation. A scheduled fee becomes
active at its valid_from timestamp; until then the previous fee applies,
and no further change may be scheduled.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

from tools.paychannel.hardening import Expired, FeeOutOfRange, ceil_div, uint


BPS_DENOMINATOR = 10000


def calculate_fee(amount: int, fee_bps: int) -> int:
    """
    Fee in basis points of amount, rounded up.

    Any non-zero fraction rounds up so small amounts never settle fee-free:
    250 bps of 100 is 3, not 2.
    """
    return ceil_div(uint(amount) * uint(fee_bps, "fee_bps"), BPS_DENOMINATOR)


@dataclass(frozen=True)
class HubFee:
    """A fee value and the instant it starts to apply."""
    value: int
    valid_from: int

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "valid_from": self.valid_from}


@dataclass
class FeeSchedule:
    """Current and previous hub fee."""
    last_fee: HubFee
    previous_fee: HubFee = field(default_factory=lambda: HubFee(0, 0))
    max_fee_bps: int = 5000
    delay_seconds: int = 0

    @classmethod
    def starting_at(cls, fee_bps: int, now: int, max_fee_bps: int, delay_seconds: int) -> "FeeSchedule":
        """Schedule whose initial fee is active immediately."""
        if uint(fee_bps, "fee_bps") > max_fee_bps:
            raise FeeOutOfRange(f"Fee {fee_bps} bps above ceiling {max_fee_bps}", fee=fee_bps)
        return cls(
            last_fee=HubFee(fee_bps, now),
            max_fee_bps=max_fee_bps,
            delay_seconds=delay_seconds,
        )

    def active_fee(self, now: int) -> HubFee:
        return self.last_fee if now >= self.last_fee.valid_from else self.previous_fee

    def calculate(self, amount: int, now: int) -> int:
        return calculate_fee(amount, self.active_fee(now).value)

    def is_pending(self, now: int) -> bool:
        return now < self.last_fee.valid_from

    def schedule(self, new_fee_bps: int, now: int) -> HubFee:
        """
        Schedule a new fee after the configured delay.

        Raises FeeOutOfRange above the ceiling and Expired while the last
        scheduled change has not become active yet.
        """
        new_fee_bps = uint(new_fee_bps, "fee_bps")
        if new_fee_bps > self.max_fee_bps:
            raise FeeOutOfRange(
                f"Fee {new_fee_bps} bps above ceiling {self.max_fee_bps}",
                fee=new_fee_bps,
                ceiling=self.max_fee_bps,
            )
        if self.is_pending(now):
            raise Expired(
                "Previous fee change is not active yet",
                valid_from=self.last_fee.valid_from,
                now=now,
            )
        self.previous_fee = self.last_fee
        self.last_fee = HubFee(new_fee_bps, now + self.delay_seconds)
        return self.last_fee
