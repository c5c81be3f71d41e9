"""Reward arithmetic for purchases paid partly in loyalty tokens.

All quantities are integers in their smallest unit. Intermediate values are
checked against a signed 64-bit ceiling so results are rejected rather than
silently wrapped when they would not fit a ledger or database column.
"""

from __future__ import annotations

from dataclasses import dataclass

from carsa_api.domain.errors import InvalidRateError, RewardOverflowError, ValidationError

MAX_SAFE_INTEGER = 2**63 - 1
BPS_DENOMINATOR = 10_000


@dataclass(frozen=True, slots=True)
class RewardComputation:
    total_value: int
    tokens_awarded: int
    redeemed_value: int
    used_tokens: bool


def _checked(value: int, *, label: str) -> int:
    if value > MAX_SAFE_INTEGER:
        raise RewardOverflowError(f"{label} exceeds the maximum supported integer")
    return value


class RewardCalculator:
    """Pure computation of transaction value and cashback rewards."""

    def compute(
        self,
        fiat_amount: int,
        redeem_token_amount: int | None,
        exchange_rate: int,
        cashback_rate_bps: int,
    ) -> RewardComputation:
        redeem = 0 if redeem_token_amount is None else redeem_token_amount

        if cashback_rate_bps < 0 or cashback_rate_bps > BPS_DENOMINATOR:
            raise InvalidRateError(
                f"cashback rate must be between 0 and {BPS_DENOMINATOR} basis points"
            )
        if fiat_amount < 0 or redeem < 0:
            raise ValidationError("amounts must be non-negative")
        if exchange_rate <= 0:
            raise ValidationError("exchange rate must be positive")

        _checked(fiat_amount, label="fiat amount")
        _checked(redeem, label="redeem amount")

        # Integer division of non-negative operands truncates toward zero.
        redeemed_value = redeem // exchange_rate
        total_value = _checked(fiat_amount + redeemed_value, label="total value")
        weighted = _checked(total_value * cashback_rate_bps, label="reward numerator")
        tokens_awarded = weighted // BPS_DENOMINATOR

        return RewardComputation(
            total_value=total_value,
            tokens_awarded=tokens_awarded,
            redeemed_value=redeemed_value,
            used_tokens=redeem > 0,
        )


__all__ = ["BPS_DENOMINATOR", "MAX_SAFE_INTEGER", "RewardCalculator", "RewardComputation"]
