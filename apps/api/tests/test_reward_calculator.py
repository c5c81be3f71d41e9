import pytest

from carsa_api.domain.errors import InvalidRateError, RewardOverflowError, ValidationError
from carsa_api.services.rewards import MAX_SAFE_INTEGER, RewardCalculator


def test_fiat_only_purchase_awards_rate_share() -> None:
    result = RewardCalculator().compute(50000, 0, 1, 1000)

    assert result.total_value == 50000
    assert result.tokens_awarded == 5000
    assert result.used_tokens is False


def test_redeemed_tokens_count_towards_total_value() -> None:
    result = RewardCalculator().compute(30000, 5_000_000_000, 100_000_000, 1000)

    assert result.redeemed_value == 50
    assert result.total_value == 30050
    assert result.tokens_awarded == 3005
    assert result.used_tokens is True


def test_missing_redeem_amount_defaults_to_zero() -> None:
    result = RewardCalculator().compute(1234, None, 1_000_000, 250)

    assert result.total_value == 1234
    assert result.tokens_awarded == 30


def test_division_truncates() -> None:
    result = RewardCalculator().compute(0, 99, 100, 10000)

    assert result.total_value == 0
    assert result.tokens_awarded == 0
    assert result.used_tokens is True


def test_total_value_overflow_is_rejected() -> None:
    with pytest.raises(RewardOverflowError):
        RewardCalculator().compute(MAX_SAFE_INTEGER, 10, 1, 0)


def test_reward_numerator_overflow_is_rejected() -> None:
    with pytest.raises(RewardOverflowError):
        RewardCalculator().compute(MAX_SAFE_INTEGER // 2, 0, 1, 10000)


def test_largest_representable_total_is_accepted() -> None:
    result = RewardCalculator().compute(MAX_SAFE_INTEGER, 0, 1, 0)

    assert result.total_value == MAX_SAFE_INTEGER
    assert result.tokens_awarded == 0


@pytest.mark.parametrize("rate", [10001, -1])
def test_out_of_range_rate_is_rejected(rate: int) -> None:
    with pytest.raises(InvalidRateError):
        RewardCalculator().compute(100, 0, 1, rate)


def test_negative_amounts_and_bad_exchange_rate_are_validation_errors() -> None:
    calculator = RewardCalculator()
    with pytest.raises(ValidationError):
        calculator.compute(-1, 0, 1, 100)
    with pytest.raises(ValidationError):
        calculator.compute(100, -5, 1, 100)
    with pytest.raises(ValidationError):
        calculator.compute(100, 0, 0, 100)
