from .calculator import BPS_DENOMINATOR, MAX_SAFE_INTEGER, RewardCalculator, RewardComputation

__all__ = ["BPS_DENOMINATOR", "MAX_SAFE_INTEGER", "RewardCalculator", "RewardComputation"]
