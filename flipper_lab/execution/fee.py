"""
Brokerage fee model: a percentage of the traded amount with a floor.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Fee:
    """
    Percentage-of-amount fee with a minimum charge.

    **Mathematical**: fee(amount) = max(minimum, amount * percentage)

    Attributes:
        percentage: Fraction of the traded amount (0.0025 = 0.25%).
        minimum: Smallest fee charged per transaction, in account currency.

    Example:
        >>> Fee(percentage=0.0025, minimum=1).calculate(10_000)
        25.0
        >>> Fee(percentage=0.0025, minimum=1).calculate(100)
        1
    """
    percentage: float = 0.0025
    minimum: float = 1.0

    def __post_init__(self):
        if self.percentage < 0:
            raise ValueError(f"Fee percentage must be >= 0, got {self.percentage}")
        if self.minimum < 0:
            raise ValueError(f"Fee minimum must be >= 0, got {self.minimum}")

    def calculate(self, amount: float) -> float:
        return max(self.minimum, amount * self.percentage)
